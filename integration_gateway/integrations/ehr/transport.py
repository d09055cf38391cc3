"""
HTTP transport for partner calls.

A thin aiohttp wrapper returning fully-read responses, so the request client
can retry, log and decode without holding connections open. Network failures
surface as ``TransientNetworkError``.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import aiohttp

from .exceptions import TransientNetworkError


@dataclass
class HttpResponse:
    """Fully-read HTTP response"""

    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        if not self.body:
            return None
        return json.loads(self.body)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpTransport(Protocol):
    """What the integration layer needs from an HTTP client"""

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        form: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ) -> HttpResponse:
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """HttpTransport backed by a shared aiohttp.ClientSession"""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"})
            self._owns_session = True
        return self._session

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        form: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ) -> HttpResponse:
        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                data=form,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                body = await response.read()
                return HttpResponse(
                    status=response.status,
                    body=body,
                    headers=dict(response.headers),
                )
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Request timed out after {timeout}s: {method} {url}") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Network error: {e}") from e

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
