"""
Resilient Request Client

Every outbound partner call goes through ``ResilientRequestClient.request``:

1. Local fixed-window rate limit (denied calls raise RateLimited, never sent)
2. Bearer token injection (no usable token fails fast with AuthenticationFailed)
3. Call under the partner's timeout
4. A 401 triggers one shared token refresh and one resend with the new token
5. Timeouts, network failures, 429 and 5xx retry per partner policy, then
   surface as UpstreamError
6. Every attempt is recorded as a RequestRecord
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from integration_gateway.core.logging import get_logger

from .credentials import CredentialManager
from .exceptions import (
    AuthenticationFailed,
    IntegrationError,
    RateLimited,
    ResourceNotFound,
    TransientNetworkError,
    UpstreamError,
)
from .models import AuthToken, ProviderConfig
from .rate_limiter import FixedWindowRateLimiter
from .registry import ProviderRegistry
from .request_log import InMemoryRequestLog, RequestOutcome, RequestRecord, RequestRecorder
from .transport import HttpResponse, HttpTransport

logger = get_logger(__name__)


@dataclass
class _RequestContext:
    """State carried across the attempts of one logical request"""

    config: ProviderConfig
    request_id: str
    method: str
    path: str
    body: Optional[Any]
    params: Optional[Dict[str, Any]]
    token: Optional[AuthToken] = None
    refreshed: bool = False
    attempts: int = 0

    @property
    def partner(self) -> str:
        return self.config.partner_id


def _classify(status: int) -> RequestOutcome:
    if 200 <= status < 300:
        return RequestOutcome.SUCCESS
    if status == 401:
        return RequestOutcome.UNAUTHORIZED
    if status == 429 or status >= 500:
        return RequestOutcome.TRANSIENT_ERROR
    return RequestOutcome.CLIENT_ERROR


class ResilientRequestClient:
    """Outbound partner HTTP with auth, throttling, retry and request records"""

    def __init__(
        self,
        registry: ProviderRegistry,
        rate_limiter: FixedWindowRateLimiter,
        credentials: CredentialManager,
        transport: HttpTransport,
        recorder: Optional[RequestRecorder] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._credentials = credentials
        self._transport = transport
        self.recorder = recorder or InMemoryRequestLog()
        self._sleep = sleep

    async def request(
        self,
        partner: str,
        method: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        """
        Call a partner endpoint and return the decoded JSON body (None if empty).

        Raises:
            ConfigurationError: partner unknown or disabled
            RateLimited: local window exhausted
            AuthenticationFailed: no usable token, refresh rejected or second 401
            ResourceNotFound: partner answered 404
            UpstreamError: non-retryable partner error or retries exhausted
        """
        config = self._registry.get(partner)
        ctx = _RequestContext(
            config=config,
            request_id=request_id or str(uuid.uuid4()),
            method=method.upper(),
            path=path,
            body=body,
            params=params,
        )
        try:
            return await self._execute(ctx)
        except IntegrationError as e:
            logger.error(
                "ehr_request_failed",
                partner=partner,
                request_id=ctx.request_id,
                method=ctx.method,
                endpoint=path,
                error_type=type(e).__name__,
                status_code=e.status_code,
                attempts=ctx.attempts,
                error=e.message,
            )
            raise

    async def _execute(self, ctx: _RequestContext) -> Any:
        partner = ctx.partner

        if not self._rate_limiter.try_consume(partner):
            self._record(ctx, RequestOutcome.RATE_LIMITED, status_code=429, error="local rate limit")
            raise RateLimited(
                f"Rate limit of {ctx.config.rate_limit_per_minute}/min reached for {partner}",
                partner=partner,
                limit=ctx.config.rate_limit_per_minute,
                reset_at=self._rate_limiter.reset_at(partner) or time.time(),
            )

        if ctx.config.requires_auth:
            token = self._credentials.get_token(partner)
            if not self._credentials.is_valid(token):
                error = AuthenticationFailed(f"No valid token for {partner}; authenticate first", partner=partner)
                self._record(ctx, RequestOutcome.AUTH_UNAVAILABLE, error=error.message)
                raise error
            ctx.token = token

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(ctx.config.retry_attempts),
                wait=wait_fixed(ctx.config.retry_delay_seconds),
                retry=retry_if_exception_type(TransientNetworkError),
                before_sleep=self._log_retry(ctx),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    return await self._attempt(ctx)
        except TransientNetworkError as e:
            raise UpstreamError(
                f"{ctx.method} {ctx.path} failed after {ctx.attempts} attempts: {e.message}",
                partner=partner,
                status_code=e.status_code,
            ) from e

    async def _attempt(self, ctx: _RequestContext) -> Any:
        response = await self._send(ctx)

        if response.status == 401:
            if ctx.refreshed or not ctx.config.requires_auth:
                raise AuthenticationFailed(f"{ctx.partner} rejected credentials", partner=ctx.partner, status_code=401)
            logger.info("ehr_request_unauthorized_refreshing", partner=ctx.partner, request_id=ctx.request_id)
            ctx.token = await self._credentials.refresh(ctx.partner, rejected=ctx.token)
            ctx.refreshed = True
            response = await self._send(ctx)
            if response.status == 401:
                raise AuthenticationFailed(
                    f"{ctx.partner} rejected refreshed credentials", partner=ctx.partner, status_code=401
                )

        return self._interpret(ctx, response)

    async def _send(self, ctx: _RequestContext) -> HttpResponse:
        config = ctx.config
        headers = {
            "Accept": "application/json",
            **config.default_headers,
            "X-Request-ID": ctx.request_id,
        }
        if ctx.token is not None and config.requires_auth:
            headers["Authorization"] = ctx.token.authorization_header

        ctx.attempts += 1
        start_time = time.monotonic()
        try:
            response = await self._transport.send(
                ctx.method,
                config.url_for(ctx.path),
                headers=headers,
                params=ctx.params,
                json_body=ctx.body,
                timeout=config.timeout_seconds,
            )
        except TransientNetworkError as e:
            latency_ms = (time.monotonic() - start_time) * 1000
            self._record(ctx, RequestOutcome.TRANSIENT_ERROR, latency_ms=latency_ms, error=e.message)
            raise TransientNetworkError(e.message, partner=ctx.partner) from e

        latency_ms = (time.monotonic() - start_time) * 1000
        outcome = _classify(response.status)
        self._record(
            ctx,
            outcome,
            status_code=response.status,
            latency_ms=latency_ms,
            error=None if outcome == RequestOutcome.SUCCESS else response.text[:200],
        )
        return response

    def _interpret(self, ctx: _RequestContext, response: HttpResponse) -> Any:
        status = response.status
        if 200 <= status < 300:
            try:
                return response.json()
            except ValueError as e:
                raise UpstreamError(
                    f"Unreadable response body from {ctx.partner}", partner=ctx.partner, status_code=status
                ) from e
        if status == 404:
            raise ResourceNotFound(f"{ctx.path} not found at {ctx.partner}", partner=ctx.partner, status_code=404)
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"{ctx.partner} returned {status}", partner=ctx.partner, status_code=status)
        raise UpstreamError(
            f"{ctx.partner} returned {status}: {response.text[:200]}", partner=ctx.partner, status_code=status
        )

    def _record(
        self,
        ctx: _RequestContext,
        outcome: RequestOutcome,
        status_code: Optional[int] = None,
        latency_ms: float = 0.0,
        error: Optional[str] = None,
    ) -> None:
        self.recorder.record(
            RequestRecord(
                request_id=ctx.request_id,
                partner=ctx.partner,
                method=ctx.method,
                endpoint=ctx.path,
                outcome=outcome,
                status_code=status_code,
                latency_ms=latency_ms,
                attempt=max(ctx.attempts, 1),
                error=error,
            )
        )

    @staticmethod
    def _log_retry(ctx: _RequestContext) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "ehr_request_retrying",
                partner=ctx.partner,
                request_id=ctx.request_id,
                attempt=retry_state.attempt_number,
                max_attempts=ctx.config.retry_attempts,
                delay_seconds=ctx.config.retry_delay_seconds,
                error=str(exc) if exc else None,
            )

        return before_sleep

    async def close(self) -> None:
        await self._transport.close()


__all__ = ["ResilientRequestClient"]
