"""
Request ID middleware for correlating gateway calls with partner traffic.

Every inbound request gets a correlation ID which is bound into the structlog
context, so partner request records and error logs emitted while serving the
request carry the same ``request_id``.
"""
import uuid
from typing import Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a unique request ID to every request.

    The request ID is taken from the X-Request-ID header when the client sends
    one, otherwise a UUID4 is generated. It is stored on ``request.state``,
    bound into the structlog context and echoed in the response header.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def get_request_id(request: Request) -> str:
    """Return the correlation ID of the current request ("unknown" outside the middleware)."""
    return getattr(request.state, "request_id", "unknown")
