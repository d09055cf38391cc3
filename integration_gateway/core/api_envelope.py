"""
Standard API response envelope for the integration endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel


class APIEnvelope(BaseModel):
    """Standard API response envelope."""

    success: bool
    data: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: str


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def success_response(
    data: Any,
    request_id: Optional[str] = None,
    version: str = "1.0.0",
    **extra_metadata,
) -> Dict[str, Any]:
    """
    Create a successful API response.

    Args:
        data: Response data
        request_id: Request correlation ID
        version: API version
        extra_metadata: Additional metadata fields (e.g. partner, count)
    """
    metadata = {
        "version": version,
        **({"request_id": request_id} if request_id else {}),
        **extra_metadata,
    }

    return {
        "success": True,
        "data": data,
        "error": None,
        "metadata": metadata,
        "timestamp": _timestamp(),
    }


def error_response(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
    version: str = "1.0.0",
) -> Dict[str, Any]:
    """
    Create an error API response.

    Args:
        code: Machine-readable error code (e.g. "RATE_LIMITED")
        message: Human-readable error message
        details: Additional error details
        request_id: Request correlation ID
        version: API version
    """
    error = {"code": code, "message": message}
    if details:
        error["details"] = details

    return {
        "success": False,
        "data": None,
        "error": error,
        "metadata": {
            "version": version,
            **({"request_id": request_id} if request_id else {}),
        },
        "timestamp": _timestamp(),
    }


class ErrorCodes:
    """Machine-readable error codes returned by the integration API."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    AUTHORIZATION_REQUIRED = "AUTHORIZATION_REQUIRED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"
    NOT_FOUND = "NOT_FOUND"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
