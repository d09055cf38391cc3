"""
Integration error taxonomy.

Every failure raised by the EHR integration layer derives from
``IntegrationError`` and carries the partner it concerns, so callers and the
REST adapter can log and map errors uniformly.
"""

from typing import Optional


class IntegrationError(Exception):
    """Base integration error"""

    def __init__(
        self,
        message: str,
        partner: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.partner = partner
        self.status_code = status_code


class ConfigurationError(IntegrationError):
    """Partner is unknown, disabled or misconfigured"""


class AuthorizationRequired(IntegrationError):
    """Interactive authorization is needed before a token can be obtained"""

    def __init__(self, message: str, partner: str, authorization_url: str, state: str):
        super().__init__(message, partner)
        self.authorization_url = authorization_url
        self.state = state


class AuthenticationFailed(IntegrationError):
    """Token exchange or refresh was rejected, or no usable token exists"""


class RateLimited(IntegrationError):
    """Local per-partner throttle tripped"""

    def __init__(self, message: str, partner: str, limit: int, reset_at: float):
        super().__init__(message, partner, 429)
        self.limit = limit
        self.reset_at = reset_at


class TransientNetworkError(IntegrationError):
    """Timeout, connection failure or retryable partner status (5xx, 429)"""


class InvalidSignature(IntegrationError):
    """Webhook signature did not match the partner's shared secret"""


class MalformedMessage(IntegrationError):
    """Inbound message could not be structurally decoded"""


class UpstreamError(IntegrationError):
    """Partner call failed permanently or after retries were exhausted"""


class ResourceNotFound(UpstreamError):
    """Partner answered 404 for the requested resource"""


__all__ = [
    "IntegrationError",
    "ConfigurationError",
    "AuthorizationRequired",
    "AuthenticationFailed",
    "RateLimited",
    "TransientNetworkError",
    "InvalidSignature",
    "MalformedMessage",
    "UpstreamError",
    "ResourceNotFound",
]
