"""
EHR Integration Package

Connects the platform to independently operated partner health systems.

Components:
- ProviderRegistry: validated per-partner configuration
- FixedWindowRateLimiter: per-partner request throttle
- CredentialManager: token acquisition, refresh and encrypted persistence
- ResilientRequestClient: auth injection, throttling, retry and request records
- ResourceFacade: get/search/create/update over clinical resources
- WebhookPipeline: signed partner callbacks with a handler registry
- LegacyMessageParser: structural HL7 v2 decoding
- EHRIntegrationService: composition root used by the API layer

Usage:
    from integration_gateway.integrations.ehr import EHRIntegrationService
    from integration_gateway.core.config import settings

    service = EHRIntegrationService.build(settings)
    await service.start()

    try:
        await service.authenticate("epic")
    except AuthorizationRequired as e:
        redirect_to(e.authorization_url)
"""

# Credential flows and lifecycle
from .auth_flows import ClientCredentialsFlow, CredentialFlow, InteractiveOAuthFlow, UnauthenticatedFlow, build_flows
from .client import ResilientRequestClient
from .credentials import CredentialManager

# Errors
from .exceptions import (
    AuthenticationFailed,
    AuthorizationRequired,
    ConfigurationError,
    IntegrationError,
    InvalidSignature,
    MalformedMessage,
    RateLimited,
    ResourceNotFound,
    TransientNetworkError,
    UpstreamError,
)

# Legacy messages
from .hl7_parser import LegacyMessageParser, ParsedMessage, Segment

# Models
from .models import (
    AuthFamily,
    AuthToken,
    ClinicalResource,
    PatientRecord,
    ProviderConfig,
    ResourceType,
    TokenAuthMethod,
    WebhookEvent,
)
from .rate_limiter import FixedWindowRateLimiter
from .registry import PROVIDER_TEMPLATES, InMemoryProviderConfigStore, ProviderRegistry, build_provider_config
from .request_log import InMemoryRequestLog, IntegrationStats, RequestOutcome, RequestRecord
from .resources import ResourceFacade
from .service import EHRIntegrationService
from .token_store import InMemoryTokenStore, TokenCipher
from .transport import AiohttpTransport, HttpResponse
from .webhooks import (
    InMemoryWebhookLog,
    WebhookHandlerRegistry,
    WebhookPipeline,
    compute_signature,
    register_default_handlers,
    verify_signature,
)

__all__ = [
    # Service
    "EHRIntegrationService",
    # Components
    "ProviderRegistry",
    "build_provider_config",
    "PROVIDER_TEMPLATES",
    "InMemoryProviderConfigStore",
    "FixedWindowRateLimiter",
    "CredentialManager",
    "CredentialFlow",
    "InteractiveOAuthFlow",
    "ClientCredentialsFlow",
    "UnauthenticatedFlow",
    "build_flows",
    "TokenCipher",
    "InMemoryTokenStore",
    "ResilientRequestClient",
    "AiohttpTransport",
    "HttpResponse",
    "InMemoryRequestLog",
    "IntegrationStats",
    "RequestOutcome",
    "RequestRecord",
    "ResourceFacade",
    "WebhookPipeline",
    "WebhookHandlerRegistry",
    "InMemoryWebhookLog",
    "register_default_handlers",
    "compute_signature",
    "verify_signature",
    "LegacyMessageParser",
    "ParsedMessage",
    "Segment",
    # Models
    "AuthFamily",
    "TokenAuthMethod",
    "ResourceType",
    "ProviderConfig",
    "AuthToken",
    "ClinicalResource",
    "PatientRecord",
    "WebhookEvent",
    # Errors
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
