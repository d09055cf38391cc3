"""
EHR Integration Service

Composition root and inbound interface of the integration layer. The REST
adapter (and any other caller) talks to this service only; it wires the
registry, rate limiter, credential manager, request client, resource facade,
webhook pipeline and HL7 parser together once and shares them by reference.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from integration_gateway.core.config import Settings
from integration_gateway.core.logging import get_logger

from .auth_flows import build_flows
from .client import ResilientRequestClient
from .credentials import CredentialManager
from .exceptions import IntegrationError
from .hl7_parser import LegacyMessageParser, ParsedMessage
from .models import ClinicalResource, PatientRecord, ResourceType
from .rate_limiter import FixedWindowRateLimiter
from .registry import ProviderConfigStore, ProviderRegistry
from .request_log import InMemoryRequestLog
from .resources import ResourceFacade
from .token_store import TokenCipher, TokenStore
from .transport import AiohttpTransport, HttpTransport
from .webhooks import WebhookHandler, WebhookHandlerRegistry, WebhookLog, WebhookPipeline, register_default_handlers

logger = get_logger(__name__)

ResourceListener = Callable[[ClinicalResource], Awaitable[None]]


class EHRIntegrationService:
    """
    Partner integration facade used by the API layer.

    Usage:
        service = EHRIntegrationService.build(settings)
        await service.start()

        patients = await service.search_patients("epic", {"name": "Smith"})
        record = await service.sync_patient_record("epic", patients[0].id)

        await service.close()
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        credentials: CredentialManager,
        rate_limiter: FixedWindowRateLimiter,
        client: ResilientRequestClient,
        resources: ResourceFacade,
        webhooks: WebhookPipeline,
        parser: LegacyMessageParser,
        request_log: InMemoryRequestLog,
    ):
        self.registry = registry
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.client = client
        self.resources = resources
        self.webhooks = webhooks
        self.parser = parser
        self.request_log = request_log
        self._resource_listeners: Dict[ResourceType, List[ResourceListener]] = {}

    @classmethod
    def build(
        cls,
        app_settings: Settings,
        transport: Optional[HttpTransport] = None,
        token_store: Optional[TokenStore] = None,
        config_store: Optional[ProviderConfigStore] = None,
        webhook_log: Optional[WebhookLog] = None,
        webhook_listeners: Optional[List[WebhookHandler]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "EHRIntegrationService":
        """Construct every component once from settings and collaborators."""
        transport = transport or AiohttpTransport()
        registry = ProviderRegistry.from_settings(app_settings, store=config_store)
        rate_limiter = FixedWindowRateLimiter(registry, clock=clock)
        credentials = CredentialManager(
            registry,
            build_flows(transport, clock),
            store=token_store,
            cipher=TokenCipher(app_settings.TOKEN_ENCRYPTION_KEY),
            clock=clock,
            state_ttl_seconds=app_settings.OAUTH_STATE_TTL_SECONDS,
        )
        request_log = InMemoryRequestLog(max_records=app_settings.EHR_REQUEST_LOG_SIZE)
        client = ResilientRequestClient(registry, rate_limiter, credentials, transport, request_log, sleep=sleep)
        handlers = register_default_handlers(WebhookHandlerRegistry(), webhook_listeners)

        return cls(
            registry=registry,
            credentials=credentials,
            rate_limiter=rate_limiter,
            client=client,
            resources=ResourceFacade(registry, client),
            webhooks=WebhookPipeline(registry, handlers, log=webhook_log),
            parser=LegacyMessageParser(),
            request_log=request_log,
        )

    async def start(self) -> None:
        """Load persisted partner configs and tokens."""
        await self.registry.load()
        await self.credentials.restore()

    async def close(self) -> None:
        await self.client.close()

    # =========================================================================
    # Credentials
    # =========================================================================

    async def authenticate(
        self,
        partner: str,
        code: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Authenticate with a partner, optionally applying config overrides first.

        Raises AuthorizationRequired for interactive partners without a code.
        """
        if overrides:
            await self.registry.update(partner, overrides)
        await self.credentials.authenticate(partner, code)
        return self.credentials.token_status(partner)

    async def handle_callback(self, partner: str, code: str, state: str) -> Dict[str, Any]:
        await self.credentials.handle_callback(partner, code, state)
        return self.credentials.token_status(partner)

    async def revoke(self, partner: str) -> None:
        await self.credentials.revoke(partner)

    async def update_provider_config(self, partner: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return (await self.registry.update(partner, changes)).to_public_dict()

    # =========================================================================
    # Clinical resources
    # =========================================================================

    async def search_patients(self, partner: str, params: Optional[Dict[str, Any]] = None) -> List[ClinicalResource]:
        return await self.resources.search_patients(partner, params)

    async def get_patient(self, partner: str, patient_id: str) -> ClinicalResource:
        return await self.resources.get_patient(partner, patient_id)

    async def create_patient(self, partner: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.resources.create_patient(partner, payload)

    async def update_patient(self, partner: str, patient_id: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.resources.update_patient(partner, patient_id, payload)

    async def get_observations(self, partner: str, patient_id: str) -> List[ClinicalResource]:
        return await self.resources.get_observations(partner, patient_id)

    async def create_observation(self, partner: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.resources.create_observation(partner, payload)

    async def get_appointments(self, partner: str, patient_id: Optional[str] = None) -> List[ClinicalResource]:
        return await self.resources.get_appointments(partner, patient_id)

    async def create_appointment(self, partner: str, payload: Dict[str, Any]) -> ClinicalResource:
        return await self.resources.create_appointment(partner, payload)

    async def update_appointment(
        self, partner: str, appointment_id: str, payload: Dict[str, Any]
    ) -> ClinicalResource:
        return await self.resources.update_appointment(partner, appointment_id, payload)

    async def get_medication_requests(self, partner: str, patient_id: str) -> List[ClinicalResource]:
        return await self.resources.get_medication_requests(partner, patient_id)

    async def sync_patient_record(self, partner: str, patient_id: str) -> PatientRecord:
        return await self.resources.sync_patient_record(partner, patient_id)

    def register_resource_listener(self, resource_type: ResourceType, listener: ResourceListener) -> None:
        self._resource_listeners.setdefault(resource_type, []).append(listener)

    async def process_resource(self, resource: ClinicalResource) -> int:
        """
        Hand a decoded resource to the listeners registered for its type.

        Returns the number of listeners invoked. Types without listeners are
        logged and skipped.
        """
        listeners = self._resource_listeners.get(resource.resource_type, [])
        if not listeners:
            logger.info(
                "ehr_resource_unhandled",
                partner=resource.partner,
                resource_type=resource.resource_type.value,
            )
            return 0
        for listener in listeners:
            await listener(resource)
        return len(listeners)

    # =========================================================================
    # Webhooks and legacy messages
    # =========================================================================

    async def process_webhook(self, partner: str, payload: bytes, signature: Optional[str] = None) -> bool:
        """Ingest a partner callback. Returns whether its handler completed."""
        event = await self.webhooks.receive(partner, payload, signature)
        return event.processed

    def parse_message(self, raw_message: str) -> ParsedMessage:
        return self.parser.parse(raw_message)

    # =========================================================================
    # Status and statistics
    # =========================================================================

    async def check_connectivity(self, partner: str) -> Dict[str, Any]:
        """Probe the partner's capability statement endpoint."""
        start_time = time.monotonic()
        try:
            metadata = await self.client.request(partner, "GET", "metadata")
        except IntegrationError as e:
            return {
                "partner": partner,
                "reachable": False,
                "latency_ms": round((time.monotonic() - start_time) * 1000, 2),
                "error_type": type(e).__name__,
                "error": e.message,
            }

        return {
            "partner": partner,
            "reachable": True,
            "latency_ms": round((time.monotonic() - start_time) * 1000, 2),
            "fhir_version": metadata.get("fhirVersion") if isinstance(metadata, dict) else None,
        }

    def get_integration_stats(self, partner: str) -> Dict[str, Any]:
        self.registry.get(partner, require_enabled=False)
        return self.request_log.stats(partner).to_dict()

    async def get_integration_status(self, probe: bool = False) -> List[Dict[str, Any]]:
        """
        Status of every configured partner.

        With ``probe`` the enabled partners are also checked for connectivity,
        concurrently.
        """
        statuses = []
        for config in self.registry.all():
            statuses.append(
                {
                    "partner": config.partner_id,
                    "display_name": config.display_name,
                    "family": config.family.value,
                    "enabled": config.enabled,
                    "base_url": config.base_url,
                    "token": self.credentials.token_status(config.partner_id),
                    "rate_limit": self.rate_limiter.usage(config.partner_id),
                    "stats": self.request_log.stats(config.partner_id).to_dict(),
                }
            )

        if probe:
            enabled = [s for s in statuses if s["enabled"]]
            results = await asyncio.gather(*(self.check_connectivity(s["partner"]) for s in enabled))
            for status, connectivity in zip(enabled, results):
                status["connectivity"] = connectivity

        return statuses


__all__ = ["EHRIntegrationService", "ResourceListener"]
