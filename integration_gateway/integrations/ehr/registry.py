"""
Provider Registry

Owns the per-partner ProviderConfig objects. It is constructed once at startup
and passed to every component that needs partner settings. Configs are
immutable; an administrative update validates a replacement, persists it
through the ProviderConfigStore and swaps it in atomically.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError

from integration_gateway.core.config import Settings
from integration_gateway.core.logging import get_logger

from .exceptions import ConfigurationError
from .models import AuthFamily, ProviderConfig

logger = get_logger(__name__)


# ==============================================================================
# Partner Templates
# ==============================================================================

# Connection conventions of the partner systems the platform ships with. A
# configured partner names a template and supplies base_url and credentials.
PROVIDER_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "epic": {
        "display_name": "Epic",
        "family": AuthFamily.INTERACTIVE_OAUTH,
        "token_path": "/oauth2/token",
        "authorize_path": "/oauth2/authorize",
        "scopes": ["patient/*.read", "user/*.read", "launch", "online_access"],
        "rate_limit_per_minute": 120,
    },
    "cerner": {
        "display_name": "Cerner",
        "family": AuthFamily.INTERACTIVE_OAUTH,
        "token_path": "/oauth2/token",
        "authorize_path": "/oauth2/authorize",
        "scopes": ["patient/Patient.read", "patient/Observation.read", "patient/Appointment.read"],
        "audience_is_base_url": True,
        "rate_limit_per_minute": 100,
    },
    "allscripts": {
        "display_name": "Allscripts",
        "family": AuthFamily.CLIENT_CREDENTIALS,
        "token_path": "/oauth/token",
        "scopes": ["read", "write"],
    },
    "athena": {
        "display_name": "athenahealth",
        "family": AuthFamily.CLIENT_CREDENTIALS,
        "token_path": "/oauth2/v1/token",
        "scopes": ["patient/*", "user/*"],
    },
    "fhir": {
        "display_name": "Generic FHIR server",
        "family": AuthFamily.CLIENT_CREDENTIALS,
        "token_path": "/oauth/token",
        "scopes": ["read", "write"],
        "unauthenticated_without_client_id": True,
    },
}


def build_provider_config(data: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> ProviderConfig:
    """
    Build a validated ProviderConfig from raw settings.

    ``data`` may name a ``template`` (see PROVIDER_TEMPLATES); explicit keys
    always win over template and policy defaults.

    Raises:
        ConfigurationError: unknown template or invalid values
    """
    data = dict(data)
    template_name = data.pop("template", None)
    merged: Dict[str, Any] = dict(defaults or {})

    if template_name is not None:
        template = PROVIDER_TEMPLATES.get(template_name)
        if template is None:
            raise ConfigurationError(
                f"Unknown provider template '{template_name}'",
                partner=data.get("partner_id"),
            )
        base_url = str(data.get("base_url", "")).rstrip("/")
        merged["display_name"] = template["display_name"]
        merged["family"] = template["family"]
        merged["scopes"] = list(template["scopes"])
        merged["token_url"] = f"{base_url}{template['token_path']}"
        if "authorize_path" in template:
            merged["authorize_url"] = f"{base_url}{template['authorize_path']}"
        if template.get("audience_is_base_url"):
            merged["audience"] = base_url
        if "rate_limit_per_minute" in template:
            merged["rate_limit_per_minute"] = template["rate_limit_per_minute"]
        if template.get("unauthenticated_without_client_id") and not data.get("client_id"):
            merged["family"] = AuthFamily.UNAUTHENTICATED

    merged.update(data)

    try:
        return ProviderConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration for partner '{merged.get('partner_id')}': {e}",
            partner=merged.get("partner_id"),
        ) from e


# ==============================================================================
# Persistence Contract
# ==============================================================================


class ProviderConfigStore(Protocol):
    """External storage for partner configuration"""

    async def load_all(self) -> List[ProviderConfig]:
        ...

    async def save(self, config: ProviderConfig) -> None:
        ...


class InMemoryProviderConfigStore:
    """Process-local ProviderConfigStore"""

    def __init__(self, configs: Optional[Iterable[ProviderConfig]] = None):
        self._configs: Dict[str, ProviderConfig] = {c.partner_id: c for c in configs or []}

    async def load_all(self) -> List[ProviderConfig]:
        return list(self._configs.values())

    async def save(self, config: ProviderConfig) -> None:
        self._configs[config.partner_id] = config


# ==============================================================================
# Registry
# ==============================================================================


class ProviderRegistry:
    """
    Per-partner configuration registry.

    Usage:
        registry = ProviderRegistry.from_settings(settings)
        await registry.load()  # merge configs persisted by administrators
        config = registry.get("epic")
    """

    def __init__(
        self,
        configs: Optional[Iterable[ProviderConfig]] = None,
        store: Optional[ProviderConfigStore] = None,
        defaults: Optional[Dict[str, Any]] = None,
    ):
        self._configs: Dict[str, ProviderConfig] = {}
        self._store = store or InMemoryProviderConfigStore()
        self._defaults = defaults or {}
        self._lock = asyncio.Lock()

        for config in configs or []:
            self.register(config)

    @classmethod
    def from_settings(cls, app_settings: Settings, store: Optional[ProviderConfigStore] = None) -> "ProviderRegistry":
        defaults = app_settings.provider_defaults()
        configs = [build_provider_config(raw, defaults) for raw in app_settings.EHR_PROVIDERS]
        return cls(configs, store=store, defaults=defaults)

    async def load(self) -> int:
        """Merge configs from the store over the current ones. Returns count loaded."""
        stored = await self._store.load_all()
        async with self._lock:
            for config in stored:
                self._configs[config.partner_id] = config
        logger.info("provider_configs_loaded", count=len(stored), partners=self.partner_ids())
        return len(stored)

    def register(self, config: ProviderConfig) -> None:
        self._configs[config.partner_id] = config

    def get(self, partner: str, require_enabled: bool = True) -> ProviderConfig:
        """
        Look up a partner config.

        Raises:
            ConfigurationError: partner unknown, or disabled when require_enabled
        """
        config = self._configs.get(partner)
        if config is None:
            raise ConfigurationError(f"Partner '{partner}' is not configured", partner=partner)
        if require_enabled and not config.enabled:
            raise ConfigurationError(f"Partner '{partner}' is disabled", partner=partner)
        return config

    def find(self, partner: str) -> Optional[ProviderConfig]:
        return self._configs.get(partner)

    def partner_ids(self) -> List[str]:
        return sorted(self._configs)

    def all(self) -> List[ProviderConfig]:
        return [self._configs[p] for p in self.partner_ids()]

    async def update(self, partner: str, changes: Dict[str, Any]) -> ProviderConfig:
        """
        Administrative update of one partner's config.

        The partner id cannot change. The new config is validated as a whole
        and persisted before it becomes visible.
        """
        if "partner_id" in changes and changes["partner_id"] != partner:
            raise ConfigurationError("partner_id cannot be changed", partner=partner)

        async with self._lock:
            current = self._configs.get(partner)
            if current is None:
                raise ConfigurationError(f"Partner '{partner}' is not configured", partner=partner)

            merged = {**current.model_dump(), **changes}
            try:
                updated = ProviderConfig.model_validate(merged)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid configuration update for '{partner}': {e}", partner=partner) from e

            await self._store.save(updated)
            self._configs[partner] = updated

        logger.info("provider_config_updated", partner=partner, fields=sorted(changes))
        return updated


__all__ = [
    "PROVIDER_TEMPLATES",
    "build_provider_config",
    "ProviderConfigStore",
    "InMemoryProviderConfigStore",
    "ProviderRegistry",
]
