"""
Application configuration
"""

from typing import Any, Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "Hospital Integration Gateway"
    APP_VERSION: str = "0.1.0"
    # SECURITY: Debug mode defaults to False to prevent stack trace exposure in production
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    # Token persistence
    # Fernet key (urlsafe base64, 32 bytes). When unset an ephemeral key is
    # generated at startup and persisted tokens do not survive a restart.
    TOKEN_ENCRYPTION_KEY: Optional[str] = None

    # Partner connections, JSON list of provider config objects, e.g.
    # EHR_PROVIDERS='[{"partner_id": "epic", "template": "epic", "client_id": "..."}]'
    EHR_PROVIDERS: List[Dict[str, Any]] = []

    # Defaults applied to partners that do not override them
    EHR_DEFAULT_TIMEOUT_SECONDS: float = 30.0
    EHR_DEFAULT_RETRY_ATTEMPTS: int = 3
    EHR_DEFAULT_RETRY_DELAY_SECONDS: float = 1.0
    EHR_DEFAULT_RATE_LIMIT_PER_MINUTE: int = 60

    # Observability
    EHR_REQUEST_LOG_SIZE: int = 1000

    # OAuth authorization state lifetime (interactive flows)
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Webhooks
    WEBHOOK_SIGNATURE_HEADER: str = "X-Webhook-Signature"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def provider_defaults(self) -> Dict[str, Any]:
        """Per-partner policy defaults as ProviderConfig field values."""
        return {
            "timeout_seconds": self.EHR_DEFAULT_TIMEOUT_SECONDS,
            "retry_attempts": self.EHR_DEFAULT_RETRY_ATTEMPTS,
            "retry_delay_seconds": self.EHR_DEFAULT_RETRY_DELAY_SECONDS,
            "rate_limit_per_minute": self.EHR_DEFAULT_RATE_LIMIT_PER_MINUTE,
        }

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()
