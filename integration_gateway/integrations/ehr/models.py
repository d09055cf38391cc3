"""
EHR Integration Data Models

Shared types for the partner integration layer:
- ProviderConfig: validated per-partner connection and policy settings
- AuthToken: app-level bearer credential held per partner
- RateLimitWindow: fixed-window request counter
- ClinicalResource: partner-native resource with normalized id/status/subject
- WebhookEvent: inbound partner callback and its processing state
- PatientRecord: composite result of a patient sync
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

# Tokens are treated as expired this many seconds before their stated expiry
TOKEN_EXPIRY_SKEW_SECONDS = 60


# ==============================================================================
# Enums
# ==============================================================================


class AuthFamily(str, Enum):
    """How a partner issues bearer tokens"""

    INTERACTIVE_OAUTH = "interactive_oauth"  # authorization code, user consent
    CLIENT_CREDENTIALS = "client_credentials"  # server-to-server
    UNAUTHENTICATED = "unauthenticated"  # open sandbox endpoints


class TokenAuthMethod(str, Enum):
    """Client authentication at the token endpoint"""

    CLIENT_SECRET_POST = "client_secret_post"
    CLIENT_SECRET_BASIC = "client_secret_basic"


class ResourceType(str, Enum):
    """Clinical resource types proxied to partners"""

    PATIENT = "Patient"
    OBSERVATION = "Observation"
    APPOINTMENT = "Appointment"
    MEDICATION_REQUEST = "MedicationRequest"
    ENCOUNTER = "Encounter"
    CONDITION = "Condition"
    ALLERGY_INTOLERANCE = "AllergyIntolerance"


# ==============================================================================
# Provider Configuration
# ==============================================================================


class ProviderConfig(BaseModel):
    """Connection, credential and policy settings for one partner system."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    partner_id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_\-]+$")
    display_name: str = ""
    family: AuthFamily = AuthFamily.CLIENT_CREDENTIALS
    base_url: str

    # Credentials
    client_id: Optional[str] = None
    client_secret: Optional[SecretStr] = None
    token_url: Optional[str] = None
    authorize_url: Optional[str] = None
    redirect_uri: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    audience: Optional[str] = None
    token_auth_method: TokenAuthMethod = TokenAuthMethod.CLIENT_SECRET_POST
    use_pkce: bool = False

    # Policy
    timeout_seconds: float = Field(30.0, gt=0, le=300)
    retry_attempts: int = Field(3, ge=1, le=10)
    retry_delay_seconds: float = Field(1.0, ge=0, le=60)
    rate_limit_per_minute: int = Field(60, ge=1, le=100_000)
    enabled: bool = True

    # Conventions
    webhook_secret: Optional[SecretStr] = None
    resource_paths: Dict[str, str] = Field(default_factory=dict)
    default_headers: Dict[str, str] = Field(default_factory=dict)
    max_search_pages: int = Field(5, ge=1, le=100)

    @field_validator("base_url", "token_url", "authorize_url")
    @classmethod
    def _normalize_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not value.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_credentials(self) -> "ProviderConfig":
        if self.family != AuthFamily.UNAUTHENTICATED and not self.client_id:
            raise ValueError(f"{self.family.value} partners require a client_id")
        if self.family == AuthFamily.INTERACTIVE_OAUTH and not self.redirect_uri:
            raise ValueError("interactive_oauth partners require a redirect_uri")
        return self

    @property
    def requires_auth(self) -> bool:
        return self.family != AuthFamily.UNAUTHENTICATED

    @property
    def token_endpoint(self) -> str:
        return self.token_url or f"{self.base_url}/oauth2/token"

    @property
    def authorization_endpoint(self) -> str:
        return self.authorize_url or f"{self.base_url}/oauth2/authorize"

    def resource_path(self, resource_type: ResourceType) -> str:
        """Path segment the partner uses for a resource type."""
        return self.resource_paths.get(resource_type.value, resource_type.value).strip("/")

    def url_for(self, path: str) -> str:
        """Absolute URL for a partner-relative path."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def to_public_dict(self) -> Dict[str, Any]:
        """Serializable view without secrets."""
        data = self.model_dump(mode="json", exclude={"client_secret", "webhook_secret"})
        data["has_client_secret"] = self.client_secret is not None
        data["has_webhook_secret"] = self.webhook_secret is not None
        return data


# ==============================================================================
# Tokens and Windows
# ==============================================================================


@dataclass
class AuthToken:
    """Bearer token issued by a partner token endpoint"""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: str = ""
    subject: Optional[str] = None  # from id_token when the partner issues one
    issued_at: float = field(default_factory=time.time)

    @classmethod
    def from_response(cls, data: Dict[str, Any], issued_at: Optional[float] = None) -> "AuthToken":
        return cls(
            access_token=data.get("access_token", ""),
            token_type=data.get("token_type") or "Bearer",
            expires_in=int(data.get("expires_in") or 3600),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope", ""),
            issued_at=issued_at if issued_at is not None else time.time(),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthToken":
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope", ""),
            subject=data.get("subject"),
            issued_at=float(data["issued_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "subject": self.subject,
            "issued_at": self.issued_at,
        }

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def is_valid(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at - TOKEN_EXPIRY_SKEW_SECONDS

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


@dataclass
class RateLimitWindow:
    """Request counter for one fixed window"""

    reset_at: float
    count: int = 0


# ==============================================================================
# Clinical Resources
# ==============================================================================


def _reference(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("reference")
    return None


@dataclass
class ClinicalResource:
    """
    Partner-native clinical resource.

    The payload is kept exactly as the partner returned it; only id, status
    and subject reference are normalized.
    """

    resource_type: ResourceType
    payload: Dict[str, Any]
    partner: str
    id: Optional[str] = None
    status: Optional[str] = None
    subject: Optional[str] = None

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        partner: str,
        resource_type: Optional[ResourceType] = None,
    ) -> "ClinicalResource":
        if resource_type is None:
            resource_type = ResourceType(payload.get("resourceType"))

        resource_id = payload.get("id")
        status = payload.get("status")
        if status is None and "active" in payload:
            status = "active" if payload["active"] else "inactive"

        if resource_type == ResourceType.PATIENT:
            subject = f"Patient/{resource_id}" if resource_id else None
        else:
            subject = _reference(payload.get("subject")) or _reference(payload.get("patient"))
            if subject is None and resource_type == ResourceType.APPOINTMENT:
                for participant in payload.get("participant", []):
                    actor = _reference(participant.get("actor"))
                    if actor and actor.startswith("Patient/"):
                        subject = actor
                        break

        return cls(
            resource_type=resource_type,
            payload=payload,
            partner=partner,
            id=resource_id,
            status=status,
            subject=subject,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type.value,
            "partner": self.partner,
            "id": self.id,
            "status": self.status,
            "subject": self.subject,
            "payload": self.payload,
        }


@dataclass
class PatientRecord:
    """Patient with observations and appointments fetched from one partner"""

    partner: str
    patient: ClinicalResource
    observations: List[ClinicalResource] = field(default_factory=list)
    appointments: List[ClinicalResource] = field(default_factory=list)
    synced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partner": self.partner,
            "patient": self.patient.to_dict(),
            "observations": [o.to_dict() for o in self.observations],
            "appointments": [a.to_dict() for a in self.appointments],
            "synced_at": self.synced_at.isoformat(),
        }


# ==============================================================================
# Webhooks
# ==============================================================================


@dataclass
class WebhookEvent:
    """Inbound partner callback"""

    partner: str
    event_type: str
    data: Dict[str, Any]
    raw_payload: bytes
    signature: Optional[str] = None
    sent_at: Optional[str] = None  # partner-supplied timestamp, if any
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed: bool = False
    processed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "partner": self.partner,
            "event_type": self.event_type,
            "data": self.data,
            "sent_at": self.sent_at,
            "received_at": self.received_at.isoformat(),
            "processed": self.processed,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "error": self.error,
        }


__all__ = [
    "TOKEN_EXPIRY_SKEW_SECONDS",
    "AuthFamily",
    "TokenAuthMethod",
    "ResourceType",
    "ProviderConfig",
    "AuthToken",
    "RateLimitWindow",
    "ClinicalResource",
    "PatientRecord",
    "WebhookEvent",
]
