"""
Partner credential flows.

Each partner family is one variant implementing the same contract:

- ``exchange(config, code=None, code_verifier=None)`` obtains a fresh token
- ``refresh(config, token)`` renews an expired or rejected token

Supported variants:
- InteractiveOAuthFlow: OAuth 2.0 authorization code (optionally with PKCE)
- ClientCredentialsFlow: OAuth 2.0 client credentials (server-to-server)
- UnauthenticatedFlow: open endpoints, issues a local pseudo token

Reference: RFC 6749 (OAuth 2.0), RFC 7636 (PKCE)
"""

import base64
import hashlib
import secrets
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple, Type
from urllib.parse import urlencode

import jwt

from integration_gateway.core.logging import get_logger

from .exceptions import AuthenticationFailed, TransientNetworkError
from .models import AuthFamily, AuthToken, ProviderConfig, TokenAuthMethod
from .transport import HttpTransport

logger = get_logger(__name__)


def generate_pkce_pair() -> Tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    code_verifier = secrets.token_urlsafe(64)
    code_challenge = base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode()).digest()).decode().rstrip("=")
    return code_verifier, code_challenge


class CredentialFlow(ABC):
    """Token acquisition contract shared by all partner families"""

    family: AuthFamily

    def __init__(self, transport: HttpTransport, clock: Callable[[], float] = time.time):
        self._transport = transport
        self._clock = clock

    @abstractmethod
    async def exchange(
        self,
        config: ProviderConfig,
        code: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> AuthToken:
        """Obtain a new token using the partner's grant."""

    @abstractmethod
    async def refresh(self, config: ProviderConfig, token: Optional[AuthToken]) -> AuthToken:
        """Renew ``token``. Raises AuthenticationFailed when the partner rejects it."""

    # =========================================================================
    # Token endpoint helpers
    # =========================================================================

    async def _post_token(self, config: ProviderConfig, form: Dict[str, str], grant: str) -> AuthToken:
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        form = dict(form)
        secret = config.client_secret.get_secret_value() if config.client_secret else None

        if secret and config.token_auth_method == TokenAuthMethod.CLIENT_SECRET_BASIC:
            credentials = base64.b64encode(f"{config.client_id}:{secret}".encode()).decode()
            headers["Authorization"] = f"Basic {credentials}"
        else:
            form["client_id"] = config.client_id or ""
            if secret:
                form["client_secret"] = secret

        issued_at = self._clock()
        response = await self._transport.send(
            "POST",
            config.token_endpoint,
            headers=headers,
            form=form,
            timeout=config.timeout_seconds,
        )

        if response.status >= 500:
            raise TransientNetworkError(
                f"Token endpoint unavailable ({response.status})",
                partner=config.partner_id,
                status_code=response.status,
            )
        if response.status != 200:
            logger.error(
                "ehr_token_grant_rejected",
                partner=config.partner_id,
                grant=grant,
                status_code=response.status,
                detail=response.text[:200],
            )
            raise AuthenticationFailed(
                f"{grant} grant rejected by {config.partner_id} ({response.status})",
                partner=config.partner_id,
                status_code=response.status,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationFailed(
                f"Unreadable token response from {config.partner_id}", partner=config.partner_id
            ) from e
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthenticationFailed(f"Token response from {config.partner_id} has no access_token", partner=config.partner_id)

        token = AuthToken.from_response(data, issued_at=issued_at)
        if data.get("id_token"):
            token.subject = self._subject_from_id_token(config, data["id_token"])

        logger.info(
            "ehr_token_acquired",
            partner=config.partner_id,
            grant=grant,
            expires_in=token.expires_in,
            has_refresh_token=token.refresh_token is not None,
        )
        return token

    @staticmethod
    def _subject_from_id_token(config: ProviderConfig, id_token: str) -> Optional[str]:
        # Identity is informational only; the access token is what authorizes calls
        try:
            claims = jwt.decode(id_token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            logger.warning("ehr_id_token_undecodable", partner=config.partner_id, error=str(e))
            return None
        return claims.get("sub") or claims.get("fhirUser")

    async def _refresh_grant(self, config: ProviderConfig, token: AuthToken) -> AuthToken:
        new_token = await self._post_token(
            config,
            {"grant_type": "refresh_token", "refresh_token": token.refresh_token},
            grant="refresh_token",
        )
        # Preserve refresh token if not returned
        if not new_token.refresh_token:
            new_token.refresh_token = token.refresh_token
        if not new_token.subject:
            new_token.subject = token.subject
        return new_token


# ==============================================================================
# Variants
# ==============================================================================


class InteractiveOAuthFlow(CredentialFlow):
    """Authorization code grant; tokens require a user-facing consent redirect"""

    family = AuthFamily.INTERACTIVE_OAUTH

    def authorization_url(self, config: ProviderConfig, state: str, code_challenge: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(config.scopes),
            "state": state,
        }
        if config.audience:
            params["aud"] = config.audience
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{config.authorization_endpoint}?{urlencode(params)}"

    async def exchange(
        self,
        config: ProviderConfig,
        code: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> AuthToken:
        if not code:
            raise AuthenticationFailed("Authorization code is required", partner=config.partner_id)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_uri or "",
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await self._post_token(config, form, grant="authorization_code")

    async def refresh(self, config: ProviderConfig, token: Optional[AuthToken]) -> AuthToken:
        if token is None or not token.refresh_token:
            raise AuthenticationFailed(
                f"No refresh token held for {config.partner_id}; interactive authorization required",
                partner=config.partner_id,
            )
        return await self._refresh_grant(config, token)


class ClientCredentialsFlow(CredentialFlow):
    """Client credentials grant; the application itself is the principal"""

    family = AuthFamily.CLIENT_CREDENTIALS

    async def exchange(
        self,
        config: ProviderConfig,
        code: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> AuthToken:
        form = {"grant_type": "client_credentials"}
        if config.scopes:
            form["scope"] = " ".join(config.scopes)
        if config.audience:
            form["audience"] = config.audience
        return await self._post_token(config, form, grant="client_credentials")

    async def refresh(self, config: ProviderConfig, token: Optional[AuthToken]) -> AuthToken:
        if token is not None and token.refresh_token:
            return await self._refresh_grant(config, token)
        # App-owned credentials can simply be re-granted
        return await self.exchange(config)


class UnauthenticatedFlow(CredentialFlow):
    """Open partner endpoints; no token endpoint is ever called"""

    family = AuthFamily.UNAUTHENTICATED

    PSEUDO_TOKEN_LIFETIME = 86400

    async def exchange(
        self,
        config: ProviderConfig,
        code: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> AuthToken:
        return AuthToken(
            access_token="",
            token_type="none",
            expires_in=self.PSEUDO_TOKEN_LIFETIME,
            issued_at=self._clock(),
        )

    async def refresh(self, config: ProviderConfig, token: Optional[AuthToken]) -> AuthToken:
        return await self.exchange(config)


FLOW_VARIANTS: Dict[AuthFamily, Type[CredentialFlow]] = {
    AuthFamily.INTERACTIVE_OAUTH: InteractiveOAuthFlow,
    AuthFamily.CLIENT_CREDENTIALS: ClientCredentialsFlow,
    AuthFamily.UNAUTHENTICATED: UnauthenticatedFlow,
}


def build_flows(transport: HttpTransport, clock: Callable[[], float] = time.time) -> Dict[AuthFamily, CredentialFlow]:
    """One flow instance per family, sharing the transport."""
    return {family: flow_cls(transport, clock) for family, flow_cls in FLOW_VARIANTS.items()}


__all__ = [
    "generate_pkce_pair",
    "CredentialFlow",
    "InteractiveOAuthFlow",
    "ClientCredentialsFlow",
    "UnauthenticatedFlow",
    "FLOW_VARIANTS",
    "build_flows",
]
