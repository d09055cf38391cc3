"""
Credential Lifecycle Manager

Acquires, validates, refreshes and persists one app-level bearer token per
partner.

Features:
- Interactive authorization with single-use, expiring state nonces (+ PKCE)
- Direct exchange for client-credentials and unauthenticated partners
- Single-flight refresh: concurrent callers share one outstanding refresh
- Fernet-encrypted persistence through a TokenStore for restart durability
"""

import asyncio
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from integration_gateway.core.logging import get_logger

from .auth_flows import CredentialFlow, InteractiveOAuthFlow, generate_pkce_pair
from .exceptions import AuthenticationFailed, AuthorizationRequired
from .models import AuthFamily, AuthToken, ProviderConfig
from .registry import ProviderRegistry
from .token_store import InMemoryTokenStore, TokenCipher, TokenStore

logger = get_logger(__name__)


@dataclass
class PendingAuthorization:
    """Outstanding interactive authorization awaiting its callback"""

    partner: str
    state: str
    created_at: float
    code_verifier: Optional[str] = None

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now > self.created_at + ttl_seconds


class CredentialManager:
    """
    Owns every partner token.

    Usage:
        manager = CredentialManager(registry, build_flows(transport), store, cipher)
        await manager.restore()

        try:
            await manager.authenticate("epic")
        except AuthorizationRequired as e:
            redirect(e.authorization_url)

        # later, from the OAuth callback
        await manager.handle_callback("epic", code, state)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        flows: Dict[AuthFamily, CredentialFlow],
        store: Optional[TokenStore] = None,
        cipher: Optional[TokenCipher] = None,
        clock: Callable[[], float] = time.time,
        state_ttl_seconds: float = 600,
    ):
        self._registry = registry
        self._flows = flows
        self._store = store or InMemoryTokenStore()
        self._cipher = cipher or TokenCipher()
        self._clock = clock
        self._state_ttl_seconds = state_ttl_seconds

        self._tokens: Dict[str, AuthToken] = {}
        self._pending: Dict[str, PendingAuthorization] = {}
        self._refreshes: Dict[str, "asyncio.Task[AuthToken]"] = {}

    def _flow(self, config: ProviderConfig) -> CredentialFlow:
        return self._flows[config.family]

    # =========================================================================
    # Startup
    # =========================================================================

    async def restore(self) -> int:
        """Load persisted tokens. Undecryptable entries are discarded."""
        restored = 0
        for partner in await self._store.partners():
            blob = await self._store.load(partner)
            token = self._cipher.decrypt(blob) if blob else None
            if token is None:
                await self._store.delete(partner)
                continue
            self._tokens[partner] = token
            restored += 1
        logger.info("ehr_tokens_restored", count=restored)
        return restored

    # =========================================================================
    # Acquisition
    # =========================================================================

    async def authenticate(self, partner: str, code: Optional[str] = None) -> AuthToken:
        """
        Obtain a token for ``partner`` using its configured grant.

        Raises:
            AuthorizationRequired: interactive partner and no code supplied
            AuthenticationFailed: the partner rejected the exchange
            ConfigurationError: partner unknown or disabled
        """
        config = self._registry.get(partner)
        flow = self._flow(config)

        if config.family == AuthFamily.INTERACTIVE_OAUTH and not code:
            url, state = self.begin_authorization(partner)
            raise AuthorizationRequired(
                f"Interactive authorization required for {partner}",
                partner=partner,
                authorization_url=url,
                state=state,
            )

        token = await flow.exchange(config, code=code)
        await self._save(partner, token)
        return token

    def begin_authorization(self, partner: str) -> Tuple[str, str]:
        """Create a pending authorization. Returns (authorization_url, state)."""
        config = self._registry.get(partner)
        flow = self._flow(config)
        if not isinstance(flow, InteractiveOAuthFlow):
            raise AuthenticationFailed(f"{partner} does not use interactive authorization", partner=partner)

        self._purge_expired_states()
        state = secrets.token_urlsafe(32)
        code_verifier, code_challenge = generate_pkce_pair() if config.use_pkce else (None, None)
        self._pending[state] = PendingAuthorization(
            partner=partner,
            state=state,
            created_at=self._clock(),
            code_verifier=code_verifier,
        )

        logger.info("ehr_authorization_started", partner=partner, pkce=config.use_pkce)
        return flow.authorization_url(config, state, code_challenge), state

    async def handle_callback(self, partner: str, code: str, state: str) -> AuthToken:
        """
        Complete an interactive authorization.

        The state must have been issued for this partner and not yet used or
        expired. A state presented for the wrong partner is left pending.
        """
        pending = self._pending.get(state)
        if pending is None or pending.partner != partner:
            logger.warning("ehr_authorization_state_rejected", partner=partner, reason="unknown")
            raise AuthenticationFailed("Invalid or expired state parameter", partner=partner)
        del self._pending[state]
        if pending.is_expired(self._clock(), self._state_ttl_seconds):
            logger.warning("ehr_authorization_state_rejected", partner=partner, reason="expired")
            raise AuthenticationFailed("Authorization state expired", partner=partner)

        config = self._registry.get(partner)
        token = await self._flow(config).exchange(config, code=code, code_verifier=pending.code_verifier)
        await self._save(partner, token)
        return token

    def _purge_expired_states(self) -> None:
        now = self._clock()
        for state in [s for s, p in self._pending.items() if p.is_expired(now, self._state_ttl_seconds)]:
            del self._pending[state]

    # =========================================================================
    # Validation and refresh
    # =========================================================================

    def is_valid(self, token: Optional[AuthToken]) -> bool:
        return token is not None and token.is_valid(self._clock())

    def get_token(self, partner: str) -> Optional[AuthToken]:
        return self._tokens.get(partner)

    async def refresh(self, partner: str, rejected: Optional[AuthToken] = None) -> AuthToken:
        """
        Renew the partner's token.

        Concurrent callers await the same in-flight refresh. When ``rejected``
        is given and a different valid token is already cached, that token is
        returned without another refresh. A rejected refresh clears the stored
        token and raises AuthenticationFailed.
        """
        if rejected is not None:
            current = self._tokens.get(partner)
            if self.is_valid(current) and current.access_token != rejected.access_token:
                logger.debug("ehr_refresh_skipped", partner=partner)
                return current

        task = self._refreshes.get(partner)
        if task is None:
            task = asyncio.ensure_future(self._refresh(partner))
            self._refreshes[partner] = task

            def _clear(done: "asyncio.Task[AuthToken]") -> None:
                if self._refreshes.get(partner) is done:
                    del self._refreshes[partner]

            task.add_done_callback(_clear)
        else:
            logger.debug("ehr_refresh_joined", partner=partner)

        return await asyncio.shield(task)

    async def _refresh(self, partner: str) -> AuthToken:
        config = self._registry.get(partner)
        current = self._tokens.get(partner)
        try:
            token = await self._flow(config).refresh(config, current)
        except AuthenticationFailed as e:
            logger.error("ehr_token_refresh_failed", partner=partner, error=e.message)
            await self.revoke(partner)
            raise

        await self._save(partner, token)
        logger.info("ehr_token_refreshed", partner=partner)
        return token

    # =========================================================================
    # Storage
    # =========================================================================

    async def _save(self, partner: str, token: AuthToken) -> None:
        self._tokens[partner] = token
        await self._store.save(partner, self._cipher.encrypt(token))

    async def revoke(self, partner: str) -> None:
        """Forget the partner's token locally and in the store."""
        self._tokens.pop(partner, None)
        await self._store.delete(partner)
        logger.info("ehr_token_cleared", partner=partner)

    def token_status(self, partner: str) -> Dict[str, Any]:
        token = self._tokens.get(partner)
        return {
            "authenticated": self.is_valid(token),
            "expires_at": token.expires_at if token else None,
            "has_refresh_token": bool(token and token.refresh_token),
            "subject": token.subject if token else None,
        }


__all__ = ["PendingAuthorization", "CredentialManager"]
