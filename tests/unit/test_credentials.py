"""Unit tests for the credential lifecycle manager and flows."""

import asyncio
import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import jwt
import pytest

from integration_gateway.integrations.ehr import (
    AuthenticationFailed,
    AuthorizationRequired,
    AuthToken,
    CredentialManager,
    ProviderRegistry,
    TransientNetworkError,
    build_flows,
)

from tests.fakes import ACME_TOKEN_URL, json_response, make_acme_config, make_epic_config

EPIC_TOKEN_URL = "https://epic.example.com/oauth2/token"


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def start_epic_authorization(credentials) -> str:
    with pytest.raises(AuthorizationRequired) as exc_info:
        await credentials.authenticate("epic")
    return exc_info.value.state


class TestInteractiveAuthorization:
    """Tests for interactive (authorization code) partners."""

    @pytest.mark.asyncio
    async def test_authenticate_without_code_requires_authorization(self, credentials, transport):
        with pytest.raises(AuthorizationRequired) as exc_info:
            await credentials.authenticate("epic")

        error = exc_info.value
        assert error.partner == "epic"
        assert error.authorization_url.startswith("https://epic.example.com/oauth2/authorize?")
        params = query_of(error.authorization_url)
        assert params["response_type"] == "code"
        assert params["client_id"] == "epic-client"
        assert params["redirect_uri"] == "https://hospital.example.com/ehr/callback/epic"
        assert params["scope"] == "patient/*.read launch"
        assert params["state"] == error.state
        assert len(error.state) >= 32
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_each_authorization_gets_fresh_state(self, credentials):
        first = await start_epic_authorization(credentials)
        second = await start_epic_authorization(credentials)

        assert first != second

    @pytest.mark.asyncio
    async def test_callback_exchanges_code_and_persists_encrypted(self, credentials, transport, token_store, cipher):
        transport.add("POST", EPIC_TOKEN_URL, json_response(200, {"access_token": "epic-1", "refresh_token": "r-1"}))
        state = await start_epic_authorization(credentials)

        await credentials.handle_callback("epic", "auth-code", state)

        (call,) = transport.calls_to(EPIC_TOKEN_URL)
        assert call.form["grant_type"] == "authorization_code"
        assert call.form["code"] == "auth-code"
        assert call.form["redirect_uri"] == "https://hospital.example.com/ehr/callback/epic"
        assert credentials.get_token("epic").access_token == "epic-1"

        blob = await token_store.load("epic")
        assert "epic-1" not in blob
        assert cipher.decrypt(blob).refresh_token == "r-1"

    @pytest.mark.asyncio
    async def test_authenticate_with_code_skips_redirect(self, credentials, transport):
        transport.add("POST", EPIC_TOKEN_URL, json_response(200, {"access_token": "epic-1"}))

        token = await credentials.authenticate("epic", code="direct-code")

        assert token.access_token == "epic-1"

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, credentials, transport):
        transport.add("POST", EPIC_TOKEN_URL, json_response(200, {"access_token": "epic-1"}))
        state = await start_epic_authorization(credentials)
        await credentials.handle_callback("epic", "code", state)

        with pytest.raises(AuthenticationFailed):
            await credentials.handle_callback("epic", "code", state)

    @pytest.mark.asyncio
    async def test_unknown_state_rejected(self, credentials, transport):
        with pytest.raises(AuthenticationFailed):
            await credentials.handle_callback("epic", "code", "forged-state")
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_state_bound_to_partner(self, transport, token_store, cipher, clock):
        registry = ProviderRegistry([make_epic_config(), make_epic_config(partner_id="epic2")])
        credentials = CredentialManager(registry, build_flows(transport, clock), token_store, cipher, clock=clock)
        state = await start_epic_authorization(credentials)

        with pytest.raises(AuthenticationFailed):
            await credentials.handle_callback("epic2", "code", state)

    @pytest.mark.asyncio
    async def test_wrong_partner_callback_leaves_state_pending(self, transport, token_store, cipher, clock):
        registry = ProviderRegistry([make_epic_config(), make_epic_config(partner_id="epic2")])
        credentials = CredentialManager(registry, build_flows(transport, clock), token_store, cipher, clock=clock)
        transport.add("POST", EPIC_TOKEN_URL, json_response(200, {"access_token": "epic-1"}))
        state = await start_epic_authorization(credentials)

        with pytest.raises(AuthenticationFailed):
            await credentials.handle_callback("epic2", "code", state)
        token = await credentials.handle_callback("epic", "code", state)

        assert token.access_token == "epic-1"
        assert credentials.get_token("epic2") is None

    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, credentials, transport, clock):
        state = await start_epic_authorization(credentials)

        clock.advance(601)

        with pytest.raises(AuthenticationFailed):
            await credentials.handle_callback("epic", "code", state)
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_pkce_challenge_and_verifier(self, transport, token_store, cipher, clock):
        registry = ProviderRegistry([make_epic_config(use_pkce=True)])
        credentials = CredentialManager(registry, build_flows(transport, clock), token_store, cipher, clock=clock)
        transport.add("POST", EPIC_TOKEN_URL, json_response(200, {"access_token": "epic-1"}))

        with pytest.raises(AuthorizationRequired) as exc_info:
            await credentials.authenticate("epic")
        params = query_of(exc_info.value.authorization_url)
        await credentials.handle_callback("epic", "code", exc_info.value.state)

        assert params["code_challenge_method"] == "S256"
        verifier = transport.calls[0].form["code_verifier"]
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert params["code_challenge"] == expected

    @pytest.mark.asyncio
    async def test_id_token_subject_recorded(self, credentials, transport):
        id_token = jwt.encode({"sub": "practitioner-42"}, "partner-signing-key", algorithm="HS256")
        transport.add("POST", EPIC_TOKEN_URL, json_response(200, {"access_token": "epic-1", "id_token": id_token}))

        token = await credentials.authenticate("epic", code="c")

        assert token.subject == "practitioner-42"


class TestClientCredentials:
    """Tests for client-credentials and unauthenticated partners."""

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self, credentials, transport, clock):
        transport.add("POST", ACME_TOKEN_URL, json_response(200, {"access_token": "acme-1", "expires_in": 1800}))

        token = await credentials.authenticate("acme")

        (call,) = transport.calls
        assert call.form == {
            "grant_type": "client_credentials",
            "scope": "system/*.read",
            "client_id": "acme-client",
            "client_secret": "acme-secret",
        }
        assert token.expires_in == 1800
        assert token.issued_at == clock.now

    @pytest.mark.asyncio
    async def test_basic_client_authentication(self, transport, token_store, cipher, clock):
        registry = ProviderRegistry([make_acme_config(token_auth_method="client_secret_basic")])
        credentials = CredentialManager(registry, build_flows(transport, clock), token_store, cipher, clock=clock)
        transport.add("POST", ACME_TOKEN_URL, json_response(200, {"access_token": "acme-1"}))

        await credentials.authenticate("acme")

        call = transport.calls[0]
        expected = base64.b64encode(b"acme-client:acme-secret").decode()
        assert call.headers["Authorization"] == f"Basic {expected}"
        assert "client_secret" not in call.form

    @pytest.mark.asyncio
    async def test_rejected_grant_raises_and_stores_nothing(self, credentials, transport, token_store):
        transport.add("POST", ACME_TOKEN_URL, json_response(401, {"error": "invalid_client"}))

        with pytest.raises(AuthenticationFailed) as exc_info:
            await credentials.authenticate("acme")

        assert exc_info.value.status_code == 401
        assert credentials.get_token("acme") is None
        assert await token_store.load("acme") is None

    @pytest.mark.asyncio
    async def test_token_endpoint_outage_is_transient(self, credentials, transport):
        transport.add("POST", ACME_TOKEN_URL, json_response(503))

        with pytest.raises(TransientNetworkError):
            await credentials.authenticate("acme")

    @pytest.mark.asyncio
    async def test_unauthenticated_partner_gets_pseudo_token(self, credentials, transport):
        token = await credentials.authenticate("openfhir")

        assert transport.calls == []
        assert token.token_type == "none"
        assert credentials.is_valid(token)


class TestRefresh:
    """Tests for refresh and cached token validity."""

    @pytest.mark.asyncio
    async def test_refresh_keeps_previous_refresh_token(self, credentials, transport):
        transport.add(
            "POST",
            EPIC_TOKEN_URL,
            json_response(200, {"access_token": "epic-1", "refresh_token": "r-1"}),
            json_response(200, {"access_token": "epic-2"}),
        )
        await credentials.authenticate("epic", code="c")

        token = await credentials.refresh("epic")

        assert token.access_token == "epic-2"
        assert token.refresh_token == "r-1"
        assert transport.calls[-1].form["grant_type"] == "refresh_token"
        assert transport.calls[-1].form["refresh_token"] == "r-1"

    @pytest.mark.asyncio
    async def test_rejected_refresh_clears_token(self, credentials, transport, token_store):
        transport.add(
            "POST",
            EPIC_TOKEN_URL,
            json_response(200, {"access_token": "epic-1", "refresh_token": "r-1"}),
            json_response(400, {"error": "invalid_grant"}),
        )
        await credentials.authenticate("epic", code="c")

        with pytest.raises(AuthenticationFailed):
            await credentials.refresh("epic")

        assert credentials.get_token("epic") is None
        assert await token_store.load("epic") is None

    @pytest.mark.asyncio
    async def test_interactive_refresh_without_refresh_token_fails(self, credentials, transport):
        transport.add("POST", EPIC_TOKEN_URL, json_response(200, {"access_token": "epic-1"}))
        await credentials.authenticate("epic", code="c")

        with pytest.raises(AuthenticationFailed):
            await credentials.refresh("epic")
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_client_credentials_refresh_regrants(self, credentials, transport):
        transport.add(
            "POST",
            ACME_TOKEN_URL,
            json_response(200, {"access_token": "acme-1"}),
            json_response(200, {"access_token": "acme-2"}),
        )
        await credentials.authenticate("acme")

        token = await credentials.refresh("acme")

        assert token.access_token == "acme-2"
        assert transport.calls[-1].form["grant_type"] == "client_credentials"

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_call(self, credentials, transport):
        gate = asyncio.Event()
        transport.add("POST", ACME_TOKEN_URL, json_response(200, {"access_token": "acme-1"}))
        original_send = transport.send

        async def gated_send(*args, **kwargs):
            await gate.wait()
            return await original_send(*args, **kwargs)

        transport.send = gated_send

        waiters = [asyncio.ensure_future(credentials.refresh("acme")) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        tokens = await asyncio.gather(*waiters)

        assert len(transport.calls) == 1
        assert {t.access_token for t in tokens} == {"acme-1"}

    @pytest.mark.asyncio
    async def test_refresh_after_completion_issues_new_call(self, credentials, transport):
        transport.add(
            "POST",
            ACME_TOKEN_URL,
            json_response(200, {"access_token": "acme-1"}),
            json_response(200, {"access_token": "acme-2"}),
        )

        await credentials.refresh("acme")
        token = await credentials.refresh("acme")

        assert token.access_token == "acme-2"
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_cached_token_validity_needs_no_network(self, credentials, transport, clock):
        transport.add("POST", ACME_TOKEN_URL, json_response(200, {"access_token": "acme-1"}))
        await credentials.authenticate("acme")

        for _ in range(3):
            assert credentials.is_valid(credentials.get_token("acme"))
        clock.advance(3600)

        assert not credentials.is_valid(credentials.get_token("acme"))
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_rejected_token_already_replaced_is_not_refreshed_again(self, credentials, transport):
        transport.add(
            "POST",
            ACME_TOKEN_URL,
            json_response(200, {"access_token": "acme-1"}),
            json_response(200, {"access_token": "acme-2"}),
            json_response(200, {"access_token": "acme-3"}),
        )
        stale = await credentials.authenticate("acme")
        await credentials.refresh("acme", rejected=stale)

        token = await credentials.refresh("acme", rejected=stale)

        assert token.access_token == "acme-2"
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_rejected_current_token_is_refreshed(self, credentials, transport):
        transport.add(
            "POST",
            ACME_TOKEN_URL,
            json_response(200, {"access_token": "acme-1"}),
            json_response(200, {"access_token": "acme-2"}),
        )
        current = await credentials.authenticate("acme")

        token = await credentials.refresh("acme", rejected=current)

        assert token.access_token == "acme-2"
        assert len(transport.calls) == 2

    def test_token_status(self, credentials):
        assert credentials.token_status("acme") == {
            "authenticated": False,
            "expires_at": None,
            "has_refresh_token": False,
            "subject": None,
        }


class TestRestore:
    """Tests for restart durability."""

    @pytest.mark.asyncio
    async def test_restore_loads_persisted_tokens(self, registry, transport, token_store, cipher, clock):
        token = AuthToken(access_token="persisted", refresh_token="r", issued_at=clock.now)
        await token_store.save("acme", cipher.encrypt(token))
        credentials = CredentialManager(registry, build_flows(transport, clock), token_store, cipher, clock=clock)

        restored = await credentials.restore()

        assert restored == 1
        assert credentials.get_token("acme") == token

    @pytest.mark.asyncio
    async def test_restore_discards_undecryptable(self, registry, transport, token_store, cipher, clock):
        await token_store.save("acme", "corrupted")
        credentials = CredentialManager(registry, build_flows(transport, clock), token_store, cipher, clock=clock)

        restored = await credentials.restore()

        assert restored == 0
        assert await token_store.load("acme") is None

    @pytest.mark.asyncio
    async def test_revoke(self, credentials, transport, token_store):
        transport.add("POST", ACME_TOKEN_URL, json_response(200, {"access_token": "acme-1"}))
        await credentials.authenticate("acme")

        await credentials.revoke("acme")

        assert credentials.get_token("acme") is None
        assert await token_store.partners() == []
