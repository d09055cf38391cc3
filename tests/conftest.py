from __future__ import annotations

import os

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

# Keep settings deterministic in tests regardless of the caller's .env
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("EHR_PROVIDERS", "[]")

from integration_gateway.integrations.ehr import (  # noqa: E402
    CredentialManager,
    FixedWindowRateLimiter,
    InMemoryRequestLog,
    InMemoryTokenStore,
    ProviderRegistry,
    ResilientRequestClient,
    ResourceFacade,
    TokenCipher,
    build_flows,
)

from tests.fakes import (  # noqa: E402
    ACME_TOKEN_URL,
    FakeClock,
    ScriptedTransport,
    json_response,
    make_acme_config,
    make_epic_config,
    make_open_config,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def registry():
    return ProviderRegistry([make_acme_config(), make_epic_config(), make_open_config()])


@pytest.fixture
def token_store():
    return InMemoryTokenStore()


@pytest.fixture
def cipher():
    return TokenCipher(Fernet.generate_key().decode())


@pytest.fixture
def credentials(registry, transport, token_store, cipher, clock):
    return CredentialManager(registry, build_flows(transport, clock), token_store, cipher, clock=clock)


@pytest.fixture
def rate_limiter(registry, clock):
    return FixedWindowRateLimiter(registry, clock=clock)


@pytest.fixture
def request_log():
    return InMemoryRequestLog(max_records=500)


@pytest.fixture
def client(registry, rate_limiter, credentials, transport, request_log):
    return ResilientRequestClient(registry, rate_limiter, credentials, transport, request_log)


@pytest.fixture
def facade(registry, client):
    return ResourceFacade(registry, client)


@pytest.fixture
def acme_token(transport):
    """Token endpoint for acme answering tok-1, then tok-2 on every later grant."""
    transport.add(
        "POST",
        ACME_TOKEN_URL,
        json_response(200, {"access_token": "tok-1"}),
        json_response(200, {"access_token": "tok-2"}),
    )


@pytest_asyncio.fixture
async def acme_session(credentials, acme_token):
    """acme holding a valid cached tok-1."""
    return await credentials.authenticate("acme")
