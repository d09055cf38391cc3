"""Unit tests for the request ID middleware."""
from __future__ import annotations

import uuid

import pytest
import structlog
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from integration_gateway.core.request_id import REQUEST_ID_HEADER, RequestIDMiddleware, get_request_id


@pytest.fixture
def client():
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {
            "request_id": get_request_id(request),
            "bound": structlog.contextvars.get_contextvars().get("request_id"),
        }

    return TestClient(app)


@pytest.mark.unit
def test_generates_request_id(client):
    response = client.get("/echo")

    request_id = response.headers[REQUEST_ID_HEADER]
    assert uuid.UUID(request_id)
    assert response.json()["request_id"] == request_id


@pytest.mark.unit
def test_propagates_client_request_id(client):
    response = client.get("/echo", headers={REQUEST_ID_HEADER: "partner-trace-1"})

    assert response.headers[REQUEST_ID_HEADER] == "partner-trace-1"
    assert response.json()["request_id"] == "partner-trace-1"


@pytest.mark.unit
def test_request_id_bound_into_log_context(client):
    response = client.get("/echo", headers={REQUEST_ID_HEADER: "ctx-1"})

    assert response.json()["bound"] == "ctx-1"
    assert "request_id" not in structlog.contextvars.get_contextvars()


@pytest.mark.unit
def test_get_request_id_outside_middleware():
    app = FastAPI()

    @app.get("/plain")
    async def plain(request: Request):
        return {"request_id": get_request_id(request)}

    assert TestClient(app).get("/plain").json() == {"request_id": "unknown"}
