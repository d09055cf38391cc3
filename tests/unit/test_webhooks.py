"""Unit tests for the webhook ingestion pipeline."""

import asyncio
import json

import pytest

from integration_gateway.integrations.ehr import (
    ConfigurationError,
    InMemoryWebhookLog,
    InvalidSignature,
    MalformedMessage,
    ProviderRegistry,
    WebhookHandlerRegistry,
    WebhookPipeline,
    compute_signature,
    register_default_handlers,
    verify_signature,
)
from integration_gateway.integrations.ehr.webhooks import DEFAULT_EVENT_CATEGORIES

from tests.fakes import make_acme_config, make_open_config

SECRET = "whsec-acme"


def payload_bytes(event: str = "patient.updated", **extra) -> bytes:
    body = {"event": event, "data": {"patient_id": "123"}, "timestamp": "2024-01-01T00:00:00Z", **extra}
    return json.dumps(body).encode()


@pytest.fixture
def webhook_registry():
    return ProviderRegistry([make_acme_config(webhook_secret=SECRET), make_open_config()])


@pytest.fixture
def handlers():
    return WebhookHandlerRegistry()


@pytest.fixture
def webhook_log():
    return InMemoryWebhookLog()


@pytest.fixture
def pipeline(webhook_registry, handlers, webhook_log):
    return WebhookPipeline(webhook_registry, handlers, webhook_log)


class TestSignatures:
    """Tests for HMAC signature helpers."""

    def test_valid_signature(self):
        body = payload_bytes()
        assert verify_signature(SECRET, body, compute_signature(SECRET, body))

    def test_prefixed_signature(self):
        body = payload_bytes()
        assert verify_signature(SECRET, body, "sha256=" + compute_signature(SECRET, body))

    def test_single_byte_mutation_rejected(self):
        body = payload_bytes()
        signature = compute_signature(SECRET, body)
        mutated = body[:10] + bytes([body[10] ^ 0x01]) + body[11:]

        assert not verify_signature(SECRET, mutated, signature)

    def test_wrong_secret_rejected(self):
        body = payload_bytes()
        assert not verify_signature(SECRET, body, compute_signature("other", body))

    def test_missing_or_garbage_signature(self):
        body = payload_bytes()
        assert not verify_signature(SECRET, body, None)
        assert not verify_signature(SECRET, body, "")
        assert not verify_signature(SECRET, body, "sha256=né")


class TestPipeline:
    """Tests for WebhookPipeline.receive."""

    @pytest.mark.asyncio
    async def test_signed_event_dispatched_and_processed(self, pipeline, handlers, webhook_log):
        seen = []

        @handlers.on("patient.updated")
        async def handle(event):
            seen.append(event)

        body = payload_bytes()
        event = await pipeline.receive("acme", body, compute_signature(SECRET, body))

        assert event.processed
        assert event.processed_at is not None
        assert event.event_type == "patient.updated"
        assert event.data == {"patient_id": "123"}
        assert event.sent_at == "2024-01-01T00:00:00Z"
        assert seen == [event]
        assert await webhook_log.list_unprocessed() == []

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_before_dispatch(self, pipeline, handlers, webhook_log):
        calls = []
        handlers.register("patient.updated", lambda e: calls.append(e))
        body = payload_bytes()

        with pytest.raises(InvalidSignature) as exc_info:
            await pipeline.receive("acme", body, compute_signature(SECRET, body + b" "))

        assert exc_info.value.status_code == 401
        assert calls == []
        assert await webhook_log.list_unprocessed() == []

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, pipeline):
        with pytest.raises(InvalidSignature):
            await pipeline.receive("acme", payload_bytes(), None)

    @pytest.mark.asyncio
    async def test_partner_without_secret_skips_verification(self, pipeline):
        event = await pipeline.receive("openfhir", payload_bytes())

        assert event.processed

    @pytest.mark.asyncio
    async def test_unknown_event_is_processed_by_default(self, pipeline):
        body = payload_bytes(event="billing.updated")

        event = await pipeline.receive("acme", body, compute_signature(SECRET, body))

        assert event.processed
        assert event.error is None

    @pytest.mark.asyncio
    async def test_missing_event_field(self, pipeline):
        event = await pipeline.receive("openfhir", b'{"resourceType": "Patient", "id": "1"}')

        assert event.event_type == "unknown"
        assert event.data == {"resourceType": "Patient", "id": "1"}

    @pytest.mark.asyncio
    async def test_failing_handler_leaves_receipt_unprocessed(self, pipeline, handlers, webhook_log):
        async def broken(event):
            raise RuntimeError("downstream unavailable")

        handlers.register("patient.updated", broken)
        body = payload_bytes()

        event = await pipeline.receive("acme", body, compute_signature(SECRET, body))

        assert not event.processed
        assert event.error == "downstream unavailable"
        (pending,) = await webhook_log.list_unprocessed("acme")
        assert pending.event_id == event.event_id
        assert webhook_log.get(event.event_id).error == "downstream unavailable"

    @pytest.mark.asyncio
    async def test_handler_timeout(self, webhook_registry, handlers, webhook_log):
        async def slow(event):
            await asyncio.sleep(10)

        handlers.register("patient.updated", slow)
        pipeline = WebhookPipeline(webhook_registry, handlers, webhook_log, handler_timeout_seconds=0.01)
        body = payload_bytes()

        event = await pipeline.receive("acme", body, compute_signature(SECRET, body))

        assert not event.processed
        assert event.error

    @pytest.mark.asyncio
    async def test_malformed_json(self, pipeline, webhook_log):
        with pytest.raises(MalformedMessage):
            await pipeline.receive("openfhir", b"{not json")
        with pytest.raises(MalformedMessage):
            await pipeline.receive("openfhir", b"[1, 2]")
        assert await webhook_log.list_unprocessed() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", [["patient.updated"], {"type": "patient.updated"}, 42])
    async def test_non_string_event_rejected_before_receipt(self, pipeline, handlers, webhook_log, event):
        dispatched = []

        async def handle(received):
            dispatched.append(received)

        handlers.register("patient.updated", handle)

        with pytest.raises(MalformedMessage):
            await pipeline.receive("openfhir", json.dumps({"event": event}).encode())

        assert await webhook_log.list_unprocessed() == []
        assert dispatched == []

    @pytest.mark.asyncio
    async def test_unknown_partner(self, pipeline):
        with pytest.raises(ConfigurationError):
            await pipeline.receive("nobody", payload_bytes())

    @pytest.mark.asyncio
    async def test_redelivery_is_recorded_again(self, pipeline, webhook_log):
        body = payload_bytes()

        first = await pipeline.receive("openfhir", body)
        second = await pipeline.receive("openfhir", body)

        assert first.event_id != second.event_id
        assert first.processed and second.processed


class TestDefaultHandlers:
    """Tests for the built-in event handlers."""

    def test_registers_known_events(self, handlers):
        register_default_handlers(handlers)

        assert handlers.event_types == sorted(DEFAULT_EVENT_CATEGORIES)
        _, known = handlers.resolve("lab.result.available")
        assert known
        _, known = handlers.resolve("billing.updated")
        assert not known

    @pytest.mark.asyncio
    async def test_listeners_receive_events(self, pipeline, handlers):
        received = []

        async def listener(event):
            received.append(event.event_type)

        register_default_handlers(handlers, [listener])

        await pipeline.receive("openfhir", payload_bytes(event="appointment.cancelled"))
        await pipeline.receive("openfhir", payload_bytes(event="prescription.ready"))

        assert received == ["appointment.cancelled", "prescription.ready"]

    @pytest.mark.asyncio
    async def test_failing_listener_fails_event(self, pipeline, handlers):
        async def listener(event):
            raise ValueError("notification service down")

        register_default_handlers(handlers, [listener])

        event = await pipeline.receive("openfhir", payload_bytes(event="patient.created"))

        assert not event.processed
