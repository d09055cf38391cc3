"""
Webhook Ingestion Pipeline

Partner callbacks are processed as:

1. HMAC-SHA256 signature check over the raw body (constant-time compare)
2. Receipt persisted as unprocessed (at-least-once; handlers must be idempotent)
3. Dispatch by ``event`` to the registered handler, no-op for unknown events
4. Receipt marked processed only when the handler returns without error

Failed receipts stay unprocessed in the WebhookLog for external redelivery;
the pipeline does not retry handlers itself.
"""

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

from integration_gateway.core.logging import get_logger

from .exceptions import InvalidSignature, MalformedMessage
from .models import WebhookEvent
from .registry import ProviderRegistry

logger = get_logger(__name__)

WebhookHandler = Callable[[WebhookEvent], Awaitable[None]]

SIGNATURE_PREFIX = "sha256="


# ==============================================================================
# Signatures
# ==============================================================================


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    supplied = signature.strip()
    if supplied.lower().startswith(SIGNATURE_PREFIX):
        supplied = supplied[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(compute_signature(secret, payload).encode(), supplied.lower().encode())


# ==============================================================================
# Receipt Log
# ==============================================================================


class WebhookLog(Protocol):
    """External storage for webhook receipts"""

    async def record(self, event: WebhookEvent) -> None:
        ...

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        ...

    async def mark_failed(self, event_id: str, error: str) -> None:
        ...

    async def list_unprocessed(self, partner: Optional[str] = None) -> List[WebhookEvent]:
        ...


class InMemoryWebhookLog:
    """Process-local WebhookLog"""

    def __init__(self):
        self._events: Dict[str, WebhookEvent] = {}

    async def record(self, event: WebhookEvent) -> None:
        self._events[event.event_id] = event

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        event = self._events[event_id]
        event.processed = True
        event.processed_at = processed_at
        event.error = None

    async def mark_failed(self, event_id: str, error: str) -> None:
        self._events[event_id].error = error

    async def list_unprocessed(self, partner: Optional[str] = None) -> List[WebhookEvent]:
        return [
            e for e in self._events.values() if not e.processed and (partner is None or e.partner == partner)
        ]

    def get(self, event_id: str) -> Optional[WebhookEvent]:
        return self._events.get(event_id)


# ==============================================================================
# Handler Registry
# ==============================================================================


async def _ignore_event(event: WebhookEvent) -> None:
    logger.warning("ehr_webhook_unhandled_event", partner=event.partner, event_type=event.event_type)


class WebhookHandlerRegistry:
    """Event type to handler mapping, populated at startup"""

    def __init__(self, default: WebhookHandler = _ignore_event):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._default = default

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        self._handlers[event_type] = handler

    def on(self, event_type: str) -> Callable[[WebhookHandler], WebhookHandler]:
        """Decorator form of register()."""

        def decorator(handler: WebhookHandler) -> WebhookHandler:
            self.register(event_type, handler)
            return handler

        return decorator

    def resolve(self, event_type: str) -> Tuple[WebhookHandler, bool]:
        """Return (handler, is_registered)."""
        handler = self._handlers.get(event_type)
        if handler is None:
            return self._default, False
        return handler, True

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)


# Events partners are known to send, grouped by the clinical area they touch
DEFAULT_EVENT_CATEGORIES: Dict[str, str] = {
    "patient.created": "patient",
    "patient.updated": "patient",
    "appointment.scheduled": "appointment",
    "appointment.cancelled": "appointment",
    "appointment.rescheduled": "appointment",
    "lab.result.available": "lab_result",
    "prescription.filled": "prescription",
    "prescription.ready": "prescription",
}


def register_default_handlers(
    handlers: WebhookHandlerRegistry,
    listeners: Optional[List[WebhookHandler]] = None,
) -> WebhookHandlerRegistry:
    """
    Register a handler for every known partner event.

    Each handler logs the event and forwards it to ``listeners`` (notification,
    audit and similar downstream services) in order. A failing listener fails
    the handler, which leaves the receipt unprocessed.
    """
    listeners = listeners if listeners is not None else []

    def make_handler(category: str) -> WebhookHandler:
        async def handle(event: WebhookEvent) -> None:
            logger.info(
                f"ehr_webhook_{category}_event",
                partner=event.partner,
                event_type=event.event_type,
                event_id=event.event_id,
            )
            for listener in listeners:
                await listener(event)

        return handle

    for event_type, category in DEFAULT_EVENT_CATEGORIES.items():
        handlers.register(event_type, make_handler(category))
    return handlers


# ==============================================================================
# Pipeline
# ==============================================================================


class WebhookPipeline:
    """Verify, persist and dispatch inbound partner callbacks"""

    def __init__(
        self,
        registry: ProviderRegistry,
        handlers: WebhookHandlerRegistry,
        log: Optional[WebhookLog] = None,
        handler_timeout_seconds: Optional[float] = None,
    ):
        self._registry = registry
        self._handlers = handlers
        self.log = log or InMemoryWebhookLog()
        self._handler_timeout_seconds = handler_timeout_seconds

    async def receive(
        self,
        partner: str,
        raw_payload: Union[bytes, str],
        signature: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Ingest one callback.

        Returns the persisted event; ``event.processed`` is False when its
        handler failed.

        Raises:
            ConfigurationError: partner unknown or disabled
            InvalidSignature: signature missing or wrong for a partner with a secret
            MalformedMessage: body is not a JSON object or its event is not a string
        """
        config = self._registry.get(partner)
        body = raw_payload.encode() if isinstance(raw_payload, str) else raw_payload

        if config.webhook_secret is not None:
            if not verify_signature(config.webhook_secret.get_secret_value(), body, signature):
                logger.warning("ehr_webhook_signature_rejected", partner=partner, signature_present=bool(signature))
                raise InvalidSignature(f"Webhook signature mismatch for {partner}", partner=partner, status_code=401)

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise MalformedMessage(f"Webhook body from {partner} is not valid JSON", partner=partner) from e
        if not isinstance(payload, dict):
            raise MalformedMessage(f"Webhook body from {partner} must be a JSON object", partner=partner)
        event_type = payload.get("event")
        if event_type is not None and not isinstance(event_type, str):
            raise MalformedMessage(f"Webhook event from {partner} must be a string", partner=partner)

        event = WebhookEvent(
            partner=partner,
            event_type=event_type or "unknown",
            data=payload.get("data", payload),
            raw_payload=body,
            signature=signature,
            sent_at=payload.get("timestamp"),
        )
        await self.log.record(event)
        logger.info("ehr_webhook_received", partner=partner, event_type=event.event_type, event_id=event.event_id)

        handler, _ = self._handlers.resolve(event.event_type)
        try:
            if self._handler_timeout_seconds:
                await asyncio.wait_for(handler(event), timeout=self._handler_timeout_seconds)
            else:
                await handler(event)
        except Exception as e:
            logger.error(
                "ehr_webhook_handler_failed",
                partner=partner,
                event_type=event.event_type,
                event_id=event.event_id,
                error=str(e) or type(e).__name__,
                exc_info=True,
            )
            await self.log.mark_failed(event.event_id, str(e) or type(e).__name__)
            event.error = str(e) or type(e).__name__
            return event

        processed_at = datetime.now(timezone.utc)
        await self.log.mark_processed(event.event_id, processed_at)
        event.processed = True
        event.processed_at = processed_at
        return event


__all__ = [
    "compute_signature",
    "verify_signature",
    "WebhookHandler",
    "WebhookLog",
    "InMemoryWebhookLog",
    "WebhookHandlerRegistry",
    "DEFAULT_EVENT_CATEGORIES",
    "register_default_handlers",
    "WebhookPipeline",
]
