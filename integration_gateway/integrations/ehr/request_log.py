"""
Partner request records.

Every attempt made by the request client is recorded for the observability
collaborator. The default recorder keeps a bounded in-memory log and derives
per-partner statistics from it.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol


class RequestOutcome(str, Enum):
    """Result of one attempt"""

    SUCCESS = "success"
    CLIENT_ERROR = "client_error"  # non-retryable partner 4xx
    UNAUTHORIZED = "unauthorized"  # partner 401
    TRANSIENT_ERROR = "transient_error"  # timeout, network, 5xx, 429
    RATE_LIMITED = "rate_limited"  # denied locally, never sent
    AUTH_UNAVAILABLE = "auth_unavailable"  # no usable token, never sent


@dataclass
class RequestRecord:
    """One outbound attempt"""

    request_id: str
    partner: str
    method: str
    endpoint: str
    outcome: RequestOutcome
    status_code: Optional[int] = None
    latency_ms: float = 0.0
    attempt: int = 1
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.outcome == RequestOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "partner": self.partner,
            "method": self.method,
            "endpoint": self.endpoint,
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "latency_ms": round(self.latency_ms, 2),
            "attempt": self.attempt,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class RequestRecorder(Protocol):
    """Sink for request records"""

    def record(self, record: RequestRecord) -> None:
        ...


@dataclass
class IntegrationStats:
    """Aggregated request statistics for one partner"""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_latency_ms: float = 0.0
    error_rate: float = 0.0  # percent
    rate_limit_hits: int = 0
    last_request_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "average_latency_ms": round(self.average_latency_ms, 2),
            "error_rate": round(self.error_rate, 2),
            "rate_limit_hits": self.rate_limit_hits,
            "last_request_at": self.last_request_at.isoformat() if self.last_request_at else None,
        }


class InMemoryRequestLog:
    """Bounded RequestRecorder with per-partner statistics"""

    def __init__(self, max_records: int = 1000):
        self._records: Deque[RequestRecord] = deque(maxlen=max_records)

    def record(self, record: RequestRecord) -> None:
        self._records.append(record)

    def recent(self, partner: Optional[str] = None, limit: int = 100) -> List[RequestRecord]:
        records = [r for r in self._records if partner is None or r.partner == partner]
        return records[-limit:]

    def stats(self, partner: str) -> IntegrationStats:
        records = [r for r in self._records if r.partner == partner]
        stats = IntegrationStats()
        if not records:
            return stats

        sent = [r for r in records if r.outcome not in (RequestOutcome.RATE_LIMITED, RequestOutcome.AUTH_UNAVAILABLE)]
        stats.total_requests = len(records)
        stats.successful_requests = sum(1 for r in records if r.success)
        stats.failed_requests = stats.total_requests - stats.successful_requests
        stats.rate_limit_hits = sum(
            1 for r in records if r.outcome == RequestOutcome.RATE_LIMITED or r.status_code == 429
        )
        if sent:
            stats.average_latency_ms = sum(r.latency_ms for r in sent) / len(sent)
        stats.error_rate = stats.failed_requests / stats.total_requests * 100
        stats.last_request_at = records[-1].timestamp
        return stats
