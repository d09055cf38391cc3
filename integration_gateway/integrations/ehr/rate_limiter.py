"""
Per-partner fixed-window rate limiter.

Each partner gets a 60 second window with a partner-specific request limit
read from its ProviderConfig on every check, so administrative limit changes
apply immediately. A window is reset lazily by the first check after its
boundary has passed.
"""

import time
from typing import Callable, Dict, Optional

from integration_gateway.core.logging import get_logger

from .models import RateLimitWindow
from .registry import ProviderRegistry

logger = get_logger(__name__)

WINDOW_SECONDS = 60.0


class FixedWindowRateLimiter:
    """Fixed-window request throttle keyed by partner"""

    def __init__(
        self,
        registry: ProviderRegistry,
        clock: Callable[[], float] = time.time,
        window_seconds: float = WINDOW_SECONDS,
    ):
        self._registry = registry
        self._clock = clock
        self._window_seconds = window_seconds
        self._windows: Dict[str, RateLimitWindow] = {}
        self.hits: Dict[str, int] = {}

    def try_consume(self, partner: str) -> bool:
        """
        Take one request slot for ``partner``.

        Returns False (and logs the denial) once the current window is full.
        No await happens between the check and the increment, so concurrent
        callers on the event loop cannot overshoot the limit.
        """
        limit = self._registry.get(partner, require_enabled=False).rate_limit_per_minute
        now = self._clock()

        window = self._windows.get(partner)
        if window is None or now >= window.reset_at:
            window = RateLimitWindow(reset_at=now + self._window_seconds)
            self._windows[partner] = window

        if window.count >= limit:
            self.hits[partner] = self.hits.get(partner, 0) + 1
            logger.warning(
                "ehr_rate_limited",
                partner=partner,
                limit=limit,
                reset_in_seconds=round(window.reset_at - now, 2),
            )
            return False

        window.count += 1
        return True

    def reset_at(self, partner: str) -> Optional[float]:
        window = self._windows.get(partner)
        return window.reset_at if window else None

    def usage(self, partner: str) -> Dict[str, Optional[float]]:
        """Current window usage, as reported by integration status."""
        limit = self._registry.get(partner, require_enabled=False).rate_limit_per_minute
        window = self._windows.get(partner)
        if window is None or self._clock() >= window.reset_at:
            return {"used": 0, "limit": limit, "reset_at": None}
        return {"used": window.count, "limit": limit, "reset_at": window.reset_at}
