"""
Quota Guard for the shared generation API key.

Fixed per-minute and per-day request windows, shared by every tenant in the
process. Windows reset lazily on the next check once their reset time has
passed; check-and-increment happens under a single lock.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.config import settings
from app.features.auto_reply.domain import QuotaDecision
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

WINDOW_LENGTHS_SECONDS = {
    "minute": 60.0,
    "day": 86400.0,
}


@dataclass(slots=True)
class RateLimitWindow:
    length_seconds: float
    limit: int
    count: int
    reset_at: float


class QuotaGuard:
    """
    Process-wide rate limiter in front of the Generation Service.

    The clock is injectable so tests can simulate window rollover.
    """

    def __init__(
        self,
        limits: dict[str, int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._lock = threading.Lock()

        limits = limits if limits is not None else settings.get_quota_limits()
        now = self._clock()
        self._windows: dict[str, RateLimitWindow] = {
            name: RateLimitWindow(
                length_seconds=WINDOW_LENGTHS_SECONDS[name],
                limit=limit,
                count=0,
                reset_at=now + WINDOW_LENGTHS_SECONDS[name],
            )
            for name, limit in limits.items()
        }

        logger.info("Quota guard initialized", limits=limits)

    def _roll_over(self, now: float) -> None:
        for window in self._windows.values():
            if now >= window.reset_at:
                window.count = 0
                window.reset_at = now + window.length_seconds

    def check(self) -> QuotaDecision:
        """Atomically check every window and count one request if all have room."""
        with self._lock:
            now = self._clock()
            self._roll_over(now)

            for name, window in self._windows.items():
                if window.count >= window.limit:
                    reason = (
                        f"Generation quota per {name} reached "
                        f"({window.count}/{window.limit}), resets in "
                        f"{max(0.0, window.reset_at - now):.0f}s"
                    )
                    logger.warning(
                        "Quota check denied",
                        window=name,
                        count=window.count,
                        limit=window.limit,
                    )
                    return QuotaDecision.deny(name, reason)

            for window in self._windows.values():
                window.count += 1

            return QuotaDecision.allow()

    def get_usage_stats(self) -> dict[str, Any]:
        """Current counts, ceilings and seconds until reset. Does not mutate state."""
        with self._lock:
            now = self._clock()
            stats: dict[str, Any] = {}
            percentage_used: dict[str, float] = {}

            for name, window in self._windows.items():
                expired = now >= window.reset_at
                count = 0 if expired else window.count
                stats[name] = {
                    "count": count,
                    "limit": window.limit,
                    "resets_in_seconds": round(max(0.0, window.reset_at - now), 1),
                }
                percentage_used[name] = (
                    round(count / window.limit * 100, 1) if window.limit > 0 else 100.0
                )

            stats["percentage_used"] = percentage_used
            return stats


# Singleton instance; the underlying API key is shared across tenants
quota_guard = QuotaGuard()


def get_usage_stats() -> dict[str, Any]:
    """Usage stats for the shared generation quota."""
    return quota_guard.get_usage_stats()
