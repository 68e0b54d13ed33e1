"""
Provider Rate Limiter
Enforces per-provider-tenant API call budgets (e.g. Xero: 60 calls/minute).
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding one-minute window limiter keyed by provider tenant.

    The internal lock guards only the bookkeeping; waiting happens outside
    it so a throttled tenant never delays calls for another tenant.
    """

    def __init__(self, calls_per_minute: int = 60):
        """
        Initialize rate limiter.

        Args:
            calls_per_minute: Maximum calls per minute per tenant key
        """
        self.calls_per_minute = calls_per_minute
        self._call_timestamps: dict[str, list[datetime]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str) -> None:
        """
        Wait until a call for ``key`` fits in the window, then record it.

        Args:
            key: Provider tenant key (realmId, Xero tenant id or org id)
        """
        while True:
            async with self._lock:
                now = datetime.now(timezone.utc)
                cutoff_time = now - timedelta(minutes=1)

                timestamps = self._call_timestamps[key]
                timestamps[:] = [ts for ts in timestamps if ts > cutoff_time]

                if len(timestamps) < self.calls_per_minute:
                    timestamps.append(now)
                    return

                oldest_call = min(timestamps)
                wait_seconds = (oldest_call + timedelta(minutes=1) - now).total_seconds()

            logger.info(
                "Rate limit reached for tenant %s. Waiting %.1f seconds...",
                key,
                wait_seconds,
            )
            await asyncio.sleep(max(wait_seconds, 0.0))
