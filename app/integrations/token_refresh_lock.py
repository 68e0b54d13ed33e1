"""
Token Refresh Lock
Per-(organization, provider) single-flight coordination of token refreshes.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from app.integrations.types import CredentialKey

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenRefreshLock:
    """
    Coalesces concurrent refreshes of the same credential into one call.

    Holds a map of in-flight refresh tasks keyed strictly by
    (org_id, provider). The first caller for a key starts the refresh;
    every caller arriving while it runs awaits that same task and observes
    the same result or exception. Different keys never wait on each other:
    the guarding lock is only held for the map lookup, never across I/O.

    Prevents invalid_grant races: most providers invalidate a refresh
    token the first time it is used.
    """

    def __init__(self):
        self._in_flight: dict[CredentialKey, asyncio.Task] = {}
        self._map_lock = asyncio.Lock()

    async def run(self, key: CredentialKey, refresh: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``refresh`` for ``key`` unless one is already in flight.

        Args:
            key: Credential key
            refresh: Zero-argument coroutine function performing the refresh

        Returns:
            The result of the single in-flight refresh

        Raises:
            Whatever the in-flight refresh raised, to every waiter
        """
        async with self._map_lock:
            task = self._in_flight.get(key)
            if task is None:
                task = asyncio.create_task(refresh())
                self._in_flight[key] = task
                task.add_done_callback(lambda done, key=key: self._forget(key, done))
                logger.debug("Dispatched token refresh for %s/%s", key.org_id, key.provider.value)
            else:
                logger.debug("Joined in-flight token refresh for %s/%s", key.org_id, key.provider.value)

        # Shielded: a cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(task)

    def _forget(self, key: CredentialKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Retrieve the exception so an unobserved failure is not reported as
        # "never retrieved" when every waiter was cancelled.
        if not task.cancelled():
            task.exception()

    def is_refreshing(self, key: CredentialKey) -> bool:
        """Whether a refresh for ``key`` is currently in flight."""
        return key in self._in_flight

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)
