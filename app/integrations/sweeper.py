"""
Proactive Refresh Sweeper
Refreshes soon-to-expire credentials ahead of demand.

Best-effort warmth only: ensure_valid_token's on-demand path stays the
source of truth, so a skipped or failed sweep never breaks a caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.integrations.coordinator import TokenRefreshCoordinator
from app.integrations.credential_store import CredentialStore
from app.integrations.exceptions import IntegrationError
from app.integrations.types import Credential, CredentialKey

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = timedelta(minutes=5)


@dataclass
class SweepResult:
    """Outcome counts of one sweep."""

    refreshed: int = 0
    failed: int = 0
    failures: dict[CredentialKey, str] = field(default_factory=dict)


class ProactiveRefreshSweeper:
    """
    Finds enabled credentials expiring within the lookahead and refreshes them.

    Each credential is refreshed in its own task with its own error
    handling; one tenant's failure never fails the sweep for the others.
    """

    def __init__(
        self,
        store: CredentialStore,
        coordinator: TokenRefreshCoordinator,
        lookahead: timedelta = DEFAULT_LOOKAHEAD,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.coordinator = coordinator
        self.lookahead = lookahead
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def sweep(self) -> SweepResult:
        """
        Run one sweep.

        Returns:
            SweepResult with refreshed and failed counts
        """
        cutoff = self._clock() + self.lookahead
        expiring = await self.store.list_expiring(cutoff)
        result = SweepResult()

        if not expiring:
            logger.debug("Refresh sweep: nothing expires before %s", cutoff.isoformat())
            return result

        outcomes = await asyncio.gather(
            *(self._refresh_one(credential) for credential in expiring),
            return_exceptions=True,
        )

        for credential, outcome in zip(expiring, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                result.failed += 1
                result.failures[credential.key] = type(outcome).__name__
            else:
                result.refreshed += 1

        logger.info(
            "Refresh sweep complete: %d refreshed, %d failed",
            result.refreshed,
            result.failed,
        )
        return result

    async def _refresh_one(self, credential: Credential) -> None:
        """
        Refresh one credential. Uses the lookahead as margin so a credential
        selected by this sweep is actually refreshed rather than served
        from cache.
        """
        try:
            await self.coordinator.ensure_valid_token(
                credential.org_id,
                credential.provider,
                margin=self.lookahead,
            )
        except IntegrationError as e:
            logger.warning(
                "Refresh sweep failed for %s/%s: %s",
                credential.org_id,
                credential.provider.value,
                e.message,
            )
            raise
        except Exception:
            logger.exception(
                "Unexpected error refreshing %s/%s during sweep",
                credential.org_id,
                credential.provider.value,
            )
            raise


class RefreshSweepScheduler:
    """
    Runs ProactiveRefreshSweeper.sweep() on a fixed interval with an
    APScheduler AsyncIOScheduler bound to the running event loop.

    The first sweep runs as soon as the scheduler starts. A failing sweep
    is logged and the next interval retries.

    Usage:
        scheduler = RefreshSweepScheduler(sweeper, interval_seconds=180)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    JOB_ID = "proactive_refresh_sweep"

    def __init__(self, sweeper: ProactiveRefreshSweeper, interval_seconds: float = 180):
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.last_result: Optional[SweepResult] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="Proactive Token Refresh Sweep",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Refresh sweep scheduler started (every %.0fs)", self.interval_seconds)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            # An in-flight sweep is cancelled; shielded refreshes still complete
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Refresh sweep scheduler stopped")

    async def run_once(self) -> Optional[SweepResult]:
        """One scheduled tick. Returns None when the sweep itself failed."""
        try:
            self.last_result = await self.sweeper.sweep()
        except Exception:
            logger.exception("Refresh sweep failed")
            return None
        return self.last_result
