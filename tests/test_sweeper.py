"""
Tests for the ProactiveRefreshSweeper and RefreshSweepScheduler.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.integrations.coordinator import TokenRefreshCoordinator
from app.integrations.exceptions import ProviderTransientError
from app.integrations.sweeper import (
    ProactiveRefreshSweeper,
    RefreshSweepScheduler,
    SweepResult,
)
from app.integrations.types import Provider

from conftest import FakeAdapter, make_credential


@pytest.fixture
def sweeper(store, coordinator, clock):
    return ProactiveRefreshSweeper(store, coordinator, lookahead=timedelta(minutes=5), clock=clock)


class TestSweep:
    """One sweep pass."""

    async def test_refreshes_only_credentials_inside_lookahead(self, sweeper, store, adapter):
        soon = await store.save(make_credential(expires_in=timedelta(minutes=1), refresh_token="soon"))
        later = await store.save(make_credential(expires_in=timedelta(minutes=10), refresh_token="later"))
        distant = await store.save(make_credential(expires_in=timedelta(minutes=120), refresh_token="distant"))

        result = await sweeper.sweep()

        assert result.refreshed == 1
        assert result.failed == 0
        assert adapter.refresh_calls == ["soon"]
        assert (await store.get(soon.key)).access_token == "access-1"
        assert (await store.get(later.key)).access_token == "access-0"
        assert (await store.get(distant.key)).access_token == "access-0"

    async def test_credential_outside_margin_but_inside_lookahead_is_refreshed(
        self, sweeper, store, adapter
    ):
        # 3 minutes is outside the 60s on-demand margin; the sweep still refreshes it
        await store.save(make_credential(expires_in=timedelta(minutes=3)))

        result = await sweeper.sweep()

        assert result.refreshed == 1
        assert len(adapter.refresh_calls) == 1

    async def test_disabled_credentials_are_skipped(self, sweeper, store, adapter):
        await store.save(make_credential(expires_in=timedelta(minutes=1), enabled=False))

        result = await sweeper.sweep()

        assert result == SweepResult()
        assert adapter.refresh_calls == []

    async def test_nothing_expiring(self, sweeper, store, adapter):
        await store.save(make_credential(expires_in=timedelta(hours=2)))

        result = await sweeper.sweep()

        assert result.refreshed == 0
        assert result.failed == 0
        assert adapter.refresh_calls == []

    async def test_one_failure_does_not_stop_others(self, store, audit, clock):
        xero = FakeAdapter(
            Provider.XERO,
            outcomes=[ProviderTransientError("xero unavailable", status_code=503)],
        )
        quickbooks = FakeAdapter(Provider.QUICKBOOKS)
        coordinator = TokenRefreshCoordinator(
            store, {Provider.XERO: xero, Provider.QUICKBOOKS: quickbooks}, audit, clock=clock
        )
        sweeper = ProactiveRefreshSweeper(store, coordinator, clock=clock)
        failing = await store.save(make_credential(expires_in=timedelta(minutes=1)))
        healthy = await store.save(
            make_credential(provider=Provider.QUICKBOOKS, expires_in=timedelta(minutes=2))
        )

        result = await sweeper.sweep()

        assert result.refreshed == 1
        assert result.failed == 1
        assert result.failures == {failing.key: "RefreshTransientError"}
        assert (await store.get(healthy.key)).access_token == "access-1"
        assert (await store.get(failing.key)).enabled is True

    async def test_sweep_and_caller_share_one_refresh(self, sweeper, coordinator, store, adapter):
        adapter.delay = 0.05
        credential = await store.save(make_credential(expires_in=timedelta(seconds=30)))

        result, token = await asyncio.gather(
            sweeper.sweep(),
            coordinator.ensure_valid_token(credential.org_id, Provider.XERO),
        )

        assert result.refreshed == 1
        assert token.value == "access-1"
        assert len(adapter.refresh_calls) == 1


class TestRefreshSweepScheduler:
    """Periodic sweep job."""

    async def test_start_runs_first_sweep_and_stop_shuts_down(self):
        sweeper = AsyncMock()
        sweeper.sweep = AsyncMock(return_value=SweepResult(refreshed=2))
        scheduler = RefreshSweepScheduler(sweeper, interval_seconds=60)

        scheduler.start()
        assert scheduler.running
        for _ in range(50):
            if sweeper.sweep.await_count:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert not scheduler.running
        assert sweeper.sweep.await_count == 1
        assert scheduler.last_result.refreshed == 2

    async def test_failed_sweep_is_logged_and_next_tick_runs(self, caplog):
        sweeper = AsyncMock()
        sweeper.sweep = AsyncMock(side_effect=[RuntimeError("database unavailable"), SweepResult()])
        scheduler = RefreshSweepScheduler(sweeper, interval_seconds=60)

        first = await scheduler.run_once()
        second = await scheduler.run_once()

        assert first is None
        assert second == SweepResult()
        assert scheduler.last_result == SweepResult()
        assert "Refresh sweep failed" in caplog.text

    async def test_start_twice_keeps_one_job(self):
        sweeper = AsyncMock()
        sweeper.sweep = AsyncMock(return_value=SweepResult())
        scheduler = RefreshSweepScheduler(sweeper, interval_seconds=60)

        scheduler.start()
        inner = scheduler._scheduler
        scheduler.start()

        assert scheduler._scheduler is inner
        assert [job.id for job in inner.get_jobs()] == [RefreshSweepScheduler.JOB_ID]
        await scheduler.stop()

    async def test_stop_without_start(self):
        scheduler = RefreshSweepScheduler(AsyncMock(), interval_seconds=10)

        await scheduler.stop()

        assert not scheduler.running
