"""Shared test fixtures and fakes for the integration tests."""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers tables on Base.metadata)
from app.database.base import Base
from app.integrations.audit import InMemoryAuditLog
from app.integrations.coordinator import TokenRefreshCoordinator
from app.integrations.credential_store import InMemoryCredentialStore
from app.integrations.exceptions import ProviderTokenExpiredError
from app.integrations.providers.base import ProviderAdapter
from app.integrations.types import (
    AccessToken,
    Account,
    Credential,
    EntityKind,
    Provider,
    ProviderRecord,
    TokenGrant,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAdapter(ProviderAdapter):
    """
    Scripted provider adapter.

    ``outcomes`` is consumed one item per refresh call: a TokenGrant is
    returned, an exception is raised. When exhausted, a fresh grant with a
    rotated refresh token is returned.
    """

    def __init__(
        self,
        provider: Provider = Provider.XERO,
        outcomes: Optional[list[Any]] = None,
        delay: float = 0.0,
        records: Optional[dict[EntityKind, list[dict[str, Any]]]] = None,
        accounts: Optional[list[Account]] = None,
        tenant_ref: Optional[str] = None,
    ):
        self.provider = provider
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.records = records or {}
        self.accounts = accounts or []
        self.tenant_ref = tenant_ref
        self.on_refresh: Optional[Callable[[str], Awaitable[None]]] = None

        self.refresh_calls: list[str] = []
        self.fetch_calls: list[tuple[EntityKind, str, Optional[datetime]]] = []
        self.expire_next_fetches = 0
        self.active_refreshes = 0
        self.max_active_refreshes = 0

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        self.active_refreshes += 1
        self.max_active_refreshes = max(self.max_active_refreshes, self.active_refreshes)
        try:
            if self.on_refresh is not None:
                await self.on_refresh(refresh_token)
            if self.delay:
                await asyncio.sleep(self.delay)
            number = len(self.refresh_calls)
            outcome = self.outcomes.pop(0) if self.outcomes else TokenGrant(
                access_token=f"access-{number}",
                refresh_token=f"refresh-{number}",
                expires_in=3600,
            )
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.active_refreshes -= 1

    async def list_accounts(self, token: AccessToken) -> list[Account]:
        self._check_token(token)
        return list(self.accounts)

    async def fetch_invoices(self, token, since=None):
        return self._fetch(EntityKind.INVOICE, token, since)

    async def fetch_payments(self, token, since=None):
        return self._fetch(EntityKind.PAYMENT, token, since)

    async def fetch_contacts(self, token, since=None):
        return self._fetch(EntityKind.CONTACT, token, since)

    def _check_token(self, token: AccessToken) -> None:
        if self.expire_next_fetches:
            self.expire_next_fetches -= 1
            raise ProviderTokenExpiredError(
                "token expired", status_code=401, provider=self.provider.value
            )

    def _fetch(self, kind: EntityKind, token: AccessToken, since: Optional[datetime]):
        self.fetch_calls.append((kind, token.value, since))
        self._check_token(token)
        return [
            ProviderRecord(
                provider=self.provider,
                kind=kind,
                data=data,
                tenant_ref=self.tenant_ref,
            )
            for data in self.records.get(kind, [])
        ]


def make_credential(
    org_id: Optional[uuid.UUID] = None,
    provider: Provider = Provider.XERO,
    expires_in: timedelta = timedelta(hours=1),
    now: datetime = NOW,
    **overrides: Any,
) -> Credential:
    """Build a credential expiring ``expires_in`` after ``now``."""
    values: dict[str, Any] = {
        "org_id": org_id or uuid.uuid4(),
        "provider": provider,
        "access_token": "access-0",
        "refresh_token": "refresh-0",
        "expires_at": now + expires_in,
        "external_tenant_id": "tenant-1",
    }
    values.update(overrides)
    return Credential(**values)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def org_id():
    return uuid.uuid4()


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def adapter():
    return FakeAdapter(Provider.XERO)


@pytest.fixture
def coordinator(store, adapter, audit, clock):
    return TokenRefreshCoordinator(
        store=store,
        adapters={Provider.XERO: adapter},
        audit=audit,
        margin=timedelta(seconds=60),
        refresh_timeout=1.0,
        clock=clock,
    )


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
