"""
Credential Store
Durable per-(organization, provider) OAuth credential storage.

Pure storage: no refresh logic lives here. Concurrent writers for the same
key are serialized by the TokenRefreshCoordinator; the store only
guarantees that each save is a single atomic row write.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database.base import as_utc
from app.integrations.types import Credential, CredentialKey, Provider
from app.models.credential import ProviderCredential

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Storage contract consumed by the coordinator and sweeper."""

    @abstractmethod
    async def get(self, key: CredentialKey) -> Optional[Credential]:
        """Return the credential for ``key`` or None if not connected."""

    @abstractmethod
    async def save(self, credential: Credential) -> Credential:
        """Insert or fully replace the credential row for its key."""

    @abstractmethod
    async def list_expiring(self, before: datetime) -> list[Credential]:
        """Enabled credentials whose access token expires at or before ``before``."""

    @abstractmethod
    async def find_by_external_tenant(
        self, provider: Provider, external_tenant_id: str
    ) -> Optional[Credential]:
        """Resolve a provider-side tenant id (realmId, Xero tenant) to its credential."""


def _to_credential(row: ProviderCredential) -> Credential:
    return Credential(
        org_id=row.org_id,
        provider=Provider(row.provider),
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=as_utc(row.expires_at),
        enabled=row.enabled,
        external_tenant_id=row.external_tenant_id,
        last_refresh_error=row.last_refresh_error,
        last_refreshed_at=as_utc(row.last_refreshed_at),
        updated_at=as_utc(row.updated_at),
    )


class SQLCredentialStore(CredentialStore):
    """
    SQLAlchemy-backed credential store.

    Opens one short-lived session per operation so it can be shared by
    concurrent coordinator tasks.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, key: CredentialKey) -> Optional[Credential]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderCredential).where(
                    ProviderCredential.org_id == key.org_id,
                    ProviderCredential.provider == key.provider.value,
                )
            )
            row = result.scalar_one_or_none()
            return _to_credential(row) if row else None

    async def save(self, credential: Credential) -> Credential:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(ProviderCredential)
                    .where(
                        ProviderCredential.org_id == credential.org_id,
                        ProviderCredential.provider == credential.provider.value,
                    )
                    .with_for_update()
                )
                row = result.scalar_one_or_none()

                if row is None:
                    row = ProviderCredential(
                        org_id=credential.org_id,
                        provider=credential.provider.value,
                    )
                    session.add(row)

                row.external_tenant_id = credential.external_tenant_id
                row.access_token = credential.access_token
                row.refresh_token = credential.refresh_token
                row.expires_at = credential.expires_at
                row.enabled = credential.enabled
                row.last_refresh_error = credential.last_refresh_error
                row.last_refreshed_at = credential.last_refreshed_at
                row.updated_at = datetime.now(timezone.utc)
                await session.flush()
                saved = _to_credential(row)

            return saved

    async def list_expiring(self, before: datetime) -> list[Credential]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderCredential)
                .where(
                    ProviderCredential.enabled.is_(True),
                    ProviderCredential.expires_at <= before,
                )
                .order_by(ProviderCredential.expires_at)
            )
            return [_to_credential(row) for row in result.scalars().all()]

    async def find_by_external_tenant(
        self, provider: Provider, external_tenant_id: str
    ) -> Optional[Credential]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProviderCredential)
                .where(
                    ProviderCredential.provider == provider.value,
                    ProviderCredential.external_tenant_id == external_tenant_id,
                )
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_credential(row) if row else None


class InMemoryCredentialStore(CredentialStore):
    """
    Process-local credential store.

    Used by tests and local wiring. Returns copies so callers never share
    a mutable Credential with the store.
    """

    def __init__(self, credentials: Optional[list[Credential]] = None):
        self._rows: dict[CredentialKey, Credential] = {}
        for credential in credentials or []:
            self._rows[credential.key] = credential.copy()

    async def get(self, key: CredentialKey) -> Optional[Credential]:
        row = self._rows.get(key)
        return row.copy() if row else None

    async def save(self, credential: Credential) -> Credential:
        stored = credential.copy(updated_at=datetime.now(timezone.utc))
        self._rows[credential.key] = stored
        return stored.copy()

    async def list_expiring(self, before: datetime) -> list[Credential]:
        rows = [
            row.copy()
            for row in self._rows.values()
            if row.enabled and row.expires_at <= before
        ]
        return sorted(rows, key=lambda row: row.expires_at)

    async def find_by_external_tenant(
        self, provider: Provider, external_tenant_id: str
    ) -> Optional[Credential]:
        for row in self._rows.values():
            if row.provider == provider and row.external_tenant_id == external_tenant_id:
                return row.copy()
        return None
