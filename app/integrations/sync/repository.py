"""
Canonical Repository
Idempotent upsert of canonical records keyed by (external_id, source),
plus the incremental sync cursor store.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database.base import as_utc
from app.integrations.exceptions import CrossTenantConflictError
from app.integrations.sync.records import CanonicalRecord, record_fields
from app.integrations.types import EntityKind, Provider
from app.integrations.utils import to_json_serializable
from app.models.canonical import CanonicalContact, CanonicalInvoice, CanonicalPayment
from app.models.sync_state import SyncState

logger = logging.getLogger(__name__)

CANONICAL_MODELS = {
    EntityKind.INVOICE: CanonicalInvoice,
    EntityKind.PAYMENT: CanonicalPayment,
    EntityKind.CONTACT: CanonicalContact,
}


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one upsert: the stored record and whether it was new."""

    record: CanonicalRecord
    created: bool


def _cross_tenant(record: CanonicalRecord) -> CrossTenantConflictError:
    return CrossTenantConflictError(
        f"{record.source.value} {record.kind.value} {record.external_id} "
        "belongs to another organization",
        org_id=record.org_id,
        provider=record.source.value,
    )


class CanonicalRepository(ABC):
    """Upsert-by-unique-key storage for invoices, payments and contacts."""

    @abstractmethod
    async def upsert(self, record: CanonicalRecord) -> UpsertResult:
        """
        Insert the record, or update the row with the same (external_id, source)
        in place.

        Raises:
            CrossTenantConflictError: If that row belongs to another organization
        """

    @abstractmethod
    async def get(
        self, kind: EntityKind, source: Provider, external_id: str
    ) -> Optional[dict[str, Any]]:
        """Stored column values for one record, or None."""

    @abstractmethod
    async def count(self, kind: EntityKind, org_id: Optional[UUID] = None) -> int:
        """Number of stored rows of ``kind`` (optionally for one org)."""


class SQLCanonicalRepository(CanonicalRepository):
    """
    Single-statement ``INSERT ... ON CONFLICT (external_id, source) DO UPDATE``.

    Supports the PostgreSQL and SQLite dialects. The update is guarded by
    ``org_id = excluded.org_id`` so a concurrent writer from another
    organization can never overwrite a row it does not own.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _insert_for(session: AsyncSession):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")

    async def upsert(self, record: CanonicalRecord) -> UpsertResult:
        model = CANONICAL_MODELS[record.kind]
        fields = record_fields(record)
        values = {
            "org_id": record.org_id,
            "external_id": record.external_id,
            "source": record.source.value,
            "raw": to_json_serializable(record.raw) or None,
            "last_synced_at": datetime.now(timezone.utc),
            **fields,
        }

        async with self.session_factory() as session:
            async with session.begin():
                existing = (
                    await session.execute(
                        select(model.org_id).where(
                            model.external_id == record.external_id,
                            model.source == record.source.value,
                        )
                    )
                ).scalar_one_or_none()

                if existing is not None and existing != record.org_id:
                    raise _cross_tenant(record)

                insert = self._insert_for(session)
                stmt = insert(model).values(id=uuid.uuid4(), **values)
                update_columns = {
                    name: stmt.excluded[name]
                    for name in ("raw", "last_synced_at", *fields)
                }
                update_columns["updated_at"] = func.now()
                stmt = stmt.on_conflict_do_update(
                    index_elements=["external_id", "source"],
                    set_=update_columns,
                    where=model.org_id == stmt.excluded.org_id,
                )
                result = await session.execute(stmt)

                # A guarded update that matched nothing means another org
                # inserted the key between the check and the statement
                if result.rowcount == 0:
                    raise _cross_tenant(record)

        return UpsertResult(record=record, created=existing is None)

    async def get(
        self, kind: EntityKind, source: Provider, external_id: str
    ) -> Optional[dict[str, Any]]:
        model = CANONICAL_MODELS[kind]
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(model).where(
                        model.external_id == external_id,
                        model.source == Provider(source).value,
                    )
                )
            ).scalar_one_or_none()
            return row.to_dict() if row else None

    async def count(self, kind: EntityKind, org_id: Optional[UUID] = None) -> int:
        model = CANONICAL_MODELS[kind]
        query = select(func.count()).select_from(model)
        if org_id is not None:
            query = query.where(model.org_id == org_id)
        async with self.session_factory() as session:
            return (await session.execute(query)).scalar_one()


class InMemoryCanonicalRepository(CanonicalRepository):
    """Dict-backed repository with the same key and ownership rules."""

    def __init__(self):
        self._rows: dict[tuple[EntityKind, str, str], dict[str, Any]] = {}

    async def upsert(self, record: CanonicalRecord) -> UpsertResult:
        key = (record.kind, record.external_id, record.source.value)
        existing = self._rows.get(key)
        if existing is not None and existing["org_id"] != record.org_id:
            raise _cross_tenant(record)

        row = {
            "org_id": record.org_id,
            "external_id": record.external_id,
            "source": record.source.value,
            "raw": to_json_serializable(record.raw),
            "last_synced_at": datetime.now(timezone.utc),
            **record_fields(record),
        }
        if existing is not None:
            row["id"] = existing["id"]
        else:
            row["id"] = uuid.uuid4()
        self._rows[key] = row
        return UpsertResult(record=record, created=existing is None)

    async def get(
        self, kind: EntityKind, source: Provider, external_id: str
    ) -> Optional[dict[str, Any]]:
        row = self._rows.get((kind, external_id, Provider(source).value))
        return dict(row) if row else None

    async def count(self, kind: EntityKind, org_id: Optional[UUID] = None) -> int:
        return sum(
            1
            for (row_kind, _, _), row in self._rows.items()
            if row_kind == kind and (org_id is None or row["org_id"] == org_id)
        )


# =============================================================================
# Sync cursor
# =============================================================================

class SyncStateStore(ABC):
    """Per-(org, provider, kind) incremental sync cursor."""

    @abstractmethod
    async def get_cursor(
        self, org_id: UUID, provider: Provider, kind: EntityKind
    ) -> Optional[datetime]:
        """``since`` to pass to the next fetch, or None for a full sync."""

    @abstractmethod
    async def record_run(
        self,
        org_id: UUID,
        provider: Provider,
        kind: EntityKind,
        started_at: datetime,
        created: int,
        updated: int,
        failed: int,
    ) -> None:
        """
        Record a finished sync. The cursor moves to ``started_at`` only when
        nothing failed, so the next run revisits skipped records.
        """


class SQLSyncStateStore(SyncStateStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _scope(self, org_id: UUID, provider: Provider, kind: EntityKind):
        return (
            SyncState.org_id == org_id,
            SyncState.provider == Provider(provider).value,
            SyncState.entity_kind == EntityKind(kind).value,
        )

    async def get_cursor(
        self, org_id: UUID, provider: Provider, kind: EntityKind
    ) -> Optional[datetime]:
        async with self.session_factory() as session:
            cursor = (
                await session.execute(
                    select(SyncState.cursor).where(*self._scope(org_id, provider, kind))
                )
            ).scalar_one_or_none()
            return as_utc(cursor)

    async def record_run(
        self,
        org_id: UUID,
        provider: Provider,
        kind: EntityKind,
        started_at: datetime,
        created: int,
        updated: int,
        failed: int,
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                state = (
                    await session.execute(
                        select(SyncState)
                        .where(*self._scope(org_id, provider, kind))
                        .with_for_update()
                    )
                ).scalar_one_or_none()

                if state is None:
                    state = SyncState(
                        org_id=org_id,
                        provider=Provider(provider).value,
                        entity_kind=EntityKind(kind).value,
                    )
                    session.add(state)

                if failed == 0:
                    state.cursor = started_at
                state.last_run_at = datetime.now(timezone.utc)
                state.last_created = created
                state.last_updated = updated
                state.last_failed = failed


class InMemorySyncStateStore(SyncStateStore):
    def __init__(self):
        self.cursors: dict[tuple[UUID, Provider, EntityKind], datetime] = {}
        self.runs: list[dict[str, Any]] = []

    async def get_cursor(
        self, org_id: UUID, provider: Provider, kind: EntityKind
    ) -> Optional[datetime]:
        return self.cursors.get((org_id, Provider(provider), EntityKind(kind)))

    async def record_run(
        self,
        org_id: UUID,
        provider: Provider,
        kind: EntityKind,
        started_at: datetime,
        created: int,
        updated: int,
        failed: int,
    ) -> None:
        if failed == 0:
            self.cursors[(org_id, Provider(provider), EntityKind(kind))] = started_at
        self.runs.append(
            {
                "org_id": org_id,
                "provider": Provider(provider),
                "kind": EntityKind(kind),
                "created": created,
                "updated": updated,
                "failed": failed,
            }
        )
