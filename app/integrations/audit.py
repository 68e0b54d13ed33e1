"""
Integration Audit Log
Append-only record of token refreshes, failures, sync upserts and webhooks.

Every entry is also emitted on the ``integrations.audit`` logger so an
incident timeline can be rebuilt from logs alone. Tokens never appear in
an entry: callers pass error kinds and messages, not credentials.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.integrations.types import Provider
from app.models.audit_entry import AuditEntryRecord

logger = logging.getLogger("integrations.audit")


class AuditKind(str, Enum):
    """Kinds of audit entries."""

    REFRESH_ATTEMPT = "refresh_attempt"
    REFRESH_SUCCESS = "refresh_success"
    REFRESH_FAILURE = "refresh_failure"
    SYNC_UPSERT = "sync_upsert"
    SYNC_FAILURE = "sync_failure"
    WEBHOOK_RECEIVED = "webhook_received"


_FAILURE_KINDS = {AuditKind.REFRESH_FAILURE, AuditKind.SYNC_FAILURE}


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit entry."""

    org_id: Optional[UUID]
    provider: Provider
    kind: AuditKind
    timestamp: datetime
    detail: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)


class AuditLog(ABC):
    """
    Append-only audit sink.

    Usage:
        await audit.record(org_id, Provider.XERO, AuditKind.REFRESH_SUCCESS)
        await audit.record(
            org_id, Provider.XERO, AuditKind.REFRESH_FAILURE,
            detail="invalid_grant", context={"error_kind": "permanent"},
        )
    """

    async def record(
        self,
        org_id: Optional[UUID],
        provider: Provider,
        kind: AuditKind,
        detail: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """
        Append an audit entry and emit it on the audit logger.

        Args:
            org_id: Organization the event belongs to (None if unresolved)
            provider: Accounting provider
            kind: Entry kind
            detail: Human-readable detail (never a token)
            context: Structured extras such as error kind or external id

        Returns:
            The appended AuditEntry
        """
        entry = AuditEntry(
            org_id=org_id,
            provider=provider,
            kind=kind,
            timestamp=datetime.now(timezone.utc),
            detail=detail,
            context=dict(context or {}),
        )

        log_data = {
            "timestamp": entry.timestamp.isoformat(),
            "org_id": str(org_id) if org_id else None,
            "provider": provider.value,
            "audit_kind": kind.value,
            "detail": detail,
        }
        if kind in _FAILURE_KINDS:
            logger.warning("Integration audit: %s", kind.value, extra=log_data)
        else:
            logger.info("Integration audit: %s", kind.value, extra=log_data)

        await self._append(entry)
        return entry

    @abstractmethod
    async def _append(self, entry: AuditEntry) -> None:
        """Persist one entry."""


class SQLAuditLog(AuditLog):
    """Audit log persisted to the audit_entries table, one insert per entry."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _append(self, entry: AuditEntry) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    AuditEntryRecord(
                        org_id=entry.org_id,
                        provider=entry.provider.value,
                        kind=entry.kind.value,
                        timestamp=entry.timestamp,
                        detail=entry.detail,
                        context=entry.context or None,
                    )
                )


class InMemoryAuditLog(AuditLog):
    """Audit log kept in a list; used by tests and local wiring."""

    def __init__(self):
        self.entries: list[AuditEntry] = []

    async def _append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def of_kind(self, kind: AuditKind) -> list[AuditEntry]:
        return [entry for entry in self.entries if entry.kind == kind]
