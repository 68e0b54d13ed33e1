"""
Audit Entry Model
Append-only record of refresh attempts, failures and sync operations.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database.base import Base, UUIDMixin


class AuditEntryRecord(Base, UUIDMixin):
    """Immutable audit row. Rows are inserted and never updated."""

    __tablename__ = "audit_entries"

    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
    )

    provider: Mapped[str] = mapped_column(String(20), nullable=False)

    kind: Mapped[str] = mapped_column(String(40), nullable=False)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    context: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Structured extras (error kind, external id, counts)",
    )

    __table_args__ = (
        Index("ix_audit_entries_org_provider", "org_id", "provider"),
        Index("ix_audit_entries_timestamp", "timestamp"),
    )
