"""
Sync State Model
Incremental sync cursor per (organization, provider, entity kind).
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database.base import Base, TimestampMixin, UUIDMixin


class SyncState(Base, UUIDMixin, TimestampMixin):
    """
    Tracks where the last clean sync left off.

    Attributes:
        cursor: Start time of the last sync that finished without failures;
            passed to the adapter as ``since`` on the next run
        last_run_at: When the last sync (clean or not) finished
        last_created / last_updated / last_failed: Outcome counts of that run
    """

    org_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_kind: Mapped[str] = mapped_column(String(20), nullable=False)

    cursor: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    last_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("org_id", "provider", "entity_kind", name="uq_sync_states_scope"),
    )
