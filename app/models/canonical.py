"""
Canonical Accounting Models
Normalized invoices, payments and contacts written by the sync layer.

Every table is unique on (external_id, source) so repeated syncs of the
same provider record update one row in place.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database.base import Base, TimestampMixin, UUIDMixin

# Four decimal places covers every provider's native precision; the mapper
# rejects anything finer instead of letting the column round it.
AMOUNT = Numeric(19, 4)


class CanonicalRecordMixin:
    """Columns shared by every canonical entity."""

    org_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    source: Mapped[str] = mapped_column(String(20), nullable=False)

    raw: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class CanonicalInvoice(Base, UUIDMixin, TimestampMixin, CanonicalRecordMixin):
    """Customer invoice or supplier bill."""

    number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    contact_external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    issue_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    total: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    amount_due: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_id", "source", name="uq_canonical_invoices_external"),
        Index("ix_canonical_invoices_org_id", "org_id"),
    )


class CanonicalPayment(Base, UUIDMixin, TimestampMixin, CanonicalRecordMixin):
    """Payment received against an invoice."""

    invoice_external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_id", "source", name="uq_canonical_payments_external"),
        Index("ix_canonical_payments_org_id", "org_id"),
    )


class CanonicalContact(Base, UUIDMixin, TimestampMixin, CanonicalRecordMixin):
    """Customer or supplier."""

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_customer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_supplier: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_id", "source", name="uq_canonical_contacts_external"),
        Index("ix_canonical_contacts_org_id", "org_id"),
    )
