"""
Canonical Record Types
Provider-neutral shapes produced by the normalizers and written by the repository.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID

from app.integrations.types import EntityKind, Provider


@dataclass(frozen=True, kw_only=True)
class CanonicalBase:
    """
    Fields every canonical record carries.

    (external_id, source) is the upsert key. ``raw`` keeps the provider
    payload the record was mapped from.
    """

    org_id: UUID
    external_id: str
    source: Provider
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True, kw_only=True)
class InvoiceRecord(CanonicalBase):
    kind: EntityKind = field(default=EntityKind.INVOICE, init=False, repr=False)

    total: Decimal
    number: Optional[str] = None
    contact_external_id: Optional[str] = None
    contact_name: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = None
    amount_due: Optional[Decimal] = None
    status: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class PaymentRecord(CanonicalBase):
    kind: EntityKind = field(default=EntityKind.PAYMENT, init=False, repr=False)

    amount: Decimal
    invoice_external_id: Optional[str] = None
    contact_external_id: Optional[str] = None
    payment_date: Optional[date] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ContactRecord(CanonicalBase):
    kind: EntityKind = field(default=EntityKind.CONTACT, init=False, repr=False)

    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_customer: bool = False
    is_supplier: bool = False
    status: Optional[str] = None


CanonicalRecord = Union[InvoiceRecord, PaymentRecord, ContactRecord]


def record_fields(record: CanonicalRecord) -> dict[str, Any]:
    """Column values for a record, excluding the key and bookkeeping fields."""
    skip = {"org_id", "external_id", "source", "raw", "kind"}
    return {
        name: getattr(record, name)
        for name in record.__dataclass_fields__
        if name not in skip
    }
