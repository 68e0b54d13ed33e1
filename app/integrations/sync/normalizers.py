"""
Sync Normalizers
Pure, deterministic mapping between provider wire shapes and canonical records.

Inbound (to_canonical):
- QuickBooks query API rows (PascalCase, ids unique per realm)
- Xero SDK models serialized with to_dict (snake_case, GUID ids)
- Wave GraphQL nodes (camelCase, Money in minor units)

Outbound (to_provider_payload): each provider's create shape.

Amounts stay Decimal end to end. Nothing is rounded: a value with more
precision than canonical storage keeps is rejected with MappingError, and
minor/major unit conversion happens only in the two named helpers below.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional
from uuid import UUID

from app.integrations.exceptions import MappingError, UnsupportedCapabilityError
from app.integrations.sync.records import (
    CanonicalRecord,
    ContactRecord,
    InvoiceRecord,
    PaymentRecord,
)
from app.integrations.types import EntityKind, Provider, ProviderRecord
from app.integrations.utils import parse_amount, parse_date

logger = logging.getLogger(__name__)

# Canonical amount columns are NUMERIC(19, 4)
AMOUNT_PLACES = 4
AMOUNT_LIMIT = Decimal(10) ** 15

# ISO 4217 minor unit exponents that differ from 2
_CURRENCY_EXPONENTS = {
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
}


class _Context:
    """Identity of the record being mapped, for error messages."""

    def __init__(self, record: ProviderRecord, org_id: UUID):
        self.record = record
        self.org_id = org_id
        self.external_id: Optional[str] = None

    def error(self, message: str) -> MappingError:
        return MappingError(
            f"{self.record.provider.value} {self.record.kind.value}: {message}",
            external_id=self.external_id,
            org_id=self.org_id,
            provider=self.record.provider.value,
        )


# =============================================================================
# Unit conversion
# =============================================================================

def currency_exponent(currency: Optional[str]) -> int:
    """Number of minor-unit digits for an ISO currency code (default 2)."""
    return _CURRENCY_EXPONENTS.get((currency or "").upper(), 2)


def minor_units_to_major(minor: Any, exponent: int) -> Decimal:
    """
    Convert an integer minor-unit amount (cents) to major units.

    Exact: ``minor_units_to_major(12345, 2) == Decimal("123.45")``.

    Raises:
        ValueError: If ``minor`` is not an integer value
    """
    if isinstance(minor, bool) or minor is None:
        raise ValueError(f"not a minor-unit amount: {minor!r}")
    try:
        value = Decimal(str(minor).strip())
    except InvalidOperation:
        raise ValueError(f"not a minor-unit amount: {minor!r}") from None
    if not value.is_finite() or value != value.to_integral_value():
        raise ValueError(f"minor-unit amount must be an integer: {minor!r}")
    return value.scaleb(-int(exponent))


def major_units_to_minor(amount: Decimal, exponent: int) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Raises:
        ValueError: If the amount has more decimal places than the currency allows
    """
    scaled = Decimal(amount).scaleb(int(exponent))
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {exponent} decimal places")
    return int(scaled)


# =============================================================================
# Field helpers
# =============================================================================

def _get(data: Any, *path: str) -> Any:
    """Nested lookup; None when any step is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _required(ctx: _Context, data: dict[str, Any], *path: str) -> Any:
    value = _get(data, *path)
    if value is None or value == "":
        raise ctx.error(f"missing required field {'.'.join(path)}")
    return value


def _amount(ctx: _Context, value: Any, field_name: str, required: bool = True) -> Optional[Decimal]:
    if value is None and not required:
        return None
    try:
        amount = parse_amount(value)
    except ValueError as e:
        raise ctx.error(f"invalid {field_name}: {e}") from e
    if amount.normalize().as_tuple().exponent < -AMOUNT_PLACES:
        raise ctx.error(
            f"{field_name} {amount} has more than {AMOUNT_PLACES} decimal places"
        )
    if abs(amount) >= AMOUNT_LIMIT:
        raise ctx.error(f"{field_name} {amount} exceeds the storable range")
    return amount


def _money(ctx: _Context, money: Any, field_name: str, required: bool = True) -> Optional[Decimal]:
    """Wave Money object -> major units, via minor_units_to_major."""
    if money is None and not required:
        return None
    minor = _get(money, "minorUnitValue")
    if minor is None:
        raise ctx.error(f"missing {field_name}.minorUnitValue")
    exponent = _get(money, "currency", "exponent")
    if exponent is None:
        exponent = currency_exponent(_get(money, "currency", "code"))
    try:
        major = minor_units_to_major(minor, int(exponent))
    except (TypeError, ValueError) as e:
        raise ctx.error(f"invalid {field_name}: {e}") from e
    return _amount(ctx, major, field_name)


def _date(ctx: _Context, value: Any, field_name: str):
    try:
        return parse_date(value)
    except (TypeError, ValueError) as e:
        raise ctx.error(f"invalid {field_name} {value!r}") from e


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _qb_id(record: ProviderRecord, local_id: Any) -> Optional[str]:
    """QuickBooks ids are only unique within a realm; namespace them."""
    if local_id is None or local_id == "":
        return None
    if record.tenant_ref:
        return f"{record.tenant_ref}:{local_id}"
    return str(local_id)


def _qb_local_id(external_id: Optional[str]) -> Optional[str]:
    if external_id is None:
        return None
    return external_id.rsplit(":", 1)[-1]


# =============================================================================
# QuickBooks
# =============================================================================

def _quickbooks_invoice(ctx: _Context, data: dict[str, Any]) -> InvoiceRecord:
    ctx.external_id = _qb_id(ctx.record, _required(ctx, data, "Id"))
    total = _amount(ctx, _required(ctx, data, "TotalAmt"), "TotalAmt")
    balance = _amount(ctx, data.get("Balance"), "Balance", required=False)

    if balance is None:
        status = "open"
    elif balance == 0:
        status = "paid"
    elif balance < total:
        status = "partially_paid"
    else:
        status = "open"

    return InvoiceRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.QUICKBOOKS,
        raw=data,
        number=_text(data.get("DocNumber")),
        contact_external_id=_qb_id(ctx.record, _get(data, "CustomerRef", "value")),
        contact_name=_text(_get(data, "CustomerRef", "name")),
        issue_date=_date(ctx, data.get("TxnDate"), "TxnDate"),
        due_date=_date(ctx, data.get("DueDate"), "DueDate"),
        currency=_text(_get(data, "CurrencyRef", "value")),
        total=total,
        amount_due=balance,
        status=status,
        reference=_text(data.get("PrivateNote")),
    )


def _quickbooks_payment(ctx: _Context, data: dict[str, Any]) -> PaymentRecord:
    ctx.external_id = _qb_id(ctx.record, _required(ctx, data, "Id"))

    invoice_id = None
    for line in data.get("Line") or []:
        for linked in line.get("LinkedTxn") or []:
            if linked.get("TxnType") == "Invoice":
                invoice_id = linked.get("TxnId")
                break
        if invoice_id:
            break

    return PaymentRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.QUICKBOOKS,
        raw=data,
        amount=_amount(ctx, _required(ctx, data, "TotalAmt"), "TotalAmt"),
        invoice_external_id=_qb_id(ctx.record, invoice_id),
        contact_external_id=_qb_id(ctx.record, _get(data, "CustomerRef", "value")),
        payment_date=_date(ctx, data.get("TxnDate"), "TxnDate"),
        currency=_text(_get(data, "CurrencyRef", "value")),
        status="received",
        reference=_text(data.get("PaymentRefNum")),
    )


def _quickbooks_contact(ctx: _Context, data: dict[str, Any]) -> ContactRecord:
    ctx.external_id = _qb_id(ctx.record, _required(ctx, data, "Id"))
    name = data.get("DisplayName") or data.get("CompanyName") or data.get("FullyQualifiedName")
    if not name:
        raise ctx.error("missing required field DisplayName")

    return ContactRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.QUICKBOOKS,
        raw=data,
        name=str(name).strip(),
        email=_text(_get(data, "PrimaryEmailAddr", "Address")),
        phone=_text(_get(data, "PrimaryPhone", "FreeFormNumber")),
        is_customer=True,
        is_supplier=False,
        status="active" if data.get("Active", True) else "archived",
    )


# =============================================================================
# Xero
# =============================================================================

_XERO_INVOICE_STATUSES = {
    "DRAFT": "draft",
    "SUBMITTED": "draft",
    "AUTHORISED": "open",
    "PAID": "paid",
    "VOIDED": "void",
    "DELETED": "void",
}


def _xero_invoice(ctx: _Context, data: dict[str, Any]) -> InvoiceRecord:
    ctx.external_id = str(_required(ctx, data, "invoice_id"))
    total = _amount(ctx, _required(ctx, data, "total"), "total")
    amount_due = _amount(ctx, data.get("amount_due"), "amount_due", required=False)

    status = _XERO_INVOICE_STATUSES.get(str(data.get("status") or "").upper())
    if status == "open" and amount_due is not None and 0 < amount_due < total:
        status = "partially_paid"

    return InvoiceRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.XERO,
        raw=data,
        number=_text(data.get("invoice_number")),
        contact_external_id=_text(_get(data, "contact", "contact_id")),
        contact_name=_text(_get(data, "contact", "name")),
        issue_date=_date(ctx, data.get("date"), "date"),
        due_date=_date(ctx, data.get("due_date"), "due_date"),
        currency=_text(data.get("currency_code")),
        total=total,
        amount_due=amount_due,
        status=status,
        reference=_text(data.get("reference")),
    )


def _xero_payment(ctx: _Context, data: dict[str, Any]) -> PaymentRecord:
    ctx.external_id = str(_required(ctx, data, "payment_id"))
    status = str(data.get("status") or "").upper()

    return PaymentRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.XERO,
        raw=data,
        amount=_amount(ctx, _required(ctx, data, "amount"), "amount"),
        invoice_external_id=_text(_get(data, "invoice", "invoice_id")),
        contact_external_id=_text(_get(data, "invoice", "contact", "contact_id")),
        payment_date=_date(ctx, data.get("date"), "date"),
        currency=_text(_get(data, "invoice", "currency_code")),
        status="deleted" if status == "DELETED" else "received",
        reference=_text(data.get("reference")),
    )


def _xero_contact(ctx: _Context, data: dict[str, Any]) -> ContactRecord:
    ctx.external_id = str(_required(ctx, data, "contact_id"))
    name = _required(ctx, data, "name")

    phone = None
    for entry in data.get("phones") or []:
        number = _text(entry.get("phone_number"))
        if number:
            phone = " ".join(
                part for part in (entry.get("phone_area_code"), number) if part
            )
            break

    return ContactRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.XERO,
        raw=data,
        name=str(name).strip(),
        email=_text(data.get("email_address")),
        phone=phone,
        is_customer=bool(data.get("is_customer")),
        is_supplier=bool(data.get("is_supplier")),
        status=(_text(data.get("contact_status")) or "ACTIVE").lower(),
    )


# =============================================================================
# Wave
# =============================================================================

_WAVE_INVOICE_STATUSES = {
    "DRAFT": "draft",
    "SAVED": "open",
    "SENT": "open",
    "VIEWED": "open",
    "UNPAID": "open",
    "OVERDUE": "open",
    "PARTIAL": "partially_paid",
    "PAID": "paid",
}


def _wave_invoice(ctx: _Context, data: dict[str, Any]) -> InvoiceRecord:
    ctx.external_id = str(_required(ctx, data, "id"))
    total_money = _required(ctx, data, "total")

    return InvoiceRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.WAVE,
        raw=data,
        number=_text(data.get("invoiceNumber")),
        contact_external_id=_text(_get(data, "customer", "id")),
        contact_name=_text(_get(data, "customer", "name")),
        issue_date=_date(ctx, data.get("invoiceDate"), "invoiceDate"),
        due_date=_date(ctx, data.get("dueDate"), "dueDate"),
        currency=_text(_get(total_money, "currency", "code")),
        total=_money(ctx, total_money, "total"),
        amount_due=_money(ctx, data.get("amountDue"), "amountDue", required=False),
        status=_WAVE_INVOICE_STATUSES.get(str(data.get("status") or "").upper()),
        reference=_text(data.get("memo")),
    )


def _wave_contact(ctx: _Context, data: dict[str, Any]) -> ContactRecord:
    ctx.external_id = str(_required(ctx, data, "id"))

    return ContactRecord(
        org_id=ctx.org_id,
        external_id=ctx.external_id,
        source=Provider.WAVE,
        raw=data,
        name=str(_required(ctx, data, "name")).strip(),
        email=_text(data.get("email")),
        phone=_text(data.get("phone")),
        is_customer=True,
        is_supplier=False,
        status="archived" if data.get("isArchived") else "active",
    )


_MAPPERS: dict[tuple[Provider, EntityKind], Callable[[_Context, dict[str, Any]], CanonicalRecord]] = {
    (Provider.QUICKBOOKS, EntityKind.INVOICE): _quickbooks_invoice,
    (Provider.QUICKBOOKS, EntityKind.PAYMENT): _quickbooks_payment,
    (Provider.QUICKBOOKS, EntityKind.CONTACT): _quickbooks_contact,
    (Provider.XERO, EntityKind.INVOICE): _xero_invoice,
    (Provider.XERO, EntityKind.PAYMENT): _xero_payment,
    (Provider.XERO, EntityKind.CONTACT): _xero_contact,
    (Provider.WAVE, EntityKind.INVOICE): _wave_invoice,
    (Provider.WAVE, EntityKind.CONTACT): _wave_contact,
}


def to_canonical(record: ProviderRecord, provider: Provider, org_id: UUID) -> CanonicalRecord:
    """
    Map one provider record to its canonical record.

    Args:
        record: Raw provider record
        provider: Provider the record came from
        org_id: Organization the record is being synced for

    Returns:
        InvoiceRecord, PaymentRecord or ContactRecord

    Raises:
        MappingError: If the record does not have the expected shape
        UnsupportedCapabilityError: If no mapping exists for (provider, kind)
    """
    provider = Provider(provider)
    ctx = _Context(record, org_id)

    if record.provider != provider:
        raise ctx.error(f"record from {record.provider.value} passed as {provider.value}")
    if not isinstance(record.data, dict):
        raise ctx.error(f"expected an object, got {type(record.data).__name__}")

    mapper = _MAPPERS.get((provider, record.kind))
    if mapper is None:
        raise UnsupportedCapabilityError(
            f"No {record.kind.value} mapping for {provider.value}",
            org_id=org_id,
            provider=provider.value,
        )

    try:
        return mapper(ctx, record.data)
    except MappingError:
        raise
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise ctx.error(f"unexpected shape ({type(e).__name__}: {e})") from e


# =============================================================================
# Outbound
# =============================================================================

def _json_amount(amount: Optional[Decimal]) -> Optional[float]:
    """
    Decimal -> JSON number.

    Raises:
        ValueError: If the float would not print back as the same amount
    """
    if amount is None:
        return None
    value = float(amount)
    if Decimal(repr(value)) != amount:
        raise ValueError(f"amount {amount} cannot be sent as a JSON number without rounding")
    return value


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def _quickbooks_payload(record: CanonicalRecord) -> dict[str, Any]:
    if isinstance(record, InvoiceRecord):
        return {
            "Invoice": _drop_none({
                "DocNumber": record.number,
                "TxnDate": _iso(record.issue_date),
                "DueDate": _iso(record.due_date),
                "CustomerRef": {"value": _qb_local_id(record.contact_external_id)},
                "CurrencyRef": {"value": record.currency} if record.currency else None,
                "Line": [{
                    "Amount": _json_amount(record.total),
                    "DetailType": "SalesItemLineDetail",
                    "SalesItemLineDetail": {"ItemRef": {"value": "1", "name": "Services"}},
                }],
                "PrivateNote": record.reference,
            })
        }
    if isinstance(record, PaymentRecord):
        lines = []
        if record.invoice_external_id:
            lines.append({
                "Amount": _json_amount(record.amount),
                "LinkedTxn": [{
                    "TxnId": _qb_local_id(record.invoice_external_id),
                    "TxnType": "Invoice",
                }],
            })
        return {
            "Payment": _drop_none({
                "TxnDate": _iso(record.payment_date),
                "TotalAmt": _json_amount(record.amount),
                "CustomerRef": {"value": _qb_local_id(record.contact_external_id)},
                "Line": lines,
                "PaymentRefNum": record.reference,
            })
        }
    return {
        "Customer": _drop_none({
            "DisplayName": record.name,
            "PrimaryEmailAddr": {"Address": record.email} if record.email else None,
            "PrimaryPhone": {"FreeFormNumber": record.phone} if record.phone else None,
            "Active": record.status != "archived",
        })
    }


_XERO_OUTBOUND_STATUSES = {"draft": "DRAFT", "open": "AUTHORISED", "void": "VOIDED"}


def _xero_payload(record: CanonicalRecord) -> dict[str, Any]:
    if isinstance(record, InvoiceRecord):
        return {
            "Invoices": [_drop_none({
                "Type": "ACCREC",
                "Contact": {"ContactID": record.contact_external_id},
                "Date": _iso(record.issue_date),
                "DueDate": _iso(record.due_date),
                "InvoiceNumber": record.number,
                "Reference": record.reference,
                "Status": _XERO_OUTBOUND_STATUSES.get(record.status or "", "DRAFT"),
                "CurrencyCode": record.currency,
                "LineItems": [{
                    "Description": record.reference or record.number or "Invoice",
                    "Quantity": 1,
                    "UnitAmount": _json_amount(record.total),
                }],
            })]
        }
    if isinstance(record, PaymentRecord):
        return {
            "Payments": [_drop_none({
                "Invoice": {"InvoiceID": record.invoice_external_id},
                "Date": _iso(record.payment_date),
                "Amount": _json_amount(record.amount),
                "Reference": record.reference,
                "PaymentType": "ACCRECPAYMENT",
            })]
        }
    return {
        "Contacts": [_drop_none({
            "Name": record.name,
            "EmailAddress": record.email,
            "Phones": [{"PhoneType": "MOBILE", "PhoneNumber": record.phone}] if record.phone else None,
            "ContactStatus": "ARCHIVED" if record.status == "archived" else "ACTIVE",
            "IsCustomer": record.is_customer,
            "IsSupplier": record.is_supplier,
        })]
    }


def _wave_payload(record: CanonicalRecord, business_id: Optional[str]) -> dict[str, Any]:
    if not business_id:
        raise ValueError("Wave payloads need a business id")

    if isinstance(record, PaymentRecord):
        exponent = currency_exponent(record.currency)
        return {
            "input": _drop_none({
                "businessId": business_id,
                "externalId": record.external_id,
                "date": _iso(record.payment_date),
                "description": record.reference or "Customer payment",
                "notes": (
                    f"Payment for invoice {record.invoice_external_id}"
                    if record.invoice_external_id else None
                ),
                "money": {
                    "minorUnitValue": major_units_to_minor(record.amount, exponent),
                    "currency": record.currency or "USD",
                },
            })
        }
    if isinstance(record, InvoiceRecord):
        return {
            "input": _drop_none({
                "businessId": business_id,
                "customerId": record.contact_external_id,
                "invoiceNumber": record.number,
                "invoiceDate": _iso(record.issue_date),
                "dueDate": _iso(record.due_date),
                "memo": record.reference,
                "currency": record.currency,
                "itemLines": [{
                    "description": record.reference or record.number or "Invoice",
                    "quantity": 1,
                    "unitPrice": str(record.total),
                }],
            })
        }
    return {
        "input": _drop_none({
            "businessId": business_id,
            "name": record.name,
            "email": record.email,
            "mobile": record.phone,
        })
    }


def to_provider_payload(
    record: CanonicalRecord,
    provider: Provider,
    business_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Build the provider's create payload for a canonical record.

    Pure mapping for callers that push records outward (export jobs and the
    like). Sync is read-only and never calls this.

    Args:
        record: Canonical record
        provider: Target provider
        business_id: Wave business id (required for Wave)

    Returns:
        JSON-ready request body (QuickBooks entity body, Xero collection
        body, or Wave mutation variables)

    Raises:
        MappingError: If the record cannot be expressed in the provider's shape
    """
    provider = Provider(provider)
    try:
        if provider == Provider.QUICKBOOKS:
            return _quickbooks_payload(record)
        if provider == Provider.XERO:
            return _xero_payload(record)
        return _wave_payload(record, business_id)
    except ValueError as e:
        raise MappingError(
            f"{provider.value} {record.kind.value}: {e}",
            external_id=record.external_id,
            org_id=record.org_id,
            provider=provider.value,
        ) from e
