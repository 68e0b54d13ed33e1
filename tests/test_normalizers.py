"""
Tests for the sync normalizers.

Covers inbound mapping for every provider, exact amount handling, malformed
input and outbound payload shapes.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from app.integrations.exceptions import MappingError, UnsupportedCapabilityError
from app.integrations.sync.normalizers import (
    currency_exponent,
    major_units_to_minor,
    minor_units_to_major,
    to_canonical,
    to_provider_payload,
)
from app.integrations.sync.records import (
    ContactRecord,
    InvoiceRecord,
    PaymentRecord,
    record_fields,
)
from app.integrations.types import EntityKind, Provider, ProviderRecord

ORG_ID = uuid.UUID("5f0c6a1e-1d4b-4c43-9d35-2f1f4d5b0a11")


def quickbooks(kind: EntityKind, data: dict, realm: str = "9130") -> ProviderRecord:
    return ProviderRecord(Provider.QUICKBOOKS, kind, data, tenant_ref=realm)


def xero(kind: EntityKind, data: dict) -> ProviderRecord:
    return ProviderRecord(Provider.XERO, kind, data, tenant_ref="xero-tenant")


def wave(kind: EntityKind, data: dict) -> ProviderRecord:
    return ProviderRecord(Provider.WAVE, kind, data, tenant_ref="business-1")


QB_INVOICE = {
    "Id": "130",
    "DocNumber": "1037",
    "TxnDate": "2024-03-01",
    "DueDate": "2024-03-31",
    "TotalAmt": 362.07,
    "Balance": 100.00,
    "CustomerRef": {"value": "58", "name": "Sonnenschein Family Store"},
    "CurrencyRef": {"value": "USD", "name": "United States Dollar"},
    "PrivateNote": "March order",
}

XERO_INVOICE = {
    "invoice_id": "243216c5-369e-4056-ac67-05388f86dc81",
    "invoice_number": "INV-0041",
    "type": "ACCREC",
    "status": "AUTHORISED",
    "date": "2024-03-01",
    "due_date": "2024-03-15",
    "currency_code": "NZD",
    "total": "1150.00",
    "amount_due": "1150.00",
    "reference": "RPT445-1",
    "contact": {"contact_id": "bd2270c3-8706-4c11-9cfb-000b551c3f51", "name": "Bayside Club"},
}

WAVE_INVOICE = {
    "id": "QnVzaW5lc3M6MTIz",
    "invoiceNumber": "7",
    "invoiceDate": "2024-03-01",
    "dueDate": "2024-03-31",
    "status": "PARTIAL",
    "memo": "Consulting",
    "customer": {"id": "Q3VzdG9tZXI6NDU2", "name": "Acme"},
    "total": {"minorUnitValue": "12345", "currency": {"code": "USD", "exponent": 2}},
    "amountDue": {"minorUnitValue": "2345", "currency": {"code": "USD", "exponent": 2}},
}


# =============================================================================
# Unit conversion
# =============================================================================

class TestUnitConversion:
    """Minor/major unit helpers."""

    def test_minor_to_major(self):
        assert minor_units_to_major(12345, 2) == Decimal("123.45")
        assert minor_units_to_major("500", 0) == Decimal("500")
        assert minor_units_to_major(1234, 3) == Decimal("1.234")

    def test_minor_rejects_fractions(self):
        with pytest.raises(ValueError):
            minor_units_to_major("12.5", 2)
        with pytest.raises(ValueError):
            minor_units_to_major(None, 2)

    def test_major_to_minor(self):
        assert major_units_to_minor(Decimal("123.45"), 2) == 12345
        assert major_units_to_minor(Decimal("1000"), 0) == 1000

    def test_major_to_minor_rejects_extra_places(self):
        with pytest.raises(ValueError):
            major_units_to_minor(Decimal("1.005"), 2)

    def test_currency_exponent(self):
        assert currency_exponent("USD") == 2
        assert currency_exponent("jpy") == 0
        assert currency_exponent("KWD") == 3
        assert currency_exponent(None) == 2


# =============================================================================
# QuickBooks
# =============================================================================

class TestQuickBooksMapping:

    def test_invoice(self):
        record = to_canonical(quickbooks(EntityKind.INVOICE, QB_INVOICE), Provider.QUICKBOOKS, ORG_ID)

        assert isinstance(record, InvoiceRecord)
        assert record.org_id == ORG_ID
        assert record.source == Provider.QUICKBOOKS
        assert record.external_id == "9130:130"
        assert record.contact_external_id == "9130:58"
        assert record.number == "1037"
        assert record.total == Decimal("362.07")
        assert record.amount_due == Decimal("100.0")
        assert record.status == "partially_paid"
        assert record.issue_date == date(2024, 3, 1)
        assert record.currency == "USD"
        assert record.raw == QB_INVOICE

    def test_same_local_id_in_two_realms_gives_distinct_keys(self):
        first = to_canonical(quickbooks(EntityKind.INVOICE, QB_INVOICE, "1"), Provider.QUICKBOOKS, ORG_ID)
        second = to_canonical(quickbooks(EntityKind.INVOICE, QB_INVOICE, "2"), Provider.QUICKBOOKS, ORG_ID)

        assert first.external_id != second.external_id

    def test_paid_invoice(self):
        data = {**QB_INVOICE, "Balance": 0}

        record = to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)

        assert record.status == "paid"

    def test_payment_links_invoice(self):
        data = {
            "Id": "201",
            "TotalAmt": "55.00",
            "TxnDate": "2024-03-05",
            "CustomerRef": {"value": "58"},
            "Line": [{"Amount": 55.0, "LinkedTxn": [{"TxnId": "130", "TxnType": "Invoice"}]}],
        }

        record = to_canonical(quickbooks(EntityKind.PAYMENT, data), Provider.QUICKBOOKS, ORG_ID)

        assert isinstance(record, PaymentRecord)
        assert record.amount == Decimal("55.00")
        assert record.invoice_external_id == "9130:130"
        assert record.payment_date == date(2024, 3, 5)

    def test_customer(self):
        data = {
            "Id": "58",
            "DisplayName": "Sonnenschein Family Store",
            "PrimaryEmailAddr": {"Address": "family@example.com"},
            "Active": False,
        }

        record = to_canonical(quickbooks(EntityKind.CONTACT, data), Provider.QUICKBOOKS, ORG_ID)

        assert isinstance(record, ContactRecord)
        assert record.name == "Sonnenschein Family Store"
        assert record.email == "family@example.com"
        assert record.is_customer is True
        assert record.status == "archived"

    def test_missing_total_is_mapping_error_with_id(self):
        data = {key: value for key, value in QB_INVOICE.items() if key != "TotalAmt"}

        with pytest.raises(MappingError) as exc_info:
            to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)

        assert exc_info.value.external_id == "9130:130"
        assert "TotalAmt" in exc_info.value.message

    def test_missing_id_is_mapping_error(self):
        data = {key: value for key, value in QB_INVOICE.items() if key != "Id"}

        with pytest.raises(MappingError) as exc_info:
            to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)

        assert exc_info.value.external_id is None

    def test_non_numeric_amount(self):
        data = {**QB_INVOICE, "TotalAmt": "three hundred"}

        with pytest.raises(MappingError):
            to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)

    def test_unexpected_nested_shape(self):
        data = {**QB_INVOICE, "CustomerRef": "58"}

        record = to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)

        assert record.contact_external_id is None

    def test_invalid_date(self):
        data = {**QB_INVOICE, "TxnDate": "yesterday"}

        with pytest.raises(MappingError):
            to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)


# =============================================================================
# Xero
# =============================================================================

class TestXeroMapping:

    def test_invoice(self):
        record = to_canonical(xero(EntityKind.INVOICE, XERO_INVOICE), Provider.XERO, ORG_ID)

        assert record.external_id == XERO_INVOICE["invoice_id"]
        assert record.total == Decimal("1150.00")
        assert record.status == "open"
        assert record.contact_name == "Bayside Club"
        assert record.due_date == date(2024, 3, 15)
        assert record.currency == "NZD"

    def test_partially_paid(self):
        data = {**XERO_INVOICE, "amount_due": "150.00"}

        record = to_canonical(xero(EntityKind.INVOICE, data), Provider.XERO, ORG_ID)

        assert record.status == "partially_paid"

    def test_legacy_json_date(self):
        data = {**XERO_INVOICE, "date": "/Date(1709251200000+0000)/"}

        record = to_canonical(xero(EntityKind.INVOICE, data), Provider.XERO, ORG_ID)

        assert record.issue_date == date(2024, 3, 1)

    def test_payment(self):
        data = {
            "payment_id": "b26fd49a-cbae-470a-a8f8-bcbc119e0379",
            "amount": 500.5,
            "date": "2024-03-10T00:00:00",
            "status": "AUTHORISED",
            "invoice": {
                "invoice_id": XERO_INVOICE["invoice_id"],
                "currency_code": "NZD",
                "contact": {"contact_id": "bd2270c3-8706-4c11-9cfb-000b551c3f51"},
            },
        }

        record = to_canonical(xero(EntityKind.PAYMENT, data), Provider.XERO, ORG_ID)

        assert record.amount == Decimal("500.5")
        assert record.invoice_external_id == XERO_INVOICE["invoice_id"]
        assert record.payment_date == date(2024, 3, 10)
        assert record.status == "received"

    def test_contact(self):
        data = {
            "contact_id": "bd2270c3-8706-4c11-9cfb-000b551c3f51",
            "name": "Bayside Club",
            "email_address": "secretary@baysideclub.co",
            "is_supplier": True,
            "contact_status": "ACTIVE",
            "phones": [
                {"phone_type": "DEFAULT", "phone_number": ""},
                {"phone_type": "MOBILE", "phone_area_code": "021", "phone_number": "555 1234"},
            ],
        }

        record = to_canonical(xero(EntityKind.CONTACT, data), Provider.XERO, ORG_ID)

        assert record.name == "Bayside Club"
        assert record.phone == "021 555 1234"
        assert record.is_supplier is True
        assert record.is_customer is False
        assert record.status == "active"

    def test_too_many_decimal_places_rejected(self):
        data = {**XERO_INVOICE, "total": "10.12345"}

        with pytest.raises(MappingError) as exc_info:
            to_canonical(xero(EntityKind.INVOICE, data), Provider.XERO, ORG_ID)

        assert "decimal places" in exc_info.value.message

    def test_four_decimal_places_kept_exactly(self):
        data = {**XERO_INVOICE, "total": "10.1234"}

        record = to_canonical(xero(EntityKind.INVOICE, data), Provider.XERO, ORG_ID)

        assert record.total == Decimal("10.1234")


# =============================================================================
# Wave
# =============================================================================

class TestWaveMapping:

    def test_invoice_minor_units(self):
        record = to_canonical(wave(EntityKind.INVOICE, WAVE_INVOICE), Provider.WAVE, ORG_ID)

        assert record.total == Decimal("123.45")
        assert record.amount_due == Decimal("23.45")
        assert record.currency == "USD"
        assert record.status == "partially_paid"
        assert record.contact_external_id == "Q3VzdG9tZXI6NDU2"

    def test_zero_exponent_currency(self):
        data = {
            **WAVE_INVOICE,
            "total": {"minorUnitValue": "5000", "currency": {"code": "JPY"}},
            "amountDue": None,
        }

        record = to_canonical(wave(EntityKind.INVOICE, data), Provider.WAVE, ORG_ID)

        assert record.total == Decimal("5000")
        assert record.amount_due is None

    def test_missing_minor_units(self):
        data = {**WAVE_INVOICE, "total": {"currency": {"code": "USD"}}}

        with pytest.raises(MappingError):
            to_canonical(wave(EntityKind.INVOICE, data), Provider.WAVE, ORG_ID)

    def test_contact(self):
        data = {"id": "Q3VzdG9tZXI6NDU2", "name": " Acme ", "email": "ap@acme.test", "isArchived": True}

        record = to_canonical(wave(EntityKind.CONTACT, data), Provider.WAVE, ORG_ID)

        assert record.name == "Acme"
        assert record.status == "archived"

    def test_payments_have_no_mapping(self):
        with pytest.raises(UnsupportedCapabilityError):
            to_canonical(wave(EntityKind.PAYMENT, {"id": "1"}), Provider.WAVE, ORG_ID)


# =============================================================================
# Guards
# =============================================================================

class TestMappingGuards:

    def test_provider_mismatch(self):
        with pytest.raises(MappingError):
            to_canonical(xero(EntityKind.INVOICE, XERO_INVOICE), Provider.QUICKBOOKS, ORG_ID)

    def test_non_object_payload(self):
        record = ProviderRecord(Provider.XERO, EntityKind.INVOICE, ["not", "a", "dict"])

        with pytest.raises(MappingError):
            to_canonical(record, Provider.XERO, ORG_ID)

    def test_mapping_is_deterministic(self):
        first = to_canonical(xero(EntityKind.INVOICE, XERO_INVOICE), Provider.XERO, ORG_ID)
        second = to_canonical(xero(EntityKind.INVOICE, dict(XERO_INVOICE)), Provider.XERO, ORG_ID)

        assert first == second
        assert record_fields(first) == record_fields(second)

    def test_record_fields_excludes_key(self):
        record = to_canonical(xero(EntityKind.INVOICE, XERO_INVOICE), Provider.XERO, ORG_ID)

        fields = record_fields(record)

        assert "external_id" not in fields
        assert "org_id" not in fields
        assert "raw" not in fields
        assert fields["total"] == Decimal("1150.00")

    @pytest.mark.parametrize("total", ["1000000000000000", "-1000000000000000", "1e20"])
    def test_amount_outside_column_range(self, total):
        data = dict(QB_INVOICE, TotalAmt=total, Balance="0")

        with pytest.raises(MappingError) as exc_info:
            to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)

        assert exc_info.value.external_id == "9130:130"

    def test_largest_storable_amount(self):
        data = dict(QB_INVOICE, TotalAmt="999999999999999.9999", Balance="0")

        record = to_canonical(quickbooks(EntityKind.INVOICE, data), Provider.QUICKBOOKS, ORG_ID)

        assert record.total == Decimal("999999999999999.9999")


# =============================================================================
# Outbound
# =============================================================================

class TestProviderPayloads:

    def test_quickbooks_invoice_uses_local_ids(self):
        record = to_canonical(quickbooks(EntityKind.INVOICE, QB_INVOICE), Provider.QUICKBOOKS, ORG_ID)

        payload = to_provider_payload(record, Provider.QUICKBOOKS)

        invoice = payload["Invoice"]
        assert invoice["CustomerRef"] == {"value": "58"}
        assert invoice["Line"][0]["Amount"] == 362.07
        assert invoice["TxnDate"] == "2024-03-01"

    def test_xero_invoice(self):
        record = to_canonical(xero(EntityKind.INVOICE, XERO_INVOICE), Provider.XERO, ORG_ID)

        payload = to_provider_payload(record, Provider.XERO)

        invoice = payload["Invoices"][0]
        assert invoice["Type"] == "ACCREC"
        assert invoice["Status"] == "AUTHORISED"
        assert invoice["Contact"] == {"ContactID": XERO_INVOICE["contact"]["contact_id"]}
        assert invoice["LineItems"][0]["UnitAmount"] == 1150.0

    def test_wave_payment_in_minor_units(self):
        record = PaymentRecord(
            org_id=ORG_ID,
            external_id="pay-1",
            source=Provider.XERO,
            amount=Decimal("123.45"),
            currency="USD",
            payment_date=date(2024, 3, 10),
        )

        payload = to_provider_payload(record, Provider.WAVE, business_id="business-1")

        assert payload["input"]["money"] == {"minorUnitValue": 12345, "currency": "USD"}
        assert payload["input"]["businessId"] == "business-1"
        assert payload["input"]["date"] == "2024-03-10"

    def test_wave_payment_with_sub_minor_precision_rejected(self):
        record = PaymentRecord(
            org_id=ORG_ID,
            external_id="pay-1",
            source=Provider.XERO,
            amount=Decimal("123.455"),
            currency="USD",
        )

        with pytest.raises(MappingError):
            to_provider_payload(record, Provider.WAVE, business_id="business-1")

    @pytest.mark.parametrize("provider", [Provider.QUICKBOOKS, Provider.XERO])
    def test_amount_without_exact_json_number_rejected(self, provider):
        record = PaymentRecord(
            org_id=ORG_ID,
            external_id="pay-1",
            source=Provider.WAVE,
            amount=Decimal("123456789012345.1234"),
            currency="USD",
            invoice_external_id="inv-1",
        )

        with pytest.raises(MappingError):
            to_provider_payload(record, provider)

    def test_wave_requires_business_id(self):
        record = to_canonical(wave(EntityKind.CONTACT, {"id": "c1", "name": "Acme"}), Provider.WAVE, ORG_ID)

        with pytest.raises(MappingError):
            to_provider_payload(record, Provider.WAVE)

    def test_contact_payloads(self):
        record = ContactRecord(
            org_id=ORG_ID,
            external_id="c1",
            source=Provider.WAVE,
            name="Acme",
            email="ap@acme.test",
            is_customer=True,
        )

        assert to_provider_payload(record, Provider.QUICKBOOKS)["Customer"]["DisplayName"] == "Acme"
        assert to_provider_payload(record, Provider.XERO)["Contacts"][0]["EmailAddress"] == "ap@acme.test"
        assert to_provider_payload(record, Provider.WAVE, "b1")["input"]["name"] == "Acme"
