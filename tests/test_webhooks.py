"""
Tests for webhook signature verification and event intake.
"""

import json

import pytest

from app.integrations.audit import AuditKind
from app.integrations.exceptions import UnsupportedCapabilityError, WebhookSignatureError
from app.integrations.types import Provider
from app.integrations.webhooks import (
    WebhookProcessor,
    compute_signature,
    parse_events,
    verify_signature,
)

from conftest import make_credential

QB_SECRET = "qb-verifier-token"
XERO_SECRET = "xero-webhook-key"


def quickbooks_payload(realm_id: str = "9130") -> dict:
    return {
        "eventNotifications": [
            {
                "realmId": realm_id,
                "dataChangeEvent": {
                    "entities": [
                        {"name": "Invoice", "id": "130", "operation": "Update", "lastUpdated": "2024-03-01T10:00:00Z"},
                        {"name": "Payment", "id": "77", "operation": "Create", "lastUpdated": "2024-03-01T10:05:00Z"},
                    ]
                },
            }
        ]
    }


@pytest.fixture
def processor(store, audit):
    return WebhookProcessor(
        store,
        audit,
        secrets={Provider.QUICKBOOKS: QB_SECRET, Provider.XERO: XERO_SECRET},
    )


def signed(secret: str, payload) -> tuple[bytes, str]:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return body, compute_signature(secret, body)


# =============================================================================
# Signatures
# =============================================================================

class TestSignatures:

    def test_known_signature(self):
        # base64(HMAC-SHA256("key", "The quick brown fox jumps over the lazy dog"))
        signature = compute_signature("key", b"The quick brown fox jumps over the lazy dog")

        assert signature == "97yD9DBThCSxMpjmqm+xQ+9NWaFJRhdZl0edvC0aPNg="

    def test_verify_accepts_matching_signature(self):
        body = b'{"events": []}'

        assert verify_signature("secret", body, compute_signature("secret", body))

    def test_verify_rejects_other_body_or_missing_header(self):
        signature = compute_signature("secret", b"original")

        assert not verify_signature("secret", b"tampered", signature)
        assert not verify_signature("other-secret", b"original", signature)
        assert not verify_signature("secret", b"original", None)
        assert not verify_signature("secret", b"original", "")


# =============================================================================
# Parsing
# =============================================================================

class TestParseEvents:

    def test_quickbooks_entities_flattened(self):
        events = parse_events(Provider.QUICKBOOKS, quickbooks_payload())

        assert [(e.tenant_ref, e.entity, e.entity_id, e.operation) for e in events] == [
            ("9130", "Invoice", "130", "Update"),
            ("9130", "Payment", "77", "Create"),
        ]

    def test_xero_events(self):
        payload = {
            "events": [
                {
                    "tenantId": "xero-tenant",
                    "eventCategory": "INVOICE",
                    "resourceId": "inv-guid",
                    "eventType": "UPDATE",
                    "eventDateUtc": "2024-03-01T10:00:00",
                }
            ]
        }

        (event,) = parse_events(Provider.XERO, payload)

        assert event.tenant_ref == "xero-tenant"
        assert event.entity == "INVOICE"
        assert event.operation == "UPDATE"


# =============================================================================
# Processor
# =============================================================================

class TestWebhookProcessor:

    async def test_quickbooks_events_recorded_against_org(self, processor, store, audit, org_id):
        await store.save(
            make_credential(org_id=org_id, provider=Provider.QUICKBOOKS, external_tenant_id="9130")
        )
        body, signature = signed(QB_SECRET, quickbooks_payload())

        received = await processor.handle(Provider.QUICKBOOKS, body, signature)

        assert received == 2
        entries = audit.of_kind(AuditKind.WEBHOOK_RECEIVED)
        assert [entry.org_id for entry in entries] == [org_id, org_id]
        assert entries[0].context["entity_id"] == "130"
        assert entries[1].detail == "Payment Create"

    async def test_unknown_tenant_recorded_without_org(self, processor, audit):
        body, signature = signed(QB_SECRET, quickbooks_payload("no-such-realm"))

        received = await processor.handle(Provider.QUICKBOOKS, body, signature)

        assert received == 2
        assert all(entry.org_id is None for entry in audit.entries)

    async def test_bad_signature_rejected(self, processor, audit):
        body, _ = signed(QB_SECRET, quickbooks_payload())

        with pytest.raises(WebhookSignatureError):
            await processor.handle(Provider.QUICKBOOKS, body, "bm90LWEtc2lnbmF0dXJl")

        assert audit.entries == []

    async def test_xero_intent_to_receive(self, processor, audit):
        body, signature = signed(XERO_SECRET, {"events": [], "firstEventSequence": 0, "lastEventSequence": 0})

        received = await processor.handle(Provider.XERO, body, signature)

        assert received == 0
        assert audit.entries == []

    async def test_signed_non_json_body_ignored(self, processor):
        body, signature = signed(XERO_SECRET, b"not json")

        assert await processor.handle(Provider.XERO, body, signature) == 0

    async def test_wave_has_no_webhooks(self, processor):
        with pytest.raises(UnsupportedCapabilityError):
            await processor.handle(Provider.WAVE, b"{}", "anything")

    async def test_unconfigured_secret(self, store, audit):
        processor = WebhookProcessor(store, audit, secrets={Provider.XERO: ""})

        with pytest.raises(UnsupportedCapabilityError):
            await processor.handle(Provider.XERO, b"{}", "anything")
