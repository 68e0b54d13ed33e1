"""
Tests for the integration HTTP endpoints, run against in-memory stores.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app.config import Settings, settings
from app.core.rate_limit import limiter
from app.integrations.audit import InMemoryAuditLog
from app.integrations.container import build_container
from app.integrations.credential_store import InMemoryCredentialStore
from app.integrations.exceptions import ProviderPermanentError
from app.integrations.sync.repository import InMemoryCanonicalRepository, InMemorySyncStateStore
from app.integrations.types import Account, EntityKind, Provider
from app.integrations.webhooks import compute_signature
from app.main import create_application

from conftest import FakeAdapter, make_credential

QB_SECRET = "qb-verifier-token"


@pytest.fixture(autouse=True)
def no_background_sweeps(monkeypatch):
    monkeypatch.setattr(settings, "sweeper_enabled", False)
    limiter.reset()


@pytest.fixture
def quickbooks():
    return FakeAdapter(Provider.QUICKBOOKS, tenant_ref="9130")


@pytest.fixture
def client(store, quickbooks):
    container = build_container(
        Settings(quickbooks_webhook_verifier_token=QB_SECRET, sweeper_enabled=False),
        store=store,
        audit=InMemoryAuditLog(),
        adapters={Provider.QUICKBOOKS: quickbooks, Provider.XERO: FakeAdapter(Provider.XERO)},
        repository=InMemoryCanonicalRepository(),
        sync_states=InMemorySyncStateStore(),
    )
    with TestClient(create_application(container=container)) as test_client:
        yield test_client


def connect(store: InMemoryCredentialStore, org_id, **overrides):
    """Seed a QuickBooks credential valid for the next hour."""
    credential = make_credential(
        org_id=org_id,
        provider=Provider.QUICKBOOKS,
        now=datetime.now(timezone.utc),
        external_tenant_id="9130",
        **overrides,
    )
    return asyncio.run(store.save(credential))


def url(org_id, path: str) -> str:
    return f"/organizations/{org_id}/integrations/quickbooks/{path}"


# =============================================================================
# Status
# =============================================================================

class TestStatus:

    def test_not_connected(self, client, org_id):
        response = client.get(url(org_id, "status"))

        assert response.status_code == 200
        assert response.json()["is_connected"] is False

    def test_connected_without_tokens(self, client, store, org_id):
        connect(store, org_id)

        response = client.get(url(org_id, "status"))

        body = response.json()
        assert body["is_connected"] is True
        assert body["enabled"] is True
        assert body["external_tenant_id"] == "9130"
        assert body["refresh_in_flight"] is False
        assert "access-0" not in response.text
        assert "refresh-0" not in response.text

    def test_unknown_provider(self, client, org_id):
        response = client.get(f"/organizations/{org_id}/integrations/freshbooks/status")

        assert response.status_code == 422


# =============================================================================
# Refresh
# =============================================================================

class TestRefresh:

    def test_manual_refresh(self, client, store, quickbooks, org_id):
        connect(store, org_id)

        response = client.post(url(org_id, "refresh"))

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert quickbooks.refresh_calls == ["refresh-0"]
        assert "access-1" not in response.text

    def test_disabled_connection(self, client, store, org_id):
        connect(store, org_id, enabled=False)

        response = client.post(url(org_id, "refresh"))

        assert response.status_code == 409
        assert response.json()["error_code"] == "connection_disabled"

    def test_revoked_connection(self, client, store, quickbooks, org_id):
        connect(store, org_id)
        quickbooks.outcomes = [
            ProviderPermanentError("invalid_grant", status_code=400, error_code="invalid_grant")
        ]

        response = client.post(url(org_id, "refresh"))

        assert response.status_code == 401
        assert response.json()["error_code"] == "reconnect_required"
        assert client.get(url(org_id, "status")).json()["enabled"] is False

    def test_not_connected(self, client, org_id):
        response = client.post(url(org_id, "refresh"))

        assert response.status_code == 404
        assert response.json()["error_code"] == "not_connected"


# =============================================================================
# Accounts and sync
# =============================================================================

class TestAccountsAndSync:

    def test_list_accounts(self, client, store, quickbooks, org_id):
        connect(store, org_id)
        quickbooks.accounts = [Account(id="35", name="Checking", type="Bank", status="active")]

        response = client.get(url(org_id, "accounts"))

        assert response.status_code == 200
        assert response.json()["accounts"] == [
            {"id": "35", "name": "Checking", "type": "Bank", "code": None, "status": "active"}
        ]

    def test_accounts_not_connected(self, client, org_id):
        response = client.get(url(org_id, "accounts"))

        assert response.status_code == 404

    def test_sync_reports_counts(self, client, store, quickbooks, org_id):
        connect(store, org_id)
        quickbooks.records = {
            EntityKind.CONTACT: [
                {"Id": "58", "DisplayName": "Acme"},
                {"Id": "59"},
            ]
        }

        response = client.post(url(org_id, "sync/contact"))

        body = response.json()
        assert response.status_code == 200
        assert (body["created"], body["updated"], body["failed"]) == (1, 0, 1)
        assert body["errors"][0]["external_id"] == "9130:59"
        assert body["incremental"] is False


# =============================================================================
# Webhooks and health
# =============================================================================

class TestWebhooksAndHealth:

    def test_signed_webhook(self, client, store, org_id):
        connect(store, org_id)
        body = b'{"eventNotifications": [{"realmId": "9130", "dataChangeEvent": {"entities": [{"name": "Invoice", "id": "1", "operation": "Create"}]}}]}'

        response = client.post(
            "/integrations/webhooks/quickbooks",
            content=body,
            headers={"intuit-signature": compute_signature(QB_SECRET, body)},
        )

        assert response.status_code == 200
        assert response.json() == {"received": 1}

    def test_bad_signature(self, client):
        response = client.post(
            "/integrations/webhooks/quickbooks",
            content=b"{}",
            headers={"intuit-signature": "bm9wZQ=="},
        )

        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_signature"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["sweeper_running"] is False
