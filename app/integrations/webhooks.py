"""
Provider Webhooks
Signature verification and event intake for QuickBooks and Xero notifications.

Both providers sign the raw request body with HMAC-SHA256 and send the
base64 digest in a header (``intuit-signature`` / ``x-xero-signature``).
Events are resolved to an organization through the credential's external
tenant id and recorded as ``webhook_received`` audit entries.
"""

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from app.integrations.audit import AuditKind, AuditLog
from app.integrations.credential_store import CredentialStore
from app.integrations.exceptions import UnsupportedCapabilityError, WebhookSignatureError
from app.integrations.types import Provider

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    Provider.QUICKBOOKS: "intuit-signature",
    Provider.XERO: "x-xero-signature",
}


@dataclass(frozen=True)
class WebhookEvent:
    """One change notification, normalized across providers."""

    provider: Provider
    tenant_ref: Optional[str]
    entity: Optional[str]
    entity_id: Optional[str]
    operation: Optional[str]
    occurred_at: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def compute_signature(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of ``body`` keyed by ``secret``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time comparison of the expected and received signatures."""
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature.strip())


def parse_events(provider: Provider, payload: dict[str, Any]) -> list[WebhookEvent]:
    """
    Flatten a webhook payload into events.

    QuickBooks: ``eventNotifications[].dataChangeEvent.entities[]`` under a realmId.
    Xero: ``events[]``, each carrying its own tenantId. An empty list is
    Xero's intent-to-receive probe.
    """
    events: list[WebhookEvent] = []

    if provider == Provider.QUICKBOOKS:
        for notification in payload.get("eventNotifications") or []:
            realm_id = notification.get("realmId") or notification.get("companyId")
            entities = (notification.get("dataChangeEvent") or {}).get("entities") or []
            if not entities:
                events.append(
                    WebhookEvent(provider, realm_id, None, None, None, data=notification)
                )
            for entity in entities:
                events.append(
                    WebhookEvent(
                        provider=provider,
                        tenant_ref=realm_id,
                        entity=entity.get("name"),
                        entity_id=entity.get("id"),
                        operation=entity.get("operation"),
                        occurred_at=entity.get("lastUpdated"),
                        data=entity,
                    )
                )

    elif provider == Provider.XERO:
        for event in payload.get("events") or []:
            events.append(
                WebhookEvent(
                    provider=provider,
                    tenant_ref=event.get("tenantId"),
                    entity=event.get("eventCategory"),
                    entity_id=event.get("resourceId"),
                    operation=event.get("eventType"),
                    occurred_at=event.get("eventDateUtc"),
                    data=event,
                )
            )

    return events


class WebhookProcessor:
    """
    Verifies and records incoming provider webhooks.

    Usage:
        processor = WebhookProcessor(store, audit, secrets={Provider.XERO: key})
        recorded = await processor.handle(Provider.XERO, body, signature)
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditLog,
        secrets: dict[Provider, str],
    ):
        self.store = store
        self.audit = audit
        self.secrets = {provider: secret for provider, secret in secrets.items() if secret}

    async def handle(
        self, provider: Provider, body: bytes, signature: Optional[str]
    ) -> int:
        """
        Verify and record one webhook delivery.

        Args:
            provider: Sending provider
            body: Raw request body, exactly as received
            signature: Value of the provider's signature header

        Returns:
            Number of events recorded

        Raises:
            UnsupportedCapabilityError: Provider has no webhooks or none configured
            WebhookSignatureError: Signature missing or wrong
        """
        provider = Provider(provider)
        secret = self.secrets.get(provider)
        if provider not in SIGNATURE_HEADERS or not secret:
            raise UnsupportedCapabilityError(
                f"{provider.value} webhooks are not configured",
                provider=provider.value,
            )

        if not verify_signature(secret, body, signature):
            logger.warning("Rejected %s webhook with invalid signature", provider.value)
            raise WebhookSignatureError(
                "Invalid webhook signature", provider=provider.value
            )

        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            logger.warning("Ignoring %s webhook with a non-JSON body", provider.value)
            return 0
        if not isinstance(payload, dict):
            return 0

        events = parse_events(provider, payload)
        org_cache: dict[str, Optional[UUID]] = {}

        for event in events:
            org_id = await self._resolve_org(provider, event.tenant_ref, org_cache)
            await self.audit.record(
                org_id,
                provider,
                AuditKind.WEBHOOK_RECEIVED,
                detail=f"{event.entity or 'event'} {event.operation or ''}".strip(),
                context={
                    "tenant_ref": event.tenant_ref,
                    "entity": event.entity,
                    "entity_id": event.entity_id,
                    "operation": event.operation,
                    "occurred_at": event.occurred_at,
                },
            )

        logger.info("Recorded %d %s webhook event(s)", len(events), provider.value)
        return len(events)

    async def _resolve_org(
        self,
        provider: Provider,
        tenant_ref: Optional[str],
        cache: dict[str, Optional[UUID]],
    ) -> Optional[UUID]:
        if not tenant_ref:
            return None
        if tenant_ref not in cache:
            credential = await self.store.find_by_external_tenant(provider, tenant_ref)
            cache[tenant_ref] = credential.org_id if credential else None
            if credential is None:
                logger.info("No %s connection for tenant %s", provider.value, tenant_ref)
        return cache[tenant_ref]
