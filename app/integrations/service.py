"""
Accounting Integration Service
Convenience operations over the coordinator, adapters and sync layer.

Callers never handle tokens: every operation obtains one through
TokenRefreshCoordinator.ensure_valid_token and hands it to the adapter.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar, Union
from uuid import UUID

from app.integrations.audit import AuditKind, AuditLog
from app.integrations.coordinator import TokenRefreshCoordinator
from app.integrations.credential_store import CredentialStore
from app.integrations.exceptions import (
    CrossTenantConflictError,
    MappingError,
    NotConnected,
    ProviderTokenExpiredError,
    UnsupportedCapabilityError,
)
from app.integrations.providers.base import ProviderAdapter
from app.integrations.sync.normalizers import to_canonical
from app.integrations.sync.repository import CanonicalRepository, SyncStateStore
from app.integrations.types import (
    AccessToken,
    Account,
    Credential,
    CredentialKey,
    EntityKind,
    Provider,
    ProviderRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RecordFailure:
    """One record skipped by a sync."""

    external_id: Optional[str]
    error_kind: str
    message: str


@dataclass
class SyncResult:
    """Per-batch outcome counts of sync()."""

    provider: Provider
    entity_kind: EntityKind
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[RecordFailure] = field(default_factory=list)
    since: Optional[datetime] = None

    @property
    def succeeded(self) -> int:
        return self.created + self.updated


class AccountingIntegrationService:
    """
    Entry point for features that read from accounting providers.

    Usage:
        service = AccountingIntegrationService(coordinator, adapters, repository, audit)
        accounts = await service.list_accounts(org_id, Provider.XERO)
        result = await service.sync(org_id, Provider.QUICKBOOKS, EntityKind.INVOICE)
    """

    def __init__(
        self,
        coordinator: TokenRefreshCoordinator,
        adapters: Mapping[Provider, ProviderAdapter],
        repository: CanonicalRepository,
        audit: AuditLog,
        sync_states: Optional[SyncStateStore] = None,
    ):
        self.coordinator = coordinator
        self.adapters = dict(adapters)
        self.repository = repository
        self.audit = audit
        self.sync_states = sync_states

    # =========================================================================
    # Status
    # =========================================================================

    async def get_connection(self, org_id: UUID, provider: Union[Provider, str]) -> Credential:
        """
        Stored credential for (org_id, provider), for status display.

        Raises:
            NotConnected: If no credential exists
        """
        key = CredentialKey(org_id, Provider(provider))
        store: CredentialStore = self.coordinator.store
        credential = await store.get(key)
        if credential is None:
            raise NotConnected(
                f"{key.provider.value} is not connected for this organization",
                org_id=org_id,
                provider=key.provider.value,
            )
        return credential

    # =========================================================================
    # Provider reads
    # =========================================================================

    def _adapter(self, org_id: UUID, provider: Provider) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise UnsupportedCapabilityError(
                f"No adapter configured for {provider.value}",
                org_id=org_id,
                provider=provider.value,
            )
        return adapter

    async def _with_token(
        self,
        org_id: UUID,
        provider: Provider,
        call: Callable[[AccessToken], Awaitable[T]],
    ) -> T:
        """
        Run ``call`` with a valid token. If the provider rejects the token as
        expired anyway (clock skew, early revocation of the access token),
        force one single-flight refresh and retry exactly once.
        """
        token = await self.coordinator.ensure_valid_token(org_id, provider)
        try:
            return await call(token)
        except ProviderTokenExpiredError:
            logger.info(
                "%s rejected access token for organization %s; forcing refresh",
                provider.value,
                org_id,
            )
            token = await self.coordinator.ensure_valid_token(
                org_id, provider, force_refresh=True
            )
            return await call(token)

    async def list_accounts(
        self, org_id: UUID, provider: Union[Provider, str]
    ) -> list[Account]:
        provider = Provider(provider)
        adapter = self._adapter(org_id, provider)
        return await self._with_token(org_id, provider, adapter.list_accounts)

    async def fetch_records(
        self,
        org_id: UUID,
        provider: Union[Provider, str],
        kind: Union[EntityKind, str],
        since: Optional[datetime] = None,
    ) -> list[ProviderRecord]:
        """Fetch raw provider records of ``kind`` modified after ``since``."""
        provider = Provider(provider)
        kind = EntityKind(kind)
        adapter = self._adapter(org_id, provider)
        return await self._with_token(
            org_id, provider, lambda token: adapter.fetch(kind, token, since)
        )

    async def fetch_invoices(
        self, org_id: UUID, provider: Union[Provider, str], since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        return await self.fetch_records(org_id, provider, EntityKind.INVOICE, since)

    async def fetch_payments(
        self, org_id: UUID, provider: Union[Provider, str], since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        return await self.fetch_records(org_id, provider, EntityKind.PAYMENT, since)

    async def fetch_contacts(
        self, org_id: UUID, provider: Union[Provider, str], since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        return await self.fetch_records(org_id, provider, EntityKind.CONTACT, since)

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(
        self,
        org_id: UUID,
        provider: Union[Provider, str],
        entity_kind: Union[EntityKind, str],
        full: bool = False,
    ) -> SyncResult:
        """
        Fetch one batch of provider records and upsert them.

        Each record is mapped and upserted on its own: a MappingError or
        cross-tenant conflict skips that record, is audited, and the rest
        of the batch continues. Fetch and token errors abort the whole call.

        Args:
            org_id: Organization UUID
            provider: Accounting provider
            entity_kind: invoice | payment | contact
            full: Ignore the stored cursor and fetch everything

        Returns:
            SyncResult with created/updated/failed counts and per-record errors
        """
        provider = Provider(provider)
        kind = EntityKind(entity_kind)
        started_at = datetime.now(timezone.utc)

        since = None
        if self.sync_states is not None and not full:
            since = await self.sync_states.get_cursor(org_id, provider, kind)

        records = await self.fetch_records(org_id, provider, kind, since)
        result = SyncResult(provider=provider, entity_kind=kind, since=since)

        logger.info(
            "Syncing %d %s %s record(s) for organization %s",
            len(records),
            provider.value,
            kind.value,
            org_id,
        )

        for record in records:
            await self._sync_record(org_id, provider, record, result)

        if self.sync_states is not None:
            await self.sync_states.record_run(
                org_id,
                provider,
                kind,
                started_at=started_at,
                created=result.created,
                updated=result.updated,
                failed=result.failed,
            )

        await self.audit.record(
            org_id,
            provider,
            AuditKind.SYNC_UPSERT,
            detail=f"{kind.value} sync: {result.created} created, {result.updated} updated, {result.failed} failed",
            context={
                "entity_kind": kind.value,
                "created": result.created,
                "updated": result.updated,
                "failed": result.failed,
                "incremental": since is not None,
            },
        )
        return result

    async def _sync_record(
        self,
        org_id: UUID,
        provider: Provider,
        record: ProviderRecord,
        result: SyncResult,
    ) -> None:
        external_id: Optional[str] = None
        try:
            canonical = to_canonical(record, provider, org_id)
            external_id = canonical.external_id
            upserted = await self.repository.upsert(canonical)
        except (MappingError, CrossTenantConflictError) as e:
            external_id = getattr(e, "external_id", None) or external_id
            await self._record_failure(org_id, provider, result, external_id, e)
            return

        if upserted.created:
            result.created += 1
        else:
            result.updated += 1

    async def _record_failure(
        self,
        org_id: UUID,
        provider: Provider,
        result: SyncResult,
        external_id: Optional[str],
        error: Any,
    ) -> None:
        error_kind = type(error).__name__
        result.failed += 1
        result.errors.append(
            RecordFailure(external_id=external_id, error_kind=error_kind, message=error.message)
        )
        logger.warning(
            "Skipped %s %s record %s for organization %s: %s",
            provider.value,
            result.entity_kind.value,
            external_id or "<unknown>",
            org_id,
            error.message,
        )
        await self.audit.record(
            org_id,
            provider,
            AuditKind.SYNC_FAILURE,
            detail=error.message,
            context={
                "entity_kind": result.entity_kind.value,
                "external_id": external_id,
                "error_kind": error_kind,
            },
        )
