"""
Integration Container
Wires stores, adapters, coordinator, service, sweeper and webhook processor.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.integrations.audit import AuditLog, SQLAuditLog
from app.integrations.coordinator import TokenRefreshCoordinator
from app.integrations.credential_store import CredentialStore, SQLCredentialStore
from app.integrations.providers import ProviderAdapter, build_adapters
from app.integrations.service import AccountingIntegrationService
from app.integrations.sweeper import ProactiveRefreshSweeper, RefreshSweepScheduler
from app.integrations.sync.repository import (
    CanonicalRepository,
    SQLCanonicalRepository,
    SQLSyncStateStore,
    SyncStateStore,
)
from app.integrations.types import Provider
from app.integrations.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass
class IntegrationContainer:
    """Process-wide integration components. One per application instance."""

    store: CredentialStore
    audit: AuditLog
    adapters: dict[Provider, ProviderAdapter]
    coordinator: TokenRefreshCoordinator
    service: AccountingIntegrationService
    sweeper: ProactiveRefreshSweeper
    scheduler: RefreshSweepScheduler
    webhooks: WebhookProcessor


def build_container(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    store: Optional[CredentialStore] = None,
    audit: Optional[AuditLog] = None,
    adapters: Optional[Mapping[Provider, ProviderAdapter]] = None,
    repository: Optional[CanonicalRepository] = None,
    sync_states: Optional[SyncStateStore] = None,
) -> IntegrationContainer:
    """
    Build the integration components.

    SQL-backed collaborators are created from ``session_factory`` unless
    given explicitly (tests pass in-memory ones).

    Args:
        settings: Application settings
        session_factory: Async session factory for the SQL stores

    Returns:
        IntegrationContainer
    """
    if session_factory is None and None in (store, audit, repository):
        raise ValueError("session_factory is required unless every store is provided")

    store = store or SQLCredentialStore(session_factory)
    audit = audit or SQLAuditLog(session_factory)
    repository = repository or SQLCanonicalRepository(session_factory)
    if sync_states is None and session_factory is not None:
        sync_states = SQLSyncStateStore(session_factory)
    adapter_map = dict(adapters) if adapters is not None else build_adapters(settings)

    margin = timedelta(seconds=settings.token_refresh_margin_seconds)
    lookahead = timedelta(seconds=settings.sweep_lookahead_seconds)
    if lookahead <= margin:
        logger.warning(
            "Sweep lookahead (%ss) should exceed the refresh margin (%ss)",
            settings.sweep_lookahead_seconds,
            settings.token_refresh_margin_seconds,
        )

    coordinator = TokenRefreshCoordinator(
        store=store,
        adapters=adapter_map,
        audit=audit,
        margin=margin,
        refresh_timeout=settings.provider_timeout_seconds,
    )
    sweeper = ProactiveRefreshSweeper(store, coordinator, lookahead=lookahead)

    return IntegrationContainer(
        store=store,
        audit=audit,
        adapters=adapter_map,
        coordinator=coordinator,
        service=AccountingIntegrationService(
            coordinator, adapter_map, repository, audit, sync_states
        ),
        sweeper=sweeper,
        scheduler=RefreshSweepScheduler(sweeper, settings.sweep_interval_seconds),
        webhooks=WebhookProcessor(
            store,
            audit,
            secrets={
                Provider.QUICKBOOKS: settings.quickbooks_webhook_verifier_token,
                Provider.XERO: settings.xero_webhook_key,
            },
        ),
    )
