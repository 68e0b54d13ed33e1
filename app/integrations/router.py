"""
Accounting Integration Router
API endpoints for connection status, manual refresh, account listing,
record sync and provider webhooks.

Authentication and organization membership checks are applied by the
surrounding application; these routes trust the org_id path parameter.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status

from app.core.rate_limit import limiter
from app.integrations.container import IntegrationContainer
from app.integrations.exceptions import NotConnected
from app.integrations.schemas import (
    AccountListResponse,
    AccountResponse,
    ConnectionStatusResponse,
    RefreshResponse,
    SyncErrorResponse,
    SyncResponse,
    WebhookResponse,
)
from app.integrations.types import EntityKind, Provider
from app.integrations.webhooks import SIGNATURE_HEADERS


router = APIRouter(
    prefix="/organizations/{org_id}/integrations",
    tags=["Accounting Integrations"],
)

webhook_router = APIRouter(prefix="/integrations/webhooks", tags=["Webhooks"])


# =============================================================================
# Dependencies
# =============================================================================

def get_integrations(request: Request) -> IntegrationContainer:
    """Dependency to get the application's IntegrationContainer."""
    return request.app.state.integrations


# =============================================================================
# Endpoints
# =============================================================================

@router.get(
    "/{provider}/status",
    response_model=ConnectionStatusResponse,
    summary="Get connection status",
    description="Connection health for one provider. Never returns tokens.",
)
async def get_status(
    org_id: UUID,
    provider: Provider,
    integrations: IntegrationContainer = Depends(get_integrations),
) -> ConnectionStatusResponse:
    try:
        credential = await integrations.service.get_connection(org_id, provider)
    except NotConnected:
        return ConnectionStatusResponse(provider=provider, is_connected=False)

    return ConnectionStatusResponse(
        provider=provider,
        is_connected=True,
        enabled=credential.enabled,
        external_tenant_id=credential.external_tenant_id,
        expires_at=credential.expires_at,
        last_refreshed_at=credential.last_refreshed_at,
        last_refresh_error=credential.last_refresh_error,
        refresh_in_flight=integrations.coordinator.is_refreshing(org_id, provider),
    )


@router.post(
    "/{provider}/refresh",
    response_model=RefreshResponse,
    summary="Refresh tokens now",
    description="Force a token refresh. Concurrent requests share one provider call.",
)
@limiter.limit("10/minute")
async def refresh_tokens(
    request: Request,
    org_id: UUID,
    provider: Provider,
    integrations: IntegrationContainer = Depends(get_integrations),
) -> RefreshResponse:
    """
    Rate limited to 10 requests per minute per IP.
    """
    token = await integrations.coordinator.ensure_valid_token(
        org_id, provider, force_refresh=True
    )
    return RefreshResponse(success=True, provider=provider, expires_at=token.expires_at)


@router.get(
    "/{provider}/accounts",
    response_model=AccountListResponse,
    summary="List ledger accounts",
)
async def list_accounts(
    org_id: UUID,
    provider: Provider,
    integrations: IntegrationContainer = Depends(get_integrations),
) -> AccountListResponse:
    accounts = await integrations.service.list_accounts(org_id, provider)
    return AccountListResponse(
        provider=provider,
        accounts=[
            AccountResponse(
                id=account.id,
                name=account.name,
                type=account.type,
                code=account.code,
                status=account.status,
            )
            for account in accounts
        ],
    )


@router.post(
    "/{provider}/sync/{entity_kind}",
    response_model=SyncResponse,
    summary="Sync provider records",
    description=(
        "Fetch invoices, payments or contacts and upsert them into canonical "
        "storage. Malformed records are skipped and reported individually."
    ),
)
@limiter.limit("5/minute")
async def sync_records(
    request: Request,
    org_id: UUID,
    provider: Provider,
    entity_kind: EntityKind,
    full: bool = Query(False, description="Ignore the incremental cursor"),
    integrations: IntegrationContainer = Depends(get_integrations),
) -> SyncResponse:
    """
    Rate limited to 5 requests per minute per IP.
    """
    result = await integrations.service.sync(org_id, provider, entity_kind, full=full)
    return SyncResponse(
        provider=result.provider,
        entity_kind=result.entity_kind,
        created=result.created,
        updated=result.updated,
        failed=result.failed,
        errors=[
            SyncErrorResponse(
                external_id=error.external_id,
                error_kind=error.error_kind,
                message=error.message,
            )
            for error in result.errors
        ],
        incremental=result.since is not None,
    )


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    status_code=status.HTTP_200_OK,
    summary="Receive provider webhook",
    description="Signed change notifications from QuickBooks or Xero.",
)
async def receive_webhook(
    request: Request,
    provider: Provider,
    integrations: IntegrationContainer = Depends(get_integrations),
) -> WebhookResponse:
    """
    The raw body is verified before parsing. An invalid signature answers
    401, which is also how Xero's intent-to-receive probe is satisfied.
    """
    body = await request.body()
    header = SIGNATURE_HEADERS.get(provider)
    signature = request.headers.get(header) if header else None
    received = await integrations.webhooks.handle(provider, body, signature)
    return WebhookResponse(received=received)
