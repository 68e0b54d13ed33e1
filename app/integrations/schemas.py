"""
Integration Schemas
Response models for the accounting integration endpoints.

No schema carries a token: connection status exposes expiry and health only.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.integrations.types import EntityKind, Provider


# =============================================================================
# Response Models
# =============================================================================

class ConnectionStatusResponse(BaseModel):
    """Connection status for one (organization, provider)."""

    provider: Provider = Field(..., description="Accounting provider")
    is_connected: bool = Field(..., description="Whether a credential exists")
    enabled: bool = Field(
        False,
        description="False once the provider rejected the refresh token",
    )
    external_tenant_id: Optional[str] = Field(
        None,
        description="QuickBooks realmId, Xero tenant id or Wave business id",
    )
    expires_at: Optional[datetime] = Field(
        None,
        description="When the current access token expires",
    )
    last_refreshed_at: Optional[datetime] = Field(
        None,
        description="When tokens were last refreshed",
    )
    last_refresh_error: Optional[str] = Field(
        None,
        description="Last refresh failure, cleared on success",
    )
    refresh_in_flight: bool = Field(
        False,
        description="Whether a refresh is currently running in this process",
    )


class RefreshResponse(BaseModel):
    """Result of a manual token refresh."""

    success: bool = Field(..., description="Whether a valid token is available")
    provider: Provider = Field(..., description="Accounting provider")
    expires_at: datetime = Field(..., description="When the access token expires")


class AccountResponse(BaseModel):
    """One ledger account."""

    id: str
    name: str
    type: Optional[str] = None
    code: Optional[str] = None
    status: Optional[str] = None


class AccountListResponse(BaseModel):
    provider: Provider
    accounts: list[AccountResponse]


class SyncErrorResponse(BaseModel):
    """One skipped record."""

    external_id: Optional[str] = None
    error_kind: str
    message: str


class SyncResponse(BaseModel):
    """Outcome of one sync batch."""

    provider: Provider
    entity_kind: EntityKind
    created: int = Field(..., description="New canonical rows")
    updated: int = Field(..., description="Existing rows updated in place")
    failed: int = Field(..., description="Records skipped")
    errors: list[SyncErrorResponse] = Field(default_factory=list)
    incremental: bool = Field(
        False,
        description="Whether only records changed since the last clean sync were fetched",
    )


class WebhookResponse(BaseModel):
    received: int = Field(..., description="Number of events recorded")
