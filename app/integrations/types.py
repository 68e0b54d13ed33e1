"""
Integration Types
Value objects shared by the token lifecycle, provider adapters and sync layer.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, NamedTuple, Optional
from uuid import UUID


class Provider(str, Enum):
    """Supported accounting providers."""

    QUICKBOOKS = "quickbooks"
    XERO = "xero"
    WAVE = "wave"


class EntityKind(str, Enum):
    """Provider record kinds the sync layer understands."""

    INVOICE = "invoice"
    PAYMENT = "payment"
    CONTACT = "contact"


class CredentialKey(NamedTuple):
    """
    Composite (org_id, provider) key.

    Every in-memory structure keyed by credential uses this tuple so one
    tenant's refresh state can never be looked up by provider alone.
    """

    org_id: UUID
    provider: Provider


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "<empty>"
    return f"<secret:{len(secret)} chars>"


@dataclass
class Credential:
    """
    Stored OAuth credential for one (org, provider) pair.

    Attributes:
        org_id: Tenant organization
        provider: Accounting provider
        access_token: Short-lived bearer token
        refresh_token: Long-lived token used to obtain new access tokens
        expires_at: When access_token expires (aware UTC)
        enabled: False once the refresh token has been rejected
        external_tenant_id: QuickBooks realmId / Xero tenant id / Wave business id
        last_refresh_error: Last refresh failure message, cleared on success
        last_refreshed_at: When tokens were last refreshed
        updated_at: Last write time
    """

    org_id: UUID
    provider: Provider
    access_token: str
    refresh_token: str
    expires_at: datetime
    enabled: bool = True
    external_tenant_id: Optional[str] = None
    last_refresh_error: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> CredentialKey:
        return CredentialKey(self.org_id, self.provider)

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        """True if the access token stays valid for more than ``margin``."""
        return self.expires_at - now > margin

    def copy(self, **changes: Any) -> "Credential":
        return replace(self, **changes)

    def __repr__(self) -> str:
        return (
            f"Credential(org_id={self.org_id}, provider={self.provider.value}, "
            f"access_token={_mask(self.access_token)}, "
            f"refresh_token={_mask(self.refresh_token)}, "
            f"expires_at={self.expires_at.isoformat()}, enabled={self.enabled})"
        )


@dataclass(frozen=True)
class AccessToken:
    """
    A currently-valid bearer token handed to callers of ensure_valid_token.

    Carries the provider tenant reference adapters need to address requests.
    """

    value: str = field(repr=False)
    org_id: UUID
    provider: Provider
    expires_at: datetime
    external_tenant_id: Optional[str] = None

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.value}"


@dataclass(frozen=True)
class TokenGrant:
    """Result of a provider refresh call."""

    access_token: str = field(repr=False)
    expires_in: int
    refresh_token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class Account:
    """A ledger account (or Wave business) exposed by a provider."""

    id: str
    name: str
    type: Optional[str] = None
    code: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class ProviderRecord:
    """
    A raw provider record in the provider's own wire shape.

    ``tenant_ref`` is the provider tenant the record was read from, needed
    to namespace ids that are only unique within one provider tenant.
    """

    provider: Provider
    kind: EntityKind
    data: dict[str, Any]
    tenant_ref: Optional[str] = None
