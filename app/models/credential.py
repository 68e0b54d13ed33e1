"""
Provider Credential Model
Stores OAuth 2.0 tokens for one organization's accounting provider connection.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database.base import Base, TimestampMixin, UUIDMixin


class ProviderCredential(Base, UUIDMixin, TimestampMixin):
    """
    OAuth credential storage, one row per (organization, provider).

    Rows are created by the OAuth consent flow and mutated only by the
    token refresh coordinator. They are never deleted here; disconnecting
    is an external action.

    Attributes:
        org_id: Tenant organization identifier
        provider: quickbooks | xero | wave
        external_tenant_id: realmId / Xero tenant id / Wave business id
        access_token: Short-lived bearer token
        refresh_token: Long-lived token, rotated by most providers on use
        expires_at: When access_token expires
        enabled: False after a permanent refresh failure
        last_refresh_error: Last refresh failure message
        last_refreshed_at: When tokens were last refreshed

    Security Note:
        Tokens should be encrypted at rest in production.
    """

    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
    )

    provider: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    external_tenant_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Provider-side organization identifier",
    )

    access_token: Mapped[str] = mapped_column(Text, nullable=False)

    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When access_token expires",
    )

    enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    last_refresh_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("org_id", "provider", name="uq_provider_credentials_org_provider"),
        Index("ix_provider_credentials_expires_at", "expires_at"),
        Index("ix_provider_credentials_external_tenant", "provider", "external_tenant_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderCredential(org_id={self.org_id}, provider={self.provider!r}, "
            f"enabled={self.enabled})>"
        )
