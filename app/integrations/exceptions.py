"""
Integration Exceptions
Error taxonomy for the token lifecycle, provider adapters and sync layer.

Adapters raise only ProviderTransientError / ProviderPermanentError (and
their subclasses); raw httpx or SDK errors never leave an adapter.
"""

from typing import Optional
from uuid import UUID


class IntegrationError(Exception):
    """Base class for all accounting integration errors."""

    def __init__(
        self,
        message: str,
        org_id: Optional[UUID] = None,
        provider: Optional[str] = None,
    ):
        self.message = message
        self.org_id = org_id
        self.provider = provider
        super().__init__(self.message)


class NotConnected(IntegrationError):
    """No credential exists for the (org, provider) pair."""


class CredentialDisabled(IntegrationError):
    """Credential exists but was disabled after a permanent refresh failure."""


class RefreshTransientError(IntegrationError):
    """Refresh failed for a retryable reason (network, 5xx, rate limit, timeout)."""


class RefreshPermanentError(IntegrationError):
    """Refresh token rejected or revoked; the credential has been disabled."""


class MappingError(IntegrationError):
    """A provider record did not have the shape the mapper expects."""

    def __init__(
        self,
        message: str,
        external_id: Optional[str] = None,
        org_id: Optional[UUID] = None,
        provider: Optional[str] = None,
    ):
        self.external_id = external_id
        super().__init__(message, org_id=org_id, provider=provider)


class CrossTenantConflictError(IntegrationError):
    """An upsert key already belongs to a different organization."""


class UnsupportedCapabilityError(IntegrationError):
    """The provider's public API does not offer the requested operation."""


class WebhookSignatureError(IntegrationError):
    """Webhook body did not match its HMAC signature."""


class ProviderError(IntegrationError):
    """Classified error raised by a provider adapter."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
        provider: Optional[str] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.retry_after = retry_after
        super().__init__(message, provider=provider)


class ProviderTransientError(ProviderError):
    """Network error, timeout, HTTP 429 or 5xx."""


class ProviderTokenExpiredError(ProviderTransientError):
    """Access token expired but the credential can be refreshed."""


class ProviderPermanentError(ProviderError):
    """invalid_grant, revoked token or any other non-retryable rejection."""
