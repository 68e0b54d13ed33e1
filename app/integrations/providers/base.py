"""
Provider Adapter Base
Uniform capability surface over QuickBooks, Xero and Wave.

Each adapter owns its provider's request shaping, response parsing and,
most importantly, the translation of provider failures into the two-valued
taxonomy (ProviderTransientError / ProviderPermanentError) the token
refresh coordinator understands.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import httpx

from app.integrations.exceptions import (
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)
from app.integrations.providers.rate_limiter import RateLimiter
from app.integrations.providers.retry_handler import RetryHandler
from app.integrations.types import (
    AccessToken,
    Account,
    EntityKind,
    Provider,
    ProviderRecord,
    TokenGrant,
)

logger = logging.getLogger(__name__)

# OAuth2 error codes (RFC 6749 section 5.2) that mean the grant itself is dead
PERMANENT_OAUTH_ERRORS = {
    "invalid_grant",
    "invalid_client",
    "unauthorized_client",
    "unsupported_grant_type",
}

DEFAULT_EXPIRES_IN = 1800


class ProviderAdapter(ABC):
    """
    Flat provider interface: exactly five capabilities.

    Adapters hold no credential state. Tokens come in per call and
    refreshed grants go back to the caller, which alone persists them.
    """

    provider: Provider

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new grant."""

    @abstractmethod
    async def list_accounts(self, token: AccessToken) -> list[Account]:
        """List ledger accounts."""

    @abstractmethod
    async def fetch_invoices(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        """Fetch invoices modified after ``since`` (all when None)."""

    @abstractmethod
    async def fetch_payments(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        """Fetch payments modified after ``since`` (all when None)."""

    @abstractmethod
    async def fetch_contacts(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        """Fetch contacts modified after ``since`` (all when None)."""

    async def fetch(
        self, kind: EntityKind, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        """Dispatch to the fetch capability for ``kind``."""
        if kind == EntityKind.INVOICE:
            return await self.fetch_invoices(token, since)
        if kind == EntityKind.PAYMENT:
            return await self.fetch_payments(token, since)
        return await self.fetch_contacts(token, since)


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Retry-After header in seconds, if present and numeric."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def safe_json(response: httpx.Response) -> Any:
    """Response body as JSON, or {} when empty or not JSON."""
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {}


def classify_status(
    response: httpx.Response,
    provider: Provider,
    message: str,
    error_code: Optional[str] = None,
) -> ProviderError:
    """
    Generic status classification shared by every adapter.

    429 and 5xx are transient; every other non-2xx status is permanent.
    Adapters special-case 401 before falling back to this.
    """
    status = response.status_code
    if status == 429 or status >= 500:
        return ProviderTransientError(
            message,
            status_code=status,
            error_code=error_code,
            retry_after=parse_retry_after(response),
            provider=provider.value,
        )
    return ProviderPermanentError(
        message,
        status_code=status,
        error_code=error_code,
        provider=provider.value,
    )


class HttpProviderAdapter(ProviderAdapter):
    """
    Shared httpx plumbing for adapters.

    Every request carries a bounded timeout; timeouts and transport failures
    surface as ProviderTransientError. Data calls are rate limited per
    provider tenant and retried with backoff; token refreshes are single
    attempts so the coordinator's latency stays predictable.
    """

    token_url: str

    def __init__(
        self,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_handler: Optional[RetryHandler] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize adapter.

        Args:
            timeout: Per-request timeout in seconds
            http_client: Optional shared client (tests inject a MockTransport client)
            retry_handler: Optional retry handler (creates default if None)
            rate_limiter: Optional rate limiter (creates default if None)
        """
        self.timeout = timeout
        self._http_client = http_client
        self.retry_handler = retry_handler or RetryHandler()
        self.rate_limiter = rate_limiter or RateLimiter()

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one request, translating transport failures."""
        try:
            async with self._client() as client:
                return await client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(
                f"{self.provider.value} request timed out",
                error_code="timeout",
                provider=self.provider.value,
            ) from e
        except httpx.TransportError as e:
            raise ProviderTransientError(
                f"{self.provider.value} network error: {type(e).__name__}",
                error_code="network_error",
                provider=self.provider.value,
            ) from e

    # =========================================================================
    # Token refresh
    # =========================================================================

    @abstractmethod
    def _token_request(self, refresh_token: str) -> dict[str, Any]:
        """Keyword arguments (data, headers) for the refresh POST."""

    async def refresh(self, refresh_token: str) -> TokenGrant:
        response = await self._send("POST", self.token_url, **self._token_request(refresh_token))

        if response.status_code != 200:
            raise self.classify_token_error(response)

        body = safe_json(response)
        if not isinstance(body, dict) or not body.get("access_token"):
            raise ProviderTransientError(
                f"{self.provider.value} token endpoint returned no access_token",
                status_code=response.status_code,
                provider=self.provider.value,
            )

        try:
            expires_in = int(body.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            raise ProviderTransientError(
                f"{self.provider.value} token endpoint returned a non-numeric expires_in",
                status_code=response.status_code,
                error_code="invalid_token_response",
                provider=self.provider.value,
            ) from None

        return TokenGrant(
            access_token=str(body["access_token"]),
            refresh_token=body.get("refresh_token") or None,
            expires_in=expires_in,
        )

    def classify_token_error(self, response: httpx.Response) -> ProviderError:
        """
        Classify a failed token endpoint response.

        invalid_grant (refresh token expired, revoked or already used) and
        client credential errors are permanent; 429/5xx are transient.
        """
        body = safe_json(response)
        error_code = body.get("error") if isinstance(body, dict) else None
        description = body.get("error_description") if isinstance(body, dict) else None
        message = f"{self.provider.value} token refresh failed: {description or error_code or response.status_code}"

        if error_code in PERMANENT_OAUTH_ERRORS:
            return ProviderPermanentError(
                message,
                status_code=response.status_code,
                error_code=error_code,
                provider=self.provider.value,
            )
        return classify_status(response, self.provider, message, error_code)

    # =========================================================================
    # Data calls
    # =========================================================================

    def classify_api_error(self, response: httpx.Response) -> ProviderError:
        """Classify a failed data call. Adapters override to special-case 401."""
        return classify_status(
            response,
            self.provider,
            f"{self.provider.value} API error (status: {response.status_code})",
        )

    async def _api_call(
        self,
        token: AccessToken,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        **kwargs,
    ) -> Any:
        """Rate-limited, retried data call returning parsed JSON."""
        rate_key = token.external_tenant_id or str(token.org_id)
        request_headers = {
            "Authorization": token.authorization_header,
            "Accept": "application/json",
            **(headers or {}),
        }

        async def _attempt() -> Any:
            await self.rate_limiter.acquire(rate_key)
            response = await self._send(method, url, headers=request_headers, **kwargs)
            if response.status_code >= 400:
                raise self.classify_api_error(response)
            return safe_json(response)

        return await self.retry_handler.execute_with_retry(_attempt)
