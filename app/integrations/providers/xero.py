"""
Xero Adapter
Token refresh over httpx; accounting data through the xero-python SDK.
"""

import asyncio
import base64
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from xero_python.accounting import AccountingApi
from xero_python.api_client import ApiClient, Configuration
from xero_python.api_client.oauth2 import OAuth2Token
from xero_python.exceptions import ApiException

from app.integrations.exceptions import (
    ProviderError,
    ProviderPermanentError,
    ProviderTokenExpiredError,
    ProviderTransientError,
)
from app.integrations.providers.base import HttpProviderAdapter
from app.integrations.types import (
    AccessToken,
    Account,
    EntityKind,
    Provider,
    ProviderRecord,
)
from app.integrations.utils import to_json_serializable

logger = logging.getLogger(__name__)

XERO_TOKEN_URL = "https://identity.xero.com/connect/token"

# Xero returns at most 100 rows per page on paged endpoints
XERO_PAGE_SIZE = 100
MAX_PAGES = 100


def classify_api_exception(e: ApiException) -> ProviderError:
    """
    Translate an SDK ApiException into the adapter taxonomy.

    401 with a TokenExpired detail is refreshable; any other 401 means the
    connection was revoked or the tenant disconnected.
    """
    status = getattr(e, "status", None)
    body = str(getattr(e, "body", "") or "")
    message = f"Xero API error (status: {status or 'unknown'}): {body[:200] or e.reason}"

    if status == 401:
        if "TokenExpired" in body or "token expired" in body.lower():
            return ProviderTokenExpiredError(
                message, status_code=401, error_code="token_expired", provider="xero"
            )
        return ProviderPermanentError(
            message, status_code=401, error_code="unauthorized", provider="xero"
        )

    if status == 429 or (status and 500 <= status < 600):
        retry_after = None
        headers = getattr(e, "headers", None)
        if headers and headers.get("Retry-After"):
            try:
                retry_after = float(headers.get("Retry-After"))
            except (TypeError, ValueError):
                retry_after = None
        return ProviderTransientError(
            message, status_code=status, retry_after=retry_after, provider="xero"
        )

    return ProviderPermanentError(message, status_code=status, provider="xero")


class XeroAdapter(HttpProviderAdapter):
    """
    Xero adapter.

    Xero rotates both tokens on every refresh. The SDK's own auto-refresh
    is never used: the token getter serves the coordinator-issued token
    and the saver discards anything the SDK tries to persist.
    """

    provider = Provider.XERO
    token_url = XERO_TOKEN_URL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        api_factory: Optional[Callable[[AccessToken], AccountingApi]] = None,
        **kwargs,
    ):
        """
        Initialize adapter.

        Args:
            client_id: Xero app client id
            client_secret: Xero app client secret
            api_factory: Builds an AccountingApi for a token (tests pass a stub)
        """
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_factory = api_factory or self._build_accounting_api

    def _token_request(self, refresh_token: str) -> dict[str, Any]:
        credentials = f"{self.client_id}:{self.client_secret}"
        return {
            "data": {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            "headers": {
                "Authorization": "Basic " + base64.b64encode(credentials.encode()).decode(),
                "Content-Type": "application/x-www-form-urlencoded",
            },
        }

    # =========================================================================
    # SDK plumbing
    # =========================================================================

    def _build_accounting_api(self, token: AccessToken) -> AccountingApi:
        """Create an AccountingApi bound to a single access token."""
        token_dict = {
            "access_token": token.value,
            "token_type": "Bearer",
            "expires_at": token.expires_at.timestamp(),
        }

        def _discard_token(_new_token: dict) -> None:
            logger.warning("Ignoring token refreshed inside the Xero SDK")

        config = Configuration(
            oauth2_token=OAuth2Token(
                client_id=self.client_id,
                client_secret=self.client_secret,
            )
        )
        api_client = ApiClient(
            config,
            oauth2_token_getter=lambda: token_dict,
            oauth2_token_saver=_discard_token,
        )
        return AccountingApi(api_client)

    def _tenant_id(self, token: AccessToken) -> str:
        if not token.external_tenant_id:
            raise ProviderPermanentError(
                "Xero credential has no tenant id",
                provider=self.provider.value,
            )
        return token.external_tenant_id

    async def _sdk_call(self, token: AccessToken, method: str, **kwargs) -> Any:
        """
        Run one blocking SDK call in the executor with a bounded timeout,
        rate limited per Xero tenant and retried on transient failures.
        """
        api = self.api_factory(token)
        tenant_id = self._tenant_id(token)

        async def _attempt() -> Any:
            await self.rate_limiter.acquire(tenant_id)
            loop = asyncio.get_running_loop()

            def _do_sync_request():
                return getattr(api, method)(xero_tenant_id=tenant_id, **kwargs)

            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, _do_sync_request),
                    timeout=self.timeout,
                )
            except ApiException as e:
                raise classify_api_exception(e) from e
            except asyncio.TimeoutError as e:
                raise ProviderTransientError(
                    "Xero request timed out",
                    error_code="timeout",
                    provider=self.provider.value,
                ) from e
            except ProviderError:
                raise
            except Exception as e:
                # urllib3 connection errors and the like from inside the SDK
                raise ProviderTransientError(
                    f"Xero SDK error: {type(e).__name__}",
                    error_code="network_error",
                    provider=self.provider.value,
                ) from e

        return await self.retry_handler.execute_with_retry(_attempt)

    async def _paged(
        self,
        token: AccessToken,
        method: str,
        attribute: str,
        kind: EntityKind,
        since: Optional[datetime],
    ) -> list[ProviderRecord]:
        """Collect every page of a paged Xero endpoint."""
        records: list[ProviderRecord] = []
        kwargs: dict[str, Any] = {}
        if since is not None:
            kwargs["if_modified_since"] = since

        for page in range(1, MAX_PAGES + 1):
            response = await self._sdk_call(token, method, page=page, **kwargs)
            items = getattr(response, attribute, None) or []
            records.extend(
                ProviderRecord(
                    provider=self.provider,
                    kind=kind,
                    data=to_json_serializable(item),
                    tenant_ref=token.external_tenant_id,
                )
                for item in items
            )
            if len(items) < XERO_PAGE_SIZE:
                break
        else:
            logger.warning("Reached safety limit for Xero %s pagination (%d pages)", attribute, MAX_PAGES)

        return records

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def list_accounts(self, token: AccessToken) -> list[Account]:
        response = await self._sdk_call(token, "get_accounts")
        accounts = []
        for item in getattr(response, "accounts", None) or []:
            data = to_json_serializable(item)
            accounts.append(
                Account(
                    id=str(data.get("account_id")),
                    name=data.get("name") or "",
                    type=data.get("type"),
                    code=data.get("code"),
                    status=(data.get("status") or "").lower() or None,
                )
            )
        return accounts

    async def fetch_invoices(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        return await self._paged(token, "get_invoices", "invoices", EntityKind.INVOICE, since)

    async def fetch_payments(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        return await self._paged(token, "get_payments", "payments", EntityKind.PAYMENT, since)

    async def fetch_contacts(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        return await self._paged(token, "get_contacts", "contacts", EntityKind.CONTACT, since)
