"""
QuickBooks Online Adapter
OAuth refresh and query-API access for Intuit QuickBooks Online.
"""

import base64
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from app.integrations.exceptions import (
    ProviderError,
    ProviderPermanentError,
    ProviderTokenExpiredError,
)
from app.integrations.providers.base import HttpProviderAdapter, classify_status, safe_json
from app.integrations.types import (
    AccessToken,
    Account,
    EntityKind,
    Provider,
    ProviderRecord,
)
from app.integrations.utils import format_since

logger = logging.getLogger(__name__)

QUICKBOOKS_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
QUICKBOOKS_MINOR_VERSION = "65"

# Safety limit: 100 pages x 1000 rows
MAX_PAGES = 100


class QuickBooksAdapter(HttpProviderAdapter):
    """
    QuickBooks Online adapter.

    Requests are addressed by the credential's realmId. Intuit rotates the
    refresh token on (most) refreshes and rejects the old one with
    invalid_grant afterwards.
    """

    provider = Provider.QUICKBOOKS
    token_url = QUICKBOOKS_TOKEN_URL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        api_base_url: str,
        page_size: int = 100,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.page_size = min(page_size, 1000)

    def _basic_auth_header(self) -> str:
        credentials = f"{self.client_id}:{self.client_secret}"
        return "Basic " + base64.b64encode(credentials.encode()).decode()

    def _token_request(self, refresh_token: str) -> dict[str, Any]:
        return {
            "data": {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            "headers": {
                "Authorization": self._basic_auth_header(),
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        }

    def classify_api_error(self, response: httpx.Response) -> ProviderError:
        """
        401 from the data API means the access token is stale (AuthenticationFailed,
        fault code 3200). A revoked connection only becomes distinguishable at
        the token endpoint, which the forced refresh upstream will hit.
        """
        if response.status_code == 401:
            return ProviderTokenExpiredError(
                "QuickBooks rejected the access token",
                status_code=401,
                error_code="authentication_failed",
                provider=self.provider.value,
            )

        body = safe_json(response)
        detail = None
        fault = body.get("Fault") if isinstance(body, dict) else None
        if fault and fault.get("Error"):
            first = fault["Error"][0]
            detail = first.get("Detail") or first.get("Message")
        return classify_status(
            response,
            self.provider,
            f"QuickBooks API error (status: {response.status_code}): {detail or 'no detail'}",
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def _query_url(self, token: AccessToken) -> str:
        if not token.external_tenant_id:
            raise ProviderPermanentError(
                "QuickBooks credential has no realmId",
                provider=self.provider.value,
            )
        return f"{self.api_base_url}/v3/company/{token.external_tenant_id}/query"

    async def _query(
        self,
        token: AccessToken,
        entity: str,
        since: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        Page through ``SELECT * FROM {entity}``.

        Uses STARTPOSITION/MAXRESULTS paging; a short page ends the loop.
        """
        url = self._query_url(token)
        where = ""
        if since is not None:
            where = f" WHERE MetaData.LastUpdatedTime > '{format_since(since)}'"

        rows: list[dict[str, Any]] = []
        start = 1
        for _ in range(MAX_PAGES):
            statement = (
                f"SELECT * FROM {entity}{where} "
                f"STARTPOSITION {start} MAXRESULTS {self.page_size}"
            )
            body = await self._api_call(
                token,
                "GET",
                url,
                params={"query": statement, "minorversion": QUICKBOOKS_MINOR_VERSION},
            )
            page = (body.get("QueryResponse") or {}).get(entity, [])
            rows.extend(page)
            if len(page) < self.page_size:
                break
            start += self.page_size
        else:
            logger.warning(
                "Reached safety limit for QuickBooks %s pagination (%d pages)",
                entity,
                MAX_PAGES,
            )

        return rows

    def _records(
        self, token: AccessToken, kind: EntityKind, rows: list[dict[str, Any]]
    ) -> list[ProviderRecord]:
        return [
            ProviderRecord(
                provider=self.provider,
                kind=kind,
                data=row,
                tenant_ref=token.external_tenant_id,
            )
            for row in rows
        ]

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def list_accounts(self, token: AccessToken) -> list[Account]:
        rows = await self._query(token, "Account")
        return [
            Account(
                id=str(row.get("Id")),
                name=row.get("Name", ""),
                type=row.get("AccountType"),
                code=row.get("AcctNum"),
                status="active" if row.get("Active", True) else "inactive",
            )
            for row in rows
        ]

    async def fetch_invoices(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        rows = await self._query(token, "Invoice", since)
        return self._records(token, EntityKind.INVOICE, rows)

    async def fetch_payments(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        rows = await self._query(token, "Payment", since)
        return self._records(token, EntityKind.PAYMENT, rows)

    async def fetch_contacts(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        rows = await self._query(token, "Customer", since)
        return self._records(token, EntityKind.CONTACT, rows)
