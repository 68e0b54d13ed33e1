"""
Wave Adapter
OAuth refresh and GraphQL access for Wave Financial.
"""

import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from app.integrations.exceptions import (
    ProviderError,
    ProviderPermanentError,
    ProviderTokenExpiredError,
    ProviderTransientError,
    UnsupportedCapabilityError,
)
from app.integrations.providers.base import HttpProviderAdapter, classify_status
from app.integrations.types import (
    AccessToken,
    Account,
    EntityKind,
    Provider,
    ProviderRecord,
)
from app.integrations.utils import format_since, parse_datetime

logger = logging.getLogger(__name__)

WAVE_TOKEN_URL = "https://api.waveapps.com/oauth2/token/"
WAVE_GRAPHQL_URL = "https://gql.waveapps.com/graphql/public"

MAX_PAGES = 100

# GraphQL error extension codes
_EXPIRED_CODES = {"UNAUTHENTICATED"}
_TRANSIENT_CODES = {"INTERNAL_SERVER_ERROR", "SERVICE_UNAVAILABLE", "TOO_MANY_REQUESTS"}

BUSINESSES_QUERY = """
query Businesses($page: Int!, $pageSize: Int!) {
  businesses(page: $page, pageSize: $pageSize) {
    pageInfo { currentPage totalPages }
    edges { node { id name isArchived } }
  }
}
"""

ACCOUNTS_QUERY = """
query Accounts($businessId: ID!, $page: Int!, $pageSize: Int!) {
  business(id: $businessId) {
    accounts(page: $page, pageSize: $pageSize) {
      pageInfo { currentPage totalPages }
      edges { node { id name displayId isArchived type { value } } }
    }
  }
}
"""

INVOICES_QUERY = """
query Invoices($businessId: ID!, $page: Int!, $pageSize: Int!, $modifiedAtAfter: DateTime) {
  business(id: $businessId) {
    invoices(page: $page, pageSize: $pageSize, modifiedAtAfter: $modifiedAtAfter) {
      pageInfo { currentPage totalPages }
      edges {
        node {
          id
          invoiceNumber
          invoiceDate
          dueDate
          status
          memo
          modifiedAt
          customer { id name }
          total { minorUnitValue currency { code exponent } }
          amountDue { minorUnitValue currency { code exponent } }
        }
      }
    }
  }
}
"""

CUSTOMERS_QUERY = """
query Customers($businessId: ID!, $page: Int!, $pageSize: Int!) {
  business(id: $businessId) {
    customers(page: $page, pageSize: $pageSize) {
      pageInfo { currentPage totalPages }
      edges { node { id name email phone isArchived modifiedAt } }
    }
  }
}
"""


def _modified_after(node: dict[str, Any], since: datetime) -> bool:
    modified = parse_datetime(node.get("modifiedAt"))
    return modified is None or modified > since


class WaveAdapter(HttpProviderAdapter):
    """
    Wave adapter.

    Wave reports most failures inside a 200 GraphQL response, so
    classification looks at ``errors[].extensions.code`` as well as the
    HTTP status. Wave may omit a new refresh token on refresh; the
    coordinator then keeps the current one.
    """

    provider = Provider.WAVE
    token_url = WAVE_TOKEN_URL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        page_size: int = 100,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.page_size = page_size

    def _token_request(self, refresh_token: str) -> dict[str, Any]:
        return {
            "data": {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            "headers": {"Content-Type": "application/x-www-form-urlencoded"},
        }

    def classify_api_error(self, response: httpx.Response) -> ProviderError:
        if response.status_code == 401:
            return ProviderTokenExpiredError(
                "Wave rejected the access token",
                status_code=401,
                error_code="unauthenticated",
                provider=self.provider.value,
            )
        return classify_status(
            response,
            self.provider,
            f"Wave API error (status: {response.status_code})",
        )

    def classify_graphql_errors(self, errors: list[dict[str, Any]]) -> ProviderError:
        """Classify the ``errors`` array of a GraphQL response."""
        first = errors[0] if errors else {}
        code = ((first.get("extensions") or {}).get("code") or "").upper()
        message = f"Wave GraphQL error: {first.get('message') or code or 'unknown'}"

        if code in _EXPIRED_CODES:
            return ProviderTokenExpiredError(
                message, error_code=code.lower(), provider=self.provider.value
            )
        if code in _TRANSIENT_CODES:
            return ProviderTransientError(
                message, error_code=code.lower(), provider=self.provider.value
            )
        return ProviderPermanentError(
            message, error_code=code.lower() or None, provider=self.provider.value
        )

    async def _graphql(
        self, token: AccessToken, query: str, variables: dict[str, Any]
    ) -> dict[str, Any]:
        body = await self._api_call(
            token,
            "POST",
            WAVE_GRAPHQL_URL,
            headers={"Content-Type": "application/json"},
            json={"query": query, "variables": variables},
        )
        if body.get("errors"):
            raise self.classify_graphql_errors(body["errors"])
        return body.get("data") or {}

    def _business_id(self, token: AccessToken) -> str:
        if not token.external_tenant_id:
            raise ProviderPermanentError(
                "Wave credential has no business id",
                provider=self.provider.value,
            )
        return token.external_tenant_id

    async def _paged_nodes(
        self,
        token: AccessToken,
        query: str,
        path: tuple[str, ...],
        variables: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Walk ``pageInfo`` until the last page and return every edge node."""
        nodes: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            data = await self._graphql(
                token, query, {**variables, "page": page, "pageSize": self.page_size}
            )
            connection: Any = data
            for key in path:
                connection = (connection or {}).get(key)
            if not connection:
                break

            nodes.extend(edge["node"] for edge in connection.get("edges") or [] if edge.get("node"))
            page_info = connection.get("pageInfo") or {}
            if page_info.get("currentPage", page) >= page_info.get("totalPages", page):
                break
        else:
            logger.warning("Reached safety limit for Wave %s pagination (%d pages)", path[-1], MAX_PAGES)

        return nodes

    def _records(
        self, token: AccessToken, kind: EntityKind, nodes: list[dict[str, Any]]
    ) -> list[ProviderRecord]:
        return [
            ProviderRecord(
                provider=self.provider,
                kind=kind,
                data=node,
                tenant_ref=token.external_tenant_id,
            )
            for node in nodes
        ]

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def list_accounts(self, token: AccessToken) -> list[Account]:
        """
        Chart of accounts for the connected business. Before a business is
        selected, the caller's businesses are listed as pseudo-accounts.
        """
        if not token.external_tenant_id:
            nodes = await self._paged_nodes(token, BUSINESSES_QUERY, ("businesses",), {})
            return [
                Account(
                    id=str(node["id"]),
                    name=node.get("name") or "",
                    type="business",
                    status="archived" if node.get("isArchived") else "active",
                )
                for node in nodes
            ]

        nodes = await self._paged_nodes(
            token,
            ACCOUNTS_QUERY,
            ("business", "accounts"),
            {"businessId": token.external_tenant_id},
        )
        return [
            Account(
                id=str(node["id"]),
                name=node.get("name") or "",
                type=(node.get("type") or {}).get("value"),
                code=node.get("displayId"),
                status="archived" if node.get("isArchived") else "active",
            )
            for node in nodes
        ]

    async def fetch_invoices(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        variables: dict[str, Any] = {"businessId": self._business_id(token)}
        if since is not None:
            variables["modifiedAtAfter"] = format_since(since)
        nodes = await self._paged_nodes(token, INVOICES_QUERY, ("business", "invoices"), variables)
        return self._records(token, EntityKind.INVOICE, nodes)

    async def fetch_payments(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        raise UnsupportedCapabilityError(
            "Wave's public API does not expose invoice payments",
            org_id=token.org_id,
            provider=self.provider.value,
        )

    async def fetch_contacts(
        self, token: AccessToken, since: Optional[datetime] = None
    ) -> list[ProviderRecord]:
        nodes = await self._paged_nodes(
            token,
            CUSTOMERS_QUERY,
            ("business", "customers"),
            {"businessId": self._business_id(token)},
        )
        if since is not None:
            # customers() has no modified-since filter; filter client-side.
            # Nodes without a usable modifiedAt are kept.
            nodes = [node for node in nodes if _modified_after(node, since)]
        return self._records(token, EntityKind.CONTACT, nodes)
