"""
Shopify Admin API client

REST endpoints for recent windows (orders, customers, abandoned checkouts)
and GraphQL bulk operations for full-history exports. A shop can run only
one bulk operation at a time.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from marketsync.config import get_settings
from marketsync.connectors.base_client import ApiRequest, ApiResponse, PlatformClient
from marketsync.utils.logger import log

# Bulk operation statuses reported by Shopify
BULK_CREATED = "CREATED"
BULK_RUNNING = "RUNNING"
BULK_COMPLETED = "COMPLETED"
BULK_FAILED = "FAILED"
BULK_CANCELED = "CANCELED"
BULK_CANCELING = "CANCELING"
BULK_EXPIRED = "EXPIRED"
BULK_ACTIVE_STATUSES = (BULK_CREATED, BULK_RUNNING, BULK_CANCELING)

_MONEY = "{ shopMoney { amount } }"

BULK_QUERIES = {
    "orders": """
{
  orders%(filter)s {
    edges {
      node {
        id
        name
        email
        createdAt
        updatedAt
        cancelledAt
        displayFinancialStatus
        displayFulfillmentStatus
        currencyCode
        totalPriceSet %(money)s
        subtotalPriceSet %(money)s
        totalTaxSet %(money)s
        totalDiscountsSet %(money)s
        customer { id }
        lineItems {
          edges {
            node {
              id
              sku
              title
              quantity
              variant { id }
              product { id }
              originalUnitPriceSet %(money)s
            }
          }
        }
      }
    }
  }
}
""",
    "customers": """
{
  customers%(filter)s {
    edges {
      node {
        id
        email
        firstName
        lastName
        numberOfOrders
        amountSpent { amount }
        createdAt
        updatedAt
      }
    }
  }
}
""",
    "products": """
{
  products%(filter)s {
    edges {
      node {
        id
        title
        vendor
        productType
        status
        createdAt
        updatedAt
      }
    }
  }
}
""",
}

BULK_OPERATION_FIELDS = "id status errorCode objectCount url partialDataUrl createdAt completedAt"

RUN_BULK_MUTATION = """
mutation bulkOperationRunQuery($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""

BULK_NODE_QUERY = """
query bulkOperation($id: ID!) {
  node(id: $id) { ... on BulkOperation { %s } }
}
""" % BULK_OPERATION_FIELDS

CURRENT_BULK_QUERY = "{ currentBulkOperation { %s } }" % BULK_OPERATION_FIELDS

CANCEL_BULK_MUTATION = """
mutation bulkOperationCancel($id: ID!) {
  bulkOperationCancel(id: $id) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""


def build_bulk_query(entity: str, since: Optional[date] = None) -> str:
    """GraphQL document for a bulk export of one entity"""
    if entity not in BULK_QUERIES:
        raise ValueError(f"No bulk query for entity: {entity}")
    search = f'(query: "created_at:>=\'{since.isoformat()}\'")' if since else ""
    return BULK_QUERIES[entity] % {"filter": search, "money": _MONEY}


class ShopifyClient(PlatformClient):
    """Client for one shop's Admin API"""

    platform = "shopify"
    MAX_PAGES = 200

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: Optional[str] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        settings = get_settings()
        self.shop_domain = shop_domain.replace("https://", "").replace("http://", "").rstrip("/")
        self.access_token = access_token
        self.api_version = api_version or settings.shopify_api_version
        self.base_url = f"https://{self.shop_domain}/admin/api/{self.api_version}"

    def _default_headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

    def _payload_error(self, body: Any) -> Optional[str]:
        if isinstance(body, dict) and body.get("errors"):
            errors = body["errors"]
            if isinstance(errors, list):
                return "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            return str(errors)
        return None

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def _rest_paginated(self, tenant_id: str, resource: str, params: Dict[str, Any]) -> ApiResponse:
        """Follow Link rel="next" headers; returns all records in data"""
        records: List[dict] = []
        url: Optional[str] = f"{self.base_url}/{resource}.json"
        request = ApiRequest(url=url, params={"limit": 250, **params})
        pages = 0
        last: Optional[ApiResponse] = None

        while url and pages < self.MAX_PAGES:
            last = await self.call(tenant_id, request)
            if not last.success:
                return last
            records.extend((last.data or {}).get(resource, []))
            url = last.next_url
            # page_info links reject extra filters
            request = ApiRequest(url=url, cache_bust=False) if url else request
            pages += 1

        if url:
            log.warning(f"Shopify {resource} pagination stopped at {self.MAX_PAGES} pages")

        return ApiResponse(success=True, data=records, status_code=last.status_code if last else None)

    async def fetch_orders(
        self,
        tenant_id: str,
        created_at_min: Optional[datetime] = None,
        created_at_max: Optional[datetime] = None,
        updated_at_min: Optional[datetime] = None,
    ) -> ApiResponse:
        params: Dict[str, Any] = {"status": "any"}
        if created_at_min:
            params["created_at_min"] = created_at_min.isoformat()
        if created_at_max:
            params["created_at_max"] = created_at_max.isoformat()
        if updated_at_min:
            params["updated_at_min"] = updated_at_min.isoformat()
        return await self._rest_paginated(tenant_id, "orders", params)

    async def fetch_customers(self, tenant_id: str, updated_at_min: Optional[datetime] = None) -> ApiResponse:
        params: Dict[str, Any] = {}
        if updated_at_min:
            params["updated_at_min"] = updated_at_min.isoformat()
        return await self._rest_paginated(tenant_id, "customers", params)

    async def fetch_checkouts(self, tenant_id: str, created_at_min: Optional[datetime] = None) -> ApiResponse:
        """Abandoned checkouts"""
        params: Dict[str, Any] = {}
        if created_at_min:
            params["created_at_min"] = created_at_min.isoformat()
        return await self._rest_paginated(tenant_id, "checkouts", params)

    # ------------------------------------------------------------------
    # GraphQL bulk operations
    # ------------------------------------------------------------------

    async def graphql(self, tenant_id: str, query: str, variables: Optional[dict] = None) -> ApiResponse:
        response = await self.post(
            tenant_id,
            f"{self.base_url}/graphql.json",
            json={"query": query, "variables": variables or {}},
        )
        if response.success:
            response.data = (response.data or {}).get("data") or {}
        return response

    async def start_bulk_export(self, tenant_id: str, entity: str, since: Optional[date] = None) -> ApiResponse:
        """
        Submit a bulk export

        Returns:
            ApiResponse whose data is {"id", "status"} of the new operation
        """
        response = await self.graphql(tenant_id, RUN_BULK_MUTATION, {"query": build_bulk_query(entity, since)})
        if not response.success:
            return response

        result = response.data.get("bulkOperationRunQuery") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            message = "; ".join(e.get("message", "") for e in user_errors)
            return ApiResponse(success=False, error=f"Bulk export rejected: {message}", status_code=response.status_code)

        operation = result.get("bulkOperation")
        if not operation:
            return ApiResponse(success=False, error="Bulk export returned no operation", status_code=response.status_code)

        log.info(f"Started Shopify bulk export for {tenant_id}/{entity}: {operation['id']}")
        return ApiResponse(success=True, data=operation, status_code=response.status_code)

    async def get_bulk_operation(self, tenant_id: str, operation_id: str) -> ApiResponse:
        """Status of a specific bulk operation (data is None when unknown)"""
        response = await self.graphql(tenant_id, BULK_NODE_QUERY, {"id": operation_id})
        if response.success:
            node = response.data.get("node")
            response.data = node if node and node.get("id") else None
        return response

    async def get_current_bulk_operation(self, tenant_id: str) -> ApiResponse:
        """The shop's most recent bulk operation (data is None when there is none)"""
        response = await self.graphql(tenant_id, CURRENT_BULK_QUERY)
        if response.success:
            response.data = response.data.get("currentBulkOperation")
        return response

    async def cancel_bulk_operation(self, tenant_id: str, operation_id: str) -> ApiResponse:
        response = await self.graphql(tenant_id, CANCEL_BULK_MUTATION, {"id": operation_id})
        if response.success:
            result = response.data.get("bulkOperationCancel") or {}
            user_errors = result.get("userErrors") or []
            if user_errors:
                return ApiResponse(success=False, error="; ".join(e.get("message", "") for e in user_errors))
            response.data = result.get("bulkOperation")
        return response

    async def download_bulk_result(self, tenant_id: str, url: str) -> ApiResponse:
        """Fetch the JSONL result file (signed URL, no auth headers)"""
        return await self.call(
            tenant_id,
            ApiRequest(
                url=url,
                auth=False,
                cache_bust=False,
                expect_json=False,
                timeout=max(self.timeout, 120.0),
            ),
        )
