"""Shopify GraphQL Admin API client for orders.

WHAT:
    Wrapper for the Shopify Admin GraphQL API with:
    - Authentication handling
    - Rate limiting (2 requests/second)
    - Cursor-based pagination (counting and incremental fetches)
    - Bulk operations (start, poll, download JSONL)
    - Error handling and retries

WHY:
    Encapsulates all Shopify API interaction for the sync orchestrator.
    Large backfills go through bulk operations; small deltas are paged.

REFERENCES:
    - Shopify GraphQL Admin API: https://shopify.dev/docs/api/admin-graphql
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-graphql
    - Bulk operations: https://shopify.dev/docs/api/usage/bulk-operations/queries
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..schemas import Order
from .order_transform import transform_graphql_order, transform_bulk_order

logger = logging.getLogger(__name__)

# Default API version
DEFAULT_API_VERSION = "2025-10"

# Shopify allows 2 requests/second for regular apps
RATE_LIMIT_DELAY = 0.5  # seconds between requests

PAGE_SIZE = 250
MAX_INCREMENTAL_ORDERS = 10_000
MAX_CONCURRENT_LOOKUPS = 10

BULK_MAX_WAIT_SECONDS = 7200  # 2 hours
BULK_POLL_INTERVAL_SECONDS = 60

ORDER_GID_PREFIX = "gid://shopify/Order/"
LINE_ITEM_GID_PREFIX = "gid://shopify/LineItem/"


class ShopifyAPIError(Exception):
    """Custom exception for Shopify API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class BulkOperationTimeoutError(ShopifyAPIError):
    """Bulk operation did not finish within the polling cap (it keeps running upstream)."""


@dataclass
class BulkOperation:
    """Snapshot of a Shopify bulk operation; status is lowercased."""

    id: str
    status: str
    error_code: Optional[str] = None
    object_count: Optional[int] = None
    url: Optional[str] = None
    partial_data_url: Optional[str] = None

    @classmethod
    def from_node(cls, node: Optional[Dict[str, Any]]) -> Optional["BulkOperation"]:
        if not node or not node.get("id"):
            return None
        object_count = node.get("objectCount")
        return cls(
            id=node["id"],
            status=(node.get("status") or "").lower(),
            error_code=node.get("errorCode"),
            object_count=int(object_count) if object_count not in (None, "") else None,
            url=node.get("url"),
            partial_data_url=node.get("partialDataUrl"),
        )

    @property
    def is_running(self) -> bool:
        return self.status in ("created", "running")


# =============================================================================
# QUERIES
# =============================================================================

ORDER_NODE_FIELDS = """
    id
    name
    email
    createdAt
    updatedAt
    totalPriceSet { shopMoney { amount currencyCode } }
    subtotalPriceSet { shopMoney { amount } }
    totalTaxSet { shopMoney { amount } }
    totalShippingPriceSet { shopMoney { amount currencyCode } }
    shippingAddress {
        firstName
        lastName
        address1
        address2
        city
        province
        country
        zip
    }
    lineItems(first: 250) {
        edges {
            node {
                id
                title
                quantity
                originalUnitPriceSet { shopMoney { amount } }
                variant { sku }
            }
        }
    }
    displayFinancialStatus
    displayFulfillmentStatus
    currencyCode
    customer {
        id
        email
        firstName
        lastName
    }
"""

ORDERS_PAGE_QUERY = """
query GetOrders($first: Int!, $after: String, $query: String) {
    orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT, reverse: true) {
        edges {
            node {
%s
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
""" % ORDER_NODE_FIELDS

ORDER_IDS_PAGE_QUERY = """
query CountOrders($first: Int!, $after: String, $query: String) {
    orders(first: $first, after: $after, query: $query) {
        edges {
            node {
                id
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""

ORDER_BY_ID_QUERY = """
query GetOrder($id: ID!) {
    order(id: $id) {
%s
    }
}
""" % ORDER_NODE_FIELDS

# Bulk queries use connection syntax; child rows come back as separate JSONL lines
BULK_ORDERS_QUERY_TEMPLATE = """
{
    orders%s {
        edges {
            node {
                __typename
                id
                name
                email
                createdAt
                updatedAt
                totalPriceSet { shopMoney { amount currencyCode } }
                subtotalPriceSet { shopMoney { amount } }
                totalTaxSet { shopMoney { amount } }
                totalShippingPriceSet { shopMoney { amount currencyCode } }
                shippingAddress {
                    firstName
                    lastName
                    address1
                    address2
                    city
                    province
                    country
                    zip
                }
                lineItems {
                    edges {
                        node {
                            __typename
                            id
                            title
                            quantity
                            originalUnitPriceSet { shopMoney { amount } }
                            variant { sku }
                        }
                    }
                }
                displayFinancialStatus
                displayFulfillmentStatus
                currencyCode
                customer {
                    id
                    email
                    firstName
                    lastName
                }
            }
        }
    }
}
"""

BULK_OPERATION_FIELDS = """
    id
    status
    errorCode
    createdAt
    completedAt
    objectCount
    fileSize
    url
    partialDataUrl
"""

BULK_RUN_MUTATION = """
mutation RunOrdersBulk($query: String!) {
    bulkOperationRunQuery(query: $query) {
        bulkOperation {
%s
        }
        userErrors {
            field
            message
        }
    }
}
""" % BULK_OPERATION_FIELDS

BULK_OPERATION_BY_ID_QUERY = """
query GetBulkOperation($id: ID!) {
    node(id: $id) {
        ... on BulkOperation {
%s
        }
    }
}
""" % BULK_OPERATION_FIELDS

CURRENT_BULK_OPERATION_QUERY = """
query GetCurrentBulkOperation {
    currentBulkOperation(type: QUERY) {
%s
    }
}
""" % BULK_OPERATION_FIELDS


def updated_since_filter(timestamp: str) -> str:
    """Shopify search syntax for "updated after timestamp"."""
    return f"updated_at:>'{timestamp}'"


def to_order_gid(order_id: str) -> str:
    order_id = str(order_id)
    if order_id.startswith("gid://"):
        return order_id
    return f"{ORDER_GID_PREFIX}{order_id}"


class ShopifyClient:
    """GraphQL client for the orders part of the Shopify Admin API.

    WHAT: Handles all communication with Shopify's GraphQL Admin API
    WHY: Centralized API access with rate limiting, pagination, and error handling

    Usage:
        client = ShopifyClient(shop="mystore", access_token="shpat_xxx")
        count = await client.count_orders_since("2024-01-01T00:00:00Z")
        operation_id = await client.start_orders_bulk()
    """

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        min_request_interval: float = RATE_LIMIT_DELAY,
        timeout: float = 30.0,
    ):
        """Initialize Shopify client.

        Args:
            shop: Store handle ("mystore"); a full "mystore.myshopify.com" domain is accepted too
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2025-10)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Monotonic clock used for rate limiting and bulk polling
            sleep: Async sleep used for rate limiting, retries and polling
            min_request_interval: Minimum seconds between requests
            timeout: Request timeout in seconds
        """
        self.shop = shop.replace(".myshopify.com", "")
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{self.shop}.myshopify.com/admin/api/{api_version}/graphql.json"

        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._min_request_interval = min_request_interval
        self._timeout = timeout

        # Rate limiting
        self._last_request_time: Optional[float] = None
        self._rate_lock = asyncio.Lock()

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {self.shop} (API version: {api_version})")

    def _http_client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self._timeout, transport=self._transport)

    async def _rate_limit(self) -> None:
        """Enforce rate limiting between requests.

        WHAT: Wait if needed to respect the 2 req/sec limit
        WHY: Shopify will return 429 errors if we exceed rate limits
        """
        async with self._rate_lock:
            if self._last_request_time is not None:
                elapsed = self._clock() - self._last_request_time
                if elapsed < self._min_request_interval:
                    wait_time = self._min_request_interval - elapsed
                    logger.debug(f"[SHOPIFY_CLIENT] Rate limiting: waiting {wait_time:.3f}s")
                    await self._sleep(wait_time)

            self._last_request_time = self._clock()

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        retries: int = 3,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query against Shopify Admin API.

        WHAT: Send GraphQL request with rate limiting and retry logic
        WHY: All Shopify data fetching goes through this method

        Args:
            query: GraphQL query string
            variables: Query variables (optional)
            retries: Number of retry attempts for transient errors

        Returns:
            Response data from GraphQL query

        Raises:
            ShopifyAPIError: On GraphQL errors, or if the request fails after all retries
        """
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        last_error: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(retries):
            await self._rate_limit()
            try:
                async with self._http_client() as client:
                    response = await client.post(
                        self.base_url,
                        json=payload,
                        headers=headers,
                    )

                    # Handle rate limiting (429)
                    if response.status_code == 429:
                        last_status = 429
                        retry_after = float(response.headers.get("Retry-After", 2))
                        logger.warning(
                            f"[SHOPIFY_CLIENT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{retries})"
                        )
                        await self._sleep(retry_after)
                        continue

                    response.raise_for_status()
                    data = response.json()

                    # Check for GraphQL errors
                    if data.get("errors"):
                        errors = data["errors"]
                        error_messages = [
                            e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors
                        ]
                        logger.error(f"[SHOPIFY_CLIENT] GraphQL errors: {error_messages}")

                        # Throttling is reported as a GraphQL error, not a 429
                        if any("throttled" in msg.lower() for msg in error_messages):
                            logger.warning("[SHOPIFY_CLIENT] Throttled, waiting 2s")
                            last_error = ShopifyAPIError("Throttled", errors=errors)
                            await self._sleep(2)
                            continue

                        raise ShopifyAPIError(
                            f"GraphQL errors: {', '.join(error_messages)}",
                            status_code=response.status_code,
                            errors=errors,
                        )

                    return data.get("data") or {}

            except httpx.HTTPStatusError as e:
                last_error = e
                last_status = e.response.status_code
                logger.warning(
                    f"[SHOPIFY_CLIENT] HTTP error {e.response.status_code} (attempt {attempt + 1}/{retries})"
                )
                if attempt < retries - 1:
                    await self._sleep(1 * (attempt + 1))  # Linear backoff

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_CLIENT] Request error: {e} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await self._sleep(1 * (attempt + 1))

        raise ShopifyAPIError(f"Failed after {retries} attempts: {last_error}", status_code=last_status)

    # =========================================================================
    # PAGED ORDER QUERIES
    # =========================================================================

    async def count_orders_since(self, timestamp: str, threshold: int = 100) -> int:
        """Count orders updated after `timestamp`, stopping early at `threshold`.

        WHAT: Pages ids only; returns `threshold` as soon as the running count reaches it
        WHY: The orchestrator only needs to know "more than N or not", so there is
             no point in paging the whole delta

        Returns:
            Exact count when below threshold, otherwise exactly `threshold`
        """
        count = 0
        cursor: Optional[str] = None
        search = updated_since_filter(timestamp)

        while True:
            data = await self.execute(
                ORDER_IDS_PAGE_QUERY,
                {"first": PAGE_SIZE, "after": cursor, "query": search},
            )
            orders = data.get("orders") or {}
            count += len(orders.get("edges") or [])

            if count >= threshold:
                logger.info(f"[SHOPIFY_CLIENT] Order count since {timestamp} reached threshold {threshold}")
                return threshold

            page_info = orders.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")

        logger.info(f"[SHOPIFY_CLIENT] {count} orders updated since {timestamp}")
        return count

    async def fetch_orders_incremental(
        self,
        timestamp: str,
        max_orders: int = MAX_INCREMENTAL_ORDERS,
    ) -> List[Order]:
        """Fetch all orders updated after `timestamp`, newest created first.

        Orders are kept in arrival order. Stops at `max_orders` (truncating the
        result) as a safety cap.
        """
        orders: List[Order] = []
        cursor: Optional[str] = None
        search = updated_since_filter(timestamp)

        while True:
            data = await self.execute(
                ORDERS_PAGE_QUERY,
                {"first": PAGE_SIZE, "after": cursor, "query": search},
            )
            connection = data.get("orders") or {}
            for edge in connection.get("edges") or []:
                orders.append(transform_graphql_order(edge.get("node") or {}))

            if len(orders) >= max_orders:
                logger.warning(
                    f"[SHOPIFY_CLIENT] Incremental fetch hit safety cap of {max_orders} orders, truncating"
                )
                return orders[:max_orders]

            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")

        logger.info(f"[SHOPIFY_CLIENT] Fetched {len(orders)} orders updated since {timestamp}")
        return orders

    async def fetch_order_by_id(self, order_id: str) -> Optional[Order]:
        """Fetch a single order; None when Shopify does not know it."""
        data = await self.execute(ORDER_BY_ID_QUERY, {"id": to_order_gid(order_id)})
        node = data.get("order")
        if not node:
            return None
        return transform_graphql_order(node)

    async def fetch_orders_by_ids(
        self,
        order_ids: List[str],
        concurrency: int = MAX_CONCURRENT_LOOKUPS,
    ) -> List[Order]:
        """Fetch many orders with bounded concurrency.

        Per-id failures are logged and skipped; missing orders are skipped.
        Results keep input order.
        """
        semaphore = asyncio.Semaphore(concurrency)

        async def fetch_one(order_id: str) -> Optional[Order]:
            async with semaphore:
                try:
                    return await self.fetch_order_by_id(order_id)
                except ShopifyAPIError as e:
                    logger.warning(f"[SHOPIFY_CLIENT] Failed to fetch order {order_id}: {e}")
                    return None
                except (ValidationError, ValueError, TypeError) as e:
                    logger.warning(f"[SHOPIFY_CLIENT] Skipping malformed order {order_id}: {e}")
                    return None

        results = await asyncio.gather(*(fetch_one(order_id) for order_id in order_ids))
        return [order for order in results if order is not None]

    # =========================================================================
    # BULK OPERATIONS
    # =========================================================================

    async def start_orders_bulk(self, since: Optional[str] = None) -> str:
        """Start a bulk export of all orders (or those updated after `since`).

        Returns:
            The bulk operation gid; the export itself runs on Shopify's side

        Raises:
            ShopifyAPIError: On userErrors or GraphQL errors
        """
        scope = f'(query: "{updated_since_filter(since)}")' if since else ""
        bulk_query = BULK_ORDERS_QUERY_TEMPLATE % scope

        data = await self.execute(BULK_RUN_MUTATION, {"query": bulk_query})
        result = data.get("bulkOperationRunQuery") or {}

        user_errors = result.get("userErrors") or []
        if user_errors:
            messages = [e.get("message", str(e)) for e in user_errors]
            logger.error(f"[SHOPIFY_CLIENT] Bulk operation userErrors: {messages}")
            raise ShopifyAPIError(f"Bulk operation errors: {', '.join(messages)}", errors=user_errors)

        operation = BulkOperation.from_node(result.get("bulkOperation"))
        if operation is None:
            raise ShopifyAPIError("Bulk operation was not created")

        logger.info(f"[SHOPIFY_CLIENT] Started bulk operation {operation.id} (since={since})")
        return operation.id

    async def get_bulk_operation(self, operation_id: str) -> Optional[BulkOperation]:
        data = await self.execute(BULK_OPERATION_BY_ID_QUERY, {"id": operation_id})
        return BulkOperation.from_node(data.get("node"))

    async def get_current_bulk_operation(self) -> Optional[BulkOperation]:
        """The shop's current (or most recent) query bulk operation, if any."""
        data = await self.execute(CURRENT_BULK_OPERATION_QUERY)
        return BulkOperation.from_node(data.get("currentBulkOperation"))

    async def wait_for_bulk_operation(
        self,
        operation_id: str,
        max_wait_seconds: float = BULK_MAX_WAIT_SECONDS,
        poll_interval_seconds: float = BULK_POLL_INTERVAL_SECONDS,
    ) -> str:
        """Poll a bulk operation until it completes.

        Returns:
            Download URL of the JSONL result

        Raises:
            ShopifyAPIError: Operation failed, was canceled, vanished, or completed without a URL
            BulkOperationTimeoutError: Not finished after `max_wait_seconds`
        """
        started = self._clock()

        while self._clock() - started < max_wait_seconds:
            operation = await self.get_bulk_operation(operation_id)
            if operation is None:
                raise ShopifyAPIError(f"Bulk operation {operation_id} not found")

            if operation.status == "completed":
                if not operation.url:
                    raise ShopifyAPIError("Bulk operation completed but no URL provided")
                return operation.url

            if operation.status == "failed":
                raise ShopifyAPIError(f"Bulk operation failed: {operation.error_code or 'Unknown error'}")

            if operation.status in ("canceled", "canceling", "expired"):
                raise ShopifyAPIError(f"Bulk operation was {operation.status}")

            logger.debug(
                f"[SHOPIFY_CLIENT] Bulk operation {operation_id} is {operation.status}, "
                f"polling again in {poll_interval_seconds}s"
            )
            await self._sleep(poll_interval_seconds)

        raise BulkOperationTimeoutError(
            f"Bulk operation {operation_id} did not finish within {max_wait_seconds}s"
        )

    async def download_bulk_data(self, url: str) -> List[Order]:
        """Stream and parse a bulk operation JSONL result.

        WHAT: Order lines become orders; line-item lines (with `__parentId`) are
              attached to their parent; blank or malformed lines are skipped
        WHY: Bulk files can be large, so the body is read line by line

        Raises:
            ShopifyAPIError: If the download fails or returns non-2xx
        """
        order_records: List[Dict[str, Any]] = []
        children: Dict[str, List[Dict[str, Any]]] = {}
        skipped = 0

        try:
            async with self._http_client(timeout=120.0) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise ShopifyAPIError(
                            f"Failed to download bulk data: HTTP {response.status_code}",
                            status_code=response.status_code,
                        )

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            record = json.loads(line)
                        except json.JSONDecodeError as e:
                            skipped += 1
                            logger.warning(f"[SHOPIFY_CLIENT] Skipping malformed bulk line: {e}")
                            continue
                        if not isinstance(record, dict):
                            skipped += 1
                            continue

                        parent_id = record.get("__parentId")
                        record_id = str(record.get("id") or "")
                        if parent_id:
                            if record.get("__typename") == "LineItem" or record_id.startswith(LINE_ITEM_GID_PREFIX):
                                children.setdefault(parent_id, []).append(record)
                            continue

                        if record.get("__typename") == "Order" or record_id.startswith(ORDER_GID_PREFIX):
                            order_records.append(record)

        except httpx.RequestError as e:
            logger.error(f"[SHOPIFY_CLIENT] Bulk download failed: {e}")
            raise ShopifyAPIError(f"Failed to download bulk data: {e}")

        orders: List[Order] = []
        for record in order_records:
            try:
                orders.append(transform_bulk_order(record, children.get(record.get("id"))))
            except (ValidationError, ValueError, TypeError) as e:
                skipped += 1
                logger.warning(f"[SHOPIFY_CLIENT] Skipping unparsable bulk order {record.get('id')}: {e}")

        logger.info(f"[SHOPIFY_CLIENT] Parsed {len(orders)} orders from bulk data (skipped {skipped} lines)")
        return orders
