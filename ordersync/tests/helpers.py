"""Builders and fakes shared by the test modules."""

from typing import Dict, List, Optional

from ordersync.schemas import LineItem, MoneySet, Order, ShopMoney
from ordersync.services.shopify_client import BulkOperation, ShopifyAPIError

BULK_OPERATION_ID = "gid://shopify/BulkOperation/42"
BULK_URL = "https://storage.example.com/bulk/42.jsonl"


def make_order(
    order_id: str = "1001",
    updated_at: str = "2024-01-01T10:00:00Z",
    created_at: str = "2024-01-01T09:00:00Z",
    total_price: str = "10.00",
    shipping: Optional[str] = None,
    fulfillment_status: Optional[str] = None,
    **overrides,
) -> Order:
    data = dict(
        id=order_id,
        order_number=int(order_id) if order_id.isdigit() else 0,
        email=f"buyer-{order_id}@example.com",
        created_at=created_at,
        updated_at=updated_at,
        total_price=total_price,
        subtotal_price=total_price,
        total_tax="0",
        fulfillment_status=fulfillment_status,
        line_items=[LineItem(id=f"{order_id}-1", title="Mug", quantity=1, price=total_price, sku="MUG-1")],
        currency="USD",
    )
    if shipping is not None:
        data["total_shipping_price_set"] = MoneySet(shop_money=ShopMoney(amount=shipping, currency_code="USD"))
    data.update(overrides)
    return Order(**data)


def graphql_order_node(order_id: str = "1001", **overrides) -> dict:
    node = {
        "id": f"gid://shopify/Order/{order_id}",
        "name": f"#{order_id}",
        "email": "buyer@example.com",
        "createdAt": "2024-01-01T09:00:00Z",
        "updatedAt": "2024-01-01T10:00:00Z",
        "totalPriceSet": {"shopMoney": {"amount": "25.00", "currencyCode": "EUR"}},
        "subtotalPriceSet": {"shopMoney": {"amount": "20.00"}},
        "totalTaxSet": {"shopMoney": {"amount": "0.00"}},
        "totalShippingPriceSet": {"shopMoney": {"amount": "5.00", "currencyCode": "EUR"}},
        "shippingAddress": {
            "firstName": "Ada",
            "lastName": "Lovelace",
            "address1": "1 Main St",
            "address2": "",
            "city": "London",
            "province": None,
            "country": "United Kingdom",
            "zip": "N1",
        },
        "lineItems": {
            "edges": [
                {
                    "node": {
                        "id": "gid://shopify/LineItem/555",
                        "title": "Mug",
                        "quantity": 2,
                        "originalUnitPriceSet": {"shopMoney": {"amount": "10.00"}},
                        "variant": {"sku": "MUG-1"},
                    }
                }
            ]
        },
        "displayFinancialStatus": "PAID",
        "displayFulfillmentStatus": "UNFULFILLED",
        "currencyCode": "EUR",
        "customer": {
            "id": "gid://shopify/Customer/77",
            "email": "buyer@example.com",
            "firstName": "Ada",
            "lastName": None,
        },
    }
    node.update(overrides)
    return node


class FakeShopifyClient:
    """In-memory stand-in for ShopifyClient; records every call."""

    def __init__(self):
        self.current_operation: Optional[BulkOperation] = None
        self.change_count = 0
        self.incremental_orders: List[Order] = []
        self.orders_by_id: Dict[str, Order] = {}
        self.bulk_orders: List[Order] = []
        self.bulk_operation_id = BULK_OPERATION_ID
        self.wait_url = BULK_URL
        self.wait_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.fetch_by_ids_error: Optional[Exception] = None
        self.download_error: Optional[Exception] = None

        self.started_bulk: List[Optional[str]] = []
        self.count_calls: List[tuple] = []
        self.fetched_ids: List[List[str]] = []
        self.downloaded: List[str] = []

    async def get_current_bulk_operation(self):
        return self.current_operation

    async def count_orders_since(self, timestamp, threshold=100):
        self.count_calls.append((timestamp, threshold))
        return min(self.change_count, threshold)

    async def fetch_orders_incremental(self, timestamp):
        return list(self.incremental_orders)

    async def fetch_orders_by_ids(self, order_ids):
        self.fetched_ids.append(list(order_ids))
        if self.fetch_by_ids_error:
            raise self.fetch_by_ids_error
        return [self.orders_by_id[i] for i in order_ids if i in self.orders_by_id]

    async def fetch_order_by_id(self, order_id):
        if self.fetch_error:
            raise self.fetch_error
        return self.orders_by_id.get(order_id)

    async def start_orders_bulk(self, since=None):
        self.started_bulk.append(since)
        self.current_operation = BulkOperation(id=self.bulk_operation_id, status="created")
        return self.bulk_operation_id

    async def wait_for_bulk_operation(self, operation_id, max_wait_seconds=7200, poll_interval_seconds=60):
        if self.wait_error:
            raise self.wait_error
        return self.wait_url

    async def download_bulk_data(self, url):
        self.downloaded.append(url)
        if self.download_error:
            raise self.download_error
        return list(self.bulk_orders)


class FakeTaskQueue:
    """Records submissions instead of running them."""

    def __init__(self):
        self.submitted: List[tuple] = []
        self.submit_error: Optional[Exception] = None

    async def submit(self, function_name, *args, job_id=None):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((function_name, args, job_id))
        return job_id

    async def close(self):
        return None


def upstream_error(message: str = "boom") -> ShopifyAPIError:
    return ShopifyAPIError(message, status_code=500)
