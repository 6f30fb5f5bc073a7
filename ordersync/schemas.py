"""Pydantic schemas for the normalized order shape and request/response payloads.

The `Order` schema is the one shape every source (paged GraphQL, bulk JSONL,
REST webhook) is transformed into, and the shape the read API returns. Wire
names of the sync bookkeeping and pagination fields are camelCase; the order
body keeps Shopify's snake_case names.
"""

from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field

from .models import SyncStatusEnum, BulkStatusEnum


# =============================================================================
# NORMALIZED ORDER
# =============================================================================

class ShopMoney(BaseModel):
    amount: str = "0"
    currency_code: str = "USD"


class MoneySet(BaseModel):
    shop_money: Optional[ShopMoney] = None


class ShippingAddress(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None


class LineItem(BaseModel):
    id: str
    title: str = ""
    quantity: int = 0
    price: str = "0"  # Unit price, decimal string
    sku: Optional[str] = None


class Customer(BaseModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class Order(BaseModel):
    """Normalized Shopify order.

    Monetary values are decimal strings. Optional values are None internally
    and omitted on the wire (see `OrderRepository.serialize`).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    order_number: int = 0
    email: Optional[str] = None
    created_at: str
    updated_at: str
    total_price: str = "0"
    subtotal_price: str = "0"
    total_tax: str = "0"
    total_shipping_price_set: Optional[MoneySet] = None
    shipping_address: Optional[ShippingAddress] = None
    line_items: List[LineItem] = Field(default_factory=list)
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    currency: str = "USD"
    customer: Optional[Customer] = None

    # Sync bookkeeping
    sync_status: Optional[SyncStatusEnum] = Field(default=None, alias="syncStatus")
    sync_error: Optional[str] = Field(default=None, alias="syncError")
    synced_at: Optional[str] = Field(default=None, alias="syncedAt")

    @property
    def shipping_amount(self) -> str:
        """Shipping amount as a decimal string ("0" when absent)."""
        price_set = self.total_shipping_price_set
        if price_set is None or price_set.shop_money is None:
            return "0"
        return price_set.shop_money.amount or "0"


# =============================================================================
# REQUEST PAYLOADS
# =============================================================================

class SyncRequest(BaseModel):
    """Body of `POST /orders`."""

    sync: bool = Field(default=False, description="Must be true to start a sync")


# =============================================================================
# RESPONSES
# =============================================================================

class Pagination(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: int
    limit: int
    total: int
    total_pages: int = Field(alias="totalPages")


class OrdersPageResponse(BaseModel):
    orders: List[dict]
    pagination: Pagination


class OrderResponse(BaseModel):
    order: dict


class OrderRefreshResponse(BaseModel):
    success: bool
    order: dict


class BulkStatusResponse(BaseModel):
    """Polling response for bulk progress."""

    model_config = ConfigDict(populate_by_name=True)

    status: BulkStatusEnum
    operation_id: Optional[str] = Field(default=None, alias="operationId")
    synced: Optional[int] = None
    error: Optional[str] = None


class SyncResponse(BaseModel):
    """`POST /orders` result: 202 for bulk, 200 for incremental."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    method: str = Field(description="bulk or incremental")
    status: Optional[str] = None
    operation_id: Optional[str] = Field(default=None, alias="operationId")
    synced: Optional[int] = None
    new: Optional[int] = None
    updated: Optional[int] = None
    is_first_sync: bool = Field(default=False, alias="isFirstSync")


class DailyMetric(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date: str
    order_count: int = Field(alias="orderCount")
    revenue: float
    shipping_cost: float = Field(alias="shippingCost")


class MetricsSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_orders: int = Field(alias="totalOrders")
    total_revenue: float = Field(alias="totalRevenue")
    total_shipping: float = Field(alias="totalShipping")
    average_order_value: float = Field(alias="averageOrderValue")


class MetricsResponse(BaseModel):
    metrics: List[DailyMetric]
    summary: MetricsSummary


class WebhookAckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    order_id: str = Field(alias="orderId")
    applied: bool = Field(description="False when a newer version was already stored")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
