"""Transforms from Shopify payload shapes to the normalized `Order` schema.

WHAT:
    Three source shapes end up as the same `schemas.Order`:
    - GraphQL order node (paged list queries and point lookups)
    - Bulk operation JSONL record (flat, line items attached separately)
    - REST webhook payload (snake_case, numeric ids)

WHY:
    Every writer (sync, bulk finalize, webhook) must store identical shapes so
    that change detection and metrics do not depend on where an order came from.

REFERENCES:
    - https://shopify.dev/docs/api/admin-graphql/latest/objects/Order
    - https://shopify.dev/docs/api/usage/bulk-operations/queries#the-jsonl-data-format
    - https://shopify.dev/docs/api/webhooks?reference=toml#list-orders/updated
"""

import re
from typing import Any, Dict, List, Optional

from ..schemas import Order, LineItem, Customer, ShippingAddress, MoneySet, ShopMoney
from ..utils.dates import parse_iso, to_iso, utc_now

GID_PATTERN = re.compile(r"^gid://shopify/[A-Za-z]+/")

ADDRESS_FIELDS = {
    "first_name": "firstName",
    "last_name": "lastName",
    "address1": "address1",
    "address2": "address2",
    "city": "city",
    "province": "province",
    "country": "country",
    "zip": "zip",
}


# =============================================================================
# HELPERS
# =============================================================================

def strip_gid(value: Any) -> str:
    """'gid://shopify/Order/123' -> '123'. Numeric REST ids become strings."""
    if value is None:
        return ""
    return GID_PATTERN.sub("", str(value))


def _opt(value: Any) -> Optional[str]:
    """Empty or missing -> None (omitted on the wire)."""
    if value is None or value == "":
        return None
    return str(value)


def _money(money_set: Optional[Dict[str, Any]], default: str = "0") -> str:
    """Amount out of a GraphQL `*PriceSet { shopMoney { amount } }`."""
    shop_money = (money_set or {}).get("shopMoney") or {}
    return shop_money.get("amount") or default


def parse_order_number(name: Optional[str]) -> int:
    """'#1001' -> 1001, 0 when unparsable."""
    if not name:
        return 0
    match = re.match(r"\s*#?\s*(\d+)", str(name))
    return int(match.group(1)) if match else 0


def _timestamp(value: Any) -> str:
    """Stored timestamps are UTC with a trailing Z so they sort as strings.

    Unparsable values are kept as received; missing ones become now.
    """
    if not value:
        return to_iso(utc_now())
    parsed = parse_iso(value)
    return to_iso(parsed) if parsed else str(value)


def _shipping_set(raw: Optional[Dict[str, Any]]) -> Optional[MoneySet]:
    if not raw:
        return None
    shop_money = raw.get("shopMoney") or {}
    return MoneySet(
        shop_money=ShopMoney(
            amount=shop_money.get("amount") or "0",
            currency_code=shop_money.get("currencyCode") or "USD",
        )
    )


def _graphql_address(raw: Optional[Dict[str, Any]]) -> Optional[ShippingAddress]:
    if not raw:
        return None
    return ShippingAddress(**{field: _opt(raw.get(key)) for field, key in ADDRESS_FIELDS.items()})


def _graphql_customer(raw: Optional[Dict[str, Any]]) -> Optional[Customer]:
    if not raw:
        return None
    return Customer(
        id=strip_gid(raw.get("id")),
        email=_opt(raw.get("email")),
        first_name=_opt(raw.get("firstName")),
        last_name=_opt(raw.get("lastName")),
    )


def graphql_line_item(node: Dict[str, Any]) -> LineItem:
    """Line item node (GraphQL edge node or bulk child record)."""
    variant = node.get("variant") or {}
    return LineItem(
        id=strip_gid(node.get("id")),
        title=node.get("title") or "",
        quantity=node.get("quantity") or 0,
        price=_money(node.get("originalUnitPriceSet")),
        sku=_opt(variant.get("sku")),
    )


# =============================================================================
# GRAPHQL NODE
# =============================================================================

def transform_graphql_order(node: Dict[str, Any]) -> Order:
    """Transform an order node from a paged or point GraphQL query."""
    line_item_edges = (node.get("lineItems") or {}).get("edges") or []

    return Order(
        id=strip_gid(node.get("id")),
        order_number=parse_order_number(node.get("name")),
        email=_opt(node.get("email")),
        created_at=_timestamp(node.get("createdAt")),
        updated_at=_timestamp(node.get("updatedAt")),
        total_price=_money(node.get("totalPriceSet")),
        subtotal_price=_money(node.get("subtotalPriceSet")),
        total_tax=_money(node.get("totalTaxSet")),
        total_shipping_price_set=_shipping_set(node.get("totalShippingPriceSet")),
        shipping_address=_graphql_address(node.get("shippingAddress")),
        line_items=[graphql_line_item(edge.get("node") or {}) for edge in line_item_edges],
        financial_status=_opt(node.get("displayFinancialStatus")),
        fulfillment_status=_opt(node.get("displayFulfillmentStatus")),
        currency=node.get("currencyCode") or "USD",
        customer=_graphql_customer(node.get("customer")),
    )


# =============================================================================
# BULK JSONL RECORD
# =============================================================================

def transform_bulk_order(record: Dict[str, Any], line_items: Optional[List[Dict[str, Any]]] = None) -> Order:
    """Transform a bulk JSONL order record.

    Bulk output is flat: connections are emitted as separate child lines that
    carry `__parentId`. The parser collects those and passes them here.
    """
    children = line_items if line_items is not None else record.get("lineItems") or []
    # Inline lists (older exports) may still be wrapped in edges
    if isinstance(children, dict):
        children = [edge.get("node") or {} for edge in children.get("edges") or []]

    return Order(
        id=strip_gid(record.get("id")),
        order_number=parse_order_number(record.get("name")),
        email=_opt(record.get("email")),
        created_at=_timestamp(record.get("createdAt")),
        updated_at=_timestamp(record.get("updatedAt")),
        total_price=_money(record.get("totalPriceSet")),
        subtotal_price=_money(record.get("subtotalPriceSet")),
        total_tax=_money(record.get("totalTaxSet")),
        total_shipping_price_set=_shipping_set(record.get("totalShippingPriceSet")),
        shipping_address=_graphql_address(record.get("shippingAddress")),
        line_items=[graphql_line_item(child) for child in children],
        financial_status=_opt(record.get("displayFinancialStatus")),
        fulfillment_status=_opt(record.get("displayFulfillmentStatus")),
        currency=record.get("currencyCode") or "USD",
        customer=_graphql_customer(record.get("customer")),
    )


# =============================================================================
# REST WEBHOOK PAYLOAD
# =============================================================================

def transform_webhook_order(payload: Dict[str, Any]) -> Order:
    """Transform an `orders/create` or `orders/updated` REST payload.

    Raises:
        ValueError: If the payload has no order id
    """
    order_id = strip_gid(payload.get("id") or payload.get("admin_graphql_api_id"))
    if not order_id:
        raise ValueError("Webhook payload has no order id")

    shipping_set = payload.get("total_shipping_price_set") or None
    total_shipping = None
    if shipping_set:
        shop_money = shipping_set.get("shop_money") or {}
        total_shipping = MoneySet(
            shop_money=ShopMoney(
                amount=str(shop_money.get("amount") or "0"),
                currency_code=shop_money.get("currency_code") or "USD",
            )
        )

    address = payload.get("shipping_address")
    shipping_address = None
    if address:
        shipping_address = ShippingAddress(**{field: _opt(address.get(field)) for field in ADDRESS_FIELDS})

    customer = payload.get("customer")

    order_number = payload.get("order_number")
    if order_number is None:
        order_number = parse_order_number(payload.get("name"))

    return Order(
        id=order_id,
        order_number=int(order_number or 0),
        email=_opt(payload.get("email")),
        created_at=_timestamp(payload.get("created_at")),
        updated_at=_timestamp(payload.get("updated_at")),
        total_price=str(payload.get("total_price") or "0"),
        subtotal_price=str(payload.get("subtotal_price") or "0"),
        total_tax=str(payload.get("total_tax") or "0"),
        total_shipping_price_set=total_shipping,
        shipping_address=shipping_address,
        line_items=[
            LineItem(
                id=strip_gid(item.get("id")),
                title=item.get("title") or "",
                quantity=item.get("quantity") or 0,
                price=str(item.get("price") or "0"),
                sku=_opt(item.get("sku")),
            )
            for item in payload.get("line_items") or []
        ],
        financial_status=_opt(payload.get("financial_status")),
        fulfillment_status=_opt(payload.get("fulfillment_status")),
        currency=payload.get("currency") or "USD",
        customer=Customer(
            id=strip_gid(customer.get("id")),
            email=_opt(customer.get("email")),
            first_name=_opt(customer.get("first_name")),
            last_name=_opt(customer.get("last_name")),
        ) if customer else None,
    )
