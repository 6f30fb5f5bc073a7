"""Order comparison helpers for sync ingestion.

WHAT:
    Field-by-field diff of an incoming order against the stored version, and
    classification of a batch into new / updated / unchanged.

WHY:
    - Sync responses report how many orders actually changed.
    - Monetary strings are compared as Decimals ("10.0" == "10.00").
    - Timestamps are compared as instants, whatever offset they carry.

NOTE:
    Classification is reporting only. Writes are decided by last-write-wins
    in the repository, never by this module.

REFERENCES:
    - ordersync/services/order_repository.py
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from ..schemas import Order
from ..utils.dates import parse_iso


SCALAR_FIELDS: Iterable[str] = (
    "financial_status",
    "fulfillment_status",
    "email",
    "currency",
)

DECIMAL_FIELDS: Iterable[str] = (
    "total_price",
    "subtotal_price",
    "total_tax",
)


def _to_decimal(value) -> Decimal:
    """Safe Decimal conversion (None -> 0)."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _instant(value: Optional[str]):
    """Parsed UTC datetime; unparsable strings compare as themselves."""
    return parse_iso(value) or value


def _dump(model) -> Optional[Dict[str, Any]]:
    if model is None:
        return None
    return model.model_dump(exclude_none=True)


def _line_item_key(item) -> Dict[str, Any]:
    data = item.model_dump(exclude_none=True)
    data["price"] = _to_decimal(data.get("price"))
    return data


@dataclass
class OrderDiff:
    """Result of comparing one incoming order with its stored version."""

    order_id: str
    is_new: bool = False
    changed_fields: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.is_new or bool(self.changed_fields)


@dataclass
class ChangeSummary:
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    diffs: List[OrderDiff] = field(default_factory=list)


def diff_orders(incoming: Order, existing: Optional[Order]) -> OrderDiff:
    """Return which tracked fields differ between `incoming` and `existing`."""
    if existing is None:
        return OrderDiff(order_id=incoming.id, is_new=True)

    changed: List[str] = []

    if _instant(incoming.updated_at) != _instant(existing.updated_at):
        changed.append("updated_at")

    for name in SCALAR_FIELDS:
        if getattr(incoming, name) != getattr(existing, name):
            changed.append(name)

    for name in DECIMAL_FIELDS:
        if _to_decimal(getattr(incoming, name)) != _to_decimal(getattr(existing, name)):
            changed.append(name)

    if _to_decimal(incoming.shipping_amount) != _to_decimal(existing.shipping_amount):
        changed.append("total_shipping_price_set")

    if _dump(incoming.shipping_address) != _dump(existing.shipping_address):
        changed.append("shipping_address")

    incoming_items = [_line_item_key(item) for item in incoming.line_items]
    existing_items = [_line_item_key(item) for item in existing.line_items]
    if incoming_items != existing_items:
        changed.append("line_items")

    if _dump(incoming.customer) != _dump(existing.customer):
        changed.append("customer")

    return OrderDiff(order_id=incoming.id, changed_fields=changed)


def classify_orders(incoming: Iterable[Order], existing_by_id: Dict[str, Order]) -> ChangeSummary:
    """Count new / updated / unchanged orders in a batch."""
    summary = ChangeSummary()
    for order in incoming:
        diff = diff_orders(order, existing_by_id.get(order.id))
        summary.diffs.append(diff)
        if diff.is_new:
            summary.new += 1
        elif diff.changed_fields:
            summary.updated += 1
        else:
            summary.unchanged += 1
    return summary
