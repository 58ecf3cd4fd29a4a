"""
Sample platform payloads for tests.

Builders return plain dicts shaped like the platform's webhook and orders
API JSON, so tests exercise the same parsing path as production.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

SHOP = "acme-store.myshopify.com"

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def ts(minutes: int = 0) -> str:
    """ISO timestamp ``minutes`` after BASE_TIME, in the platform's offset format."""
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat()


def make_order(
    order_id: int = 1001,
    total: str = "100.00",
    subtotal: Optional[str] = None,
    tax: str = "0.00",
    financial_status: str = "paid",
    created_minutes: int = 0,
    updated_minutes: Optional[int] = None,
    currency: str = "USD",
    tax_lines: Optional[List[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    order: Dict[str, Any] = {
        "id": order_id,
        "name": f"#{order_id}",
        "order_number": order_id,
        "email": "buyer@example.com",
        "currency": currency,
        "financial_status": financial_status,
        "fulfillment_status": None,
        "subtotal_price": subtotal if subtotal is not None else total,
        "total_price": total,
        "total_tax": tax,
        "total_discounts": "0.00",
        "shipping_lines": [],
        "tax_lines": tax_lines or [],
        "billing_address": {
            "country_code": "CA",
            "province_code": "ON",
            "city": "Toronto",
            "zip": "M5V 2T6",
        },
        "customer": {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"},
        "created_at": ts(created_minutes),
        "updated_at": ts(created_minutes if updated_minutes is None else updated_minutes),
    }
    order.update(extra)
    return order


def make_ontario_order(order_id: int = 2001, **kwargs: Any) -> Dict[str, Any]:
    """$100.00 + 13% HST, paid."""
    return make_order(
        order_id=order_id,
        subtotal="100.00",
        total="113.00",
        tax="13.00",
        tax_lines=[{"title": "HST", "price": "13.00", "rate": 0.13}],
        **kwargs,
    )


def make_refund(
    refund_id: int,
    order_id: int,
    amount: str,
    created_minutes: int = 60,
    tax: str = "0.00",
) -> Dict[str, Any]:
    return {
        "id": refund_id,
        "order_id": order_id,
        "created_at": ts(created_minutes),
        "note": "Customer return",
        "transactions": [{"amount": amount, "kind": "refund", "status": "success"}],
        "refund_line_items": [{"total_tax": tax, "subtotal": amount}],
    }


def make_orders(count: int, start_id: int = 5000) -> List[Dict[str, Any]]:
    """``count`` paid orders, one minute apart, ids ascending."""
    return [
        make_order(order_id=start_id + i, total="10.00", created_minutes=i)
        for i in range(count)
    ]


def to_body(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")
