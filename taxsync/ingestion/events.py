"""
Normalized ingestion events.

Raw platform payloads are parsed once, at the boundary, into immutable
events discriminated by ``kind``. Nothing past this module reads raw JSON:
money is already integer minor units and every timestamp is UTC.
"""

import json
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
)

from taxsync.core.clock import ensure_utc, utcnow
from taxsync.core.errors import EventValidationError
from taxsync.ingestion.tax import Address, TaxLineInput


def to_minor_units(value: Any) -> int:
    """
    Convert a decimal money amount ("12.345", 12.3, 7) to integer cents.

    Rounds half up. ``None`` and empty strings count as zero.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError("money amount must be a number or numeric string")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"invalid money amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"invalid money amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_external_id(value: Any) -> str:
    if value is None or isinstance(value, bool) or str(value).strip() == "":
        raise ValueError("id is required")
    return str(value).strip()


Money = Annotated[int, BeforeValidator(to_minor_units)]
ExternalId = Annotated[str, BeforeValidator(_to_external_id)]
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# Raw payload shapes (boundary only)


class _RawModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RawCustomer(_RawModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


class RawPriceSet(_RawModel):
    shop_money: Optional[Dict[str, Any]] = None


class RawTaxLine(_RawModel):
    title: str = ""
    price: Money = 0
    rate: float = 0.0
    price_set: Optional[RawPriceSet] = None


class RawShippingLine(_RawModel):
    price: Money = 0


class RawRefundTransaction(_RawModel):
    amount: Money = 0
    kind: Optional[str] = None
    status: Optional[str] = None
    processed_at: Optional[UtcDatetime] = None


class RawRefundLineItem(_RawModel):
    total_tax: Money = 0
    subtotal: Money = 0


class RawRefund(_RawModel):
    id: ExternalId
    order_id: Optional[ExternalId] = None
    created_at: Optional[UtcDatetime] = None
    processed_at: Optional[UtcDatetime] = None
    note: Optional[str] = None
    transactions: List[RawRefundTransaction] = Field(default_factory=list)
    refund_line_items: List[RawRefundLineItem] = Field(default_factory=list)


class RawOrder(_RawModel):
    id: ExternalId
    name: Optional[str] = None
    order_number: Optional[Union[int, str]] = None
    email: Optional[str] = None
    currency: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    subtotal_price: Money = 0
    total_price: Money = 0
    total_tax: Money = 0
    total_discounts: Money = 0
    shipping_lines: List[RawShippingLine] = Field(default_factory=list)
    tax_lines: List[RawTaxLine] = Field(default_factory=list)
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    customer: Optional[RawCustomer] = None
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None
    cancelled_at: Optional[UtcDatetime] = None
    cancel_reason: Optional[str] = None
    refunds: List[RawRefund] = Field(default_factory=list)


# Normalized events


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class OrderSnapshot(_Frozen):
    """Full state of one remote order at one point in time."""

    external_id: str
    order_number: Optional[str] = None
    currency: str = "USD"
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    subtotal: int = 0
    tax_amount: int = 0
    total_amount: int = 0
    discount_amount: int = 0
    shipping_amount: int = 0
    tax_lines: Tuple[TaxLineInput, ...] = ()
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None


class RefundSnapshot(_Frozen):
    """One refund against an order; amounts are positive minor units."""

    refund_id: str
    order_external_id: str
    amount: int
    tax_amount: int = 0
    created_at: datetime
    note: Optional[str] = None

    @property
    def external_id(self) -> str:
        return f"refund-{self.refund_id}"


class OrderCreatedEvent(_Frozen):
    kind: Literal["create"] = "create"
    shop_domain: str
    order: OrderSnapshot

    @property
    def source_timestamp(self) -> datetime:
        return self.order.updated_at


class OrderUpdatedEvent(_Frozen):
    kind: Literal["update"] = "update"
    shop_domain: str
    order: OrderSnapshot

    @property
    def source_timestamp(self) -> datetime:
        return self.order.updated_at


class OrderCancelledEvent(_Frozen):
    kind: Literal["cancel"] = "cancel"
    shop_domain: str
    order: OrderSnapshot
    cancelled_at: datetime
    cancel_reason: Optional[str] = None

    @property
    def source_timestamp(self) -> datetime:
        return max(self.order.updated_at, self.cancelled_at)


class RefundCreatedEvent(_Frozen):
    """
    One or more refunds for a single order.

    ``order`` is present when the platform delivered the whole order
    (with its ``refunds`` list) instead of a bare refund object.
    """

    kind: Literal["refund"] = "refund"
    shop_domain: str
    order_external_id: str
    refunds: Tuple[RefundSnapshot, ...]
    currency: Optional[str] = None
    order: Optional[OrderSnapshot] = None

    @property
    def source_timestamp(self) -> datetime:
        return max(refund.created_at for refund in self.refunds)


class AppUninstalledEvent(_Frozen):
    kind: Literal["uninstall"] = "uninstall"
    shop_domain: str
    received_at: datetime


NormalizedEvent = Annotated[
    Union[
        OrderCreatedEvent,
        OrderUpdatedEvent,
        OrderCancelledEvent,
        RefundCreatedEvent,
        AppUninstalledEvent,
    ],
    Field(discriminator="kind"),
]

LedgerEvent = Union[
    OrderCreatedEvent, OrderUpdatedEvent, OrderCancelledEvent, RefundCreatedEvent
]


# Validators, one per kind


def snapshot_from_raw(order: RawOrder) -> OrderSnapshot:
    """Flatten a parsed platform order into an OrderSnapshot."""
    customer_name = None
    customer_email = order.email
    if order.customer:
        full_name = f"{order.customer.first_name or ''} {order.customer.last_name or ''}"
        customer_name = full_name.strip() or None
        customer_email = order.customer.email or customer_email

    currency = (order.currency or "USD").upper()
    tax_lines = tuple(
        TaxLineInput(
            title=line.title,
            amount=line.price,
            rate=line.rate,
            currency=(
                (line.price_set.shop_money or {}).get("currency_code")
                if line.price_set
                else None
            )
            or currency,
        )
        for line in order.tax_lines
    )

    order_number = order.order_number if order.order_number is not None else order.name
    return OrderSnapshot(
        external_id=order.id,
        order_number=str(order_number) if order_number is not None else None,
        currency=currency,
        financial_status=order.financial_status,
        fulfillment_status=order.fulfillment_status,
        subtotal=order.subtotal_price,
        tax_amount=order.total_tax,
        total_amount=order.total_price,
        discount_amount=order.total_discounts,
        shipping_amount=sum(line.price for line in order.shipping_lines),
        tax_lines=tax_lines,
        billing_address=order.billing_address,
        shipping_address=order.shipping_address,
        customer_name=customer_name,
        customer_email=customer_email,
        created_at=order.created_at,
        updated_at=order.updated_at or order.created_at,
        cancelled_at=order.cancelled_at,
    )


def _refund_from_raw(
    refund: RawRefund, order_external_id: str, order_updated_at: Optional[datetime] = None
) -> RefundSnapshot:
    refund_transactions = [
        t
        for t in refund.transactions
        if t.kind in (None, "refund") and t.status in (None, "success")
    ]
    return RefundSnapshot(
        refund_id=refund.id,
        order_external_id=order_external_id,
        amount=sum(t.amount for t in refund_transactions),
        tax_amount=sum(item.total_tax for item in refund.refund_line_items),
        created_at=_refund_timestamp(refund, order_updated_at),
        note=refund.note,
    )


def _refund_timestamp(refund: RawRefund, order_updated_at: Optional[datetime]) -> datetime:
    """
    When the refund happened, taken from the payload only.

    Redeliveries of one refund must carry the same timestamp, so a refund
    with no timestamp of its own borrows its transactions' or its order's.
    """
    processed = [t.processed_at for t in refund.transactions if t.processed_at]
    stamp = refund.created_at or refund.processed_at or (max(processed) if processed else None)
    stamp = stamp or order_updated_at
    if stamp is None:
        raise EventValidationError(f"Refund {refund.id} has no timestamp")
    return stamp


def _validate_create(payload: Dict[str, Any], shop_domain: str) -> OrderCreatedEvent:
    order = snapshot_from_raw(RawOrder.model_validate(payload))
    return OrderCreatedEvent(shop_domain=shop_domain, order=order)


def _validate_update(payload: Dict[str, Any], shop_domain: str) -> OrderUpdatedEvent:
    order = snapshot_from_raw(RawOrder.model_validate(payload))
    return OrderUpdatedEvent(shop_domain=shop_domain, order=order)


def _validate_cancel(payload: Dict[str, Any], shop_domain: str) -> OrderCancelledEvent:
    raw = RawOrder.model_validate(payload)
    order = snapshot_from_raw(raw)
    return OrderCancelledEvent(
        shop_domain=shop_domain,
        order=order,
        cancelled_at=raw.cancelled_at or order.updated_at,
        cancel_reason=raw.cancel_reason,
    )


def _validate_refund(payload: Dict[str, Any], shop_domain: str) -> RefundCreatedEvent:
    if "refunds" in payload and "order_id" not in payload:
        raw_order = RawOrder.model_validate(payload)
        order = snapshot_from_raw(raw_order)
        refunds = tuple(_refund_from_raw(r, order.external_id, order.updated_at) for r in raw_order.refunds)
        if not refunds:
            raise EventValidationError("Refund payload for order has no refunds")
        return RefundCreatedEvent(
            shop_domain=shop_domain,
            order_external_id=order.external_id,
            refunds=refunds,
            currency=order.currency,
            order=order,
        )

    raw_refund = RawRefund.model_validate(payload)
    if raw_refund.order_id is None:
        raise EventValidationError("Refund payload is missing order_id")
    return RefundCreatedEvent(
        shop_domain=shop_domain,
        order_external_id=raw_refund.order_id,
        refunds=(_refund_from_raw(raw_refund, raw_refund.order_id),),
    )


def _validate_uninstall(payload: Dict[str, Any], shop_domain: str) -> AppUninstalledEvent:
    return AppUninstalledEvent(shop_domain=shop_domain, received_at=utcnow())


_VALIDATORS: Dict[str, Callable[[Dict[str, Any], str], Any]] = {
    "orders/create": _validate_create,
    "orders/updated": _validate_update,
    "orders/cancelled": _validate_cancel,
    "refunds/create": _validate_refund,
    "app/uninstalled": _validate_uninstall,
}

SUPPORTED_TOPICS = tuple(_VALIDATORS)


def is_supported_topic(topic: str) -> bool:
    return topic in _VALIDATORS


def normalize_event(
    topic: str, payload: Union[bytes, str, Dict[str, Any]], shop_domain: str
) -> Optional[NormalizedEvent]:
    """
    Turn a raw webhook payload into a normalized event.

    Args:
        topic: Platform topic header (e.g. "orders/create")
        payload: Raw JSON body or an already-decoded object
        shop_domain: Shop the event belongs to

    Returns:
        The event, or None for topics this engine does not handle

    Raises:
        EventValidationError: Body is not JSON or fails validation
    """
    validator = _VALIDATORS.get(topic)
    if validator is None:
        return None

    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise EventValidationError(f"Malformed JSON payload for {topic}: {e}") from e

    if not isinstance(payload, dict):
        raise EventValidationError(f"Payload for {topic} must be a JSON object")

    try:
        return validator(payload, shop_domain)
    except ValidationError as e:
        raise EventValidationError(
            f"Invalid {topic} payload: {e.error_count()} validation error(s): "
            + "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()[:5]
            )
        ) from e


def order_event_from_backfill(order: Dict[str, Any], shop_domain: str) -> OrderCreatedEvent:
    """Normalize one order returned by the orders API during a backfill."""
    event = normalize_event("orders/create", order, shop_domain)
    if not isinstance(event, OrderCreatedEvent):
        raise EventValidationError(f"Order {order.get('id')} did not normalize to a create")
    return event
