"""
Idempotent ledger writes for normalized order events.

Every event is applied with a single timestamp-gated statement, so
duplicate and out-of-order deliveries converge on the newest remote state:

- create/update: upsert, discarded when the stored row is strictly newer
- cancel: full snapshot insert if absent, otherwise a status-only update
- refund: one negated ``refund-<id>`` row per refund, written while the
  original order row is locked; the order flips to REFUNDED only when its
  refunds sum exactly to its total
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    assert_never,
)

import structlog

from taxsync.core.clock import ensure_utc
from taxsync.db.models import (
    Integration,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from taxsync.db.unit_of_work import UnitOfWork
from taxsync.ingestion.events import (
    LedgerEvent,
    OrderCancelledEvent,
    OrderCreatedEvent,
    OrderSnapshot,
    OrderUpdatedEvent,
    RefundCreatedEvent,
    RefundSnapshot,
)
from taxsync.ingestion.tax import CategoryTaxCalculator, TaxCalculator, TaxLineInput

logger = structlog.get_logger()

_STATUS_BY_FINANCIAL_STATUS = {
    "refunded": TransactionStatus.REFUNDED,
    "partially_refunded": TransactionStatus.REFUNDED,
    "voided": TransactionStatus.CANCELLED,
    "paid": TransactionStatus.COMPLETED,
    "pending": TransactionStatus.PENDING,
}


def derive_status(financial_status: Optional[str]) -> TransactionStatus:
    """Map the platform's financial status onto a ledger status."""
    return _STATUS_BY_FINANCIAL_STATUS.get(
        (financial_status or "").lower(), TransactionStatus.PENDING
    )


class UpsertOutcome(str, Enum):
    """What a single write did to the ledger."""

    CREATED = "created"
    UPDATED = "updated"
    STALE = "stale"  # Stored row was newer; event discarded
    SKIPPED = "skipped"  # Row already existed (insert-if-absent)


@dataclass
class UpsertResult:
    """Result of applying one event."""

    record: Optional[TransactionRecord]
    outcome: UpsertOutcome
    refunds: List[TransactionRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "external_id": self.record.external_id if self.record else None,
            "status": self.record.status if self.record else None,
            "refund_ids": [r.external_id for r in self.refunds],
        }


@dataclass
class BatchResult:
    """Per-item counts for a batch; failures never abort siblings."""

    created: int = 0
    updated: int = 0
    stale: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.stale + self.skipped + self.failed

    def add(self, outcome: UpsertOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def add_failure(self, label: str, error: BaseException) -> None:
        self.failed += 1
        self.errors.append(f"{label}: {error}")


class TransactionUpserter:
    """
    Applies normalized ledger events to the transactions table.

    Works inside the caller's UnitOfWork and never commits; the caller
    decides the transaction boundary (one webhook, one backfill batch).
    """

    def __init__(self, uow: UnitOfWork, tax_calculator: Optional[TaxCalculator] = None):
        self.uow = uow
        self.tax_calculator = tax_calculator or CategoryTaxCalculator()

    async def upsert(
        self, integration: Integration, event: LedgerEvent, source: str = "webhook"
    ) -> UpsertResult:
        """
        Apply one ledger event idempotently.

        Args:
            integration: Integration the event belongs to
            event: Normalized create, update, cancel or refund event
            source: Provenance stored on the row ("webhook" or "backfill")
        """
        match event:
            case OrderCreatedEvent() | OrderUpdatedEvent():
                return await self._upsert_order(integration, event.order, source)
            case OrderCancelledEvent():
                return await self._apply_cancel(integration, event, source)
            case RefundCreatedEvent():
                return await self._apply_refunds(integration, event, source)
            case _:
                assert_never(event)

    async def insert_if_absent(
        self, integration: Integration, event: OrderCreatedEvent, source: str = "backfill"
    ) -> UpsertResult:
        """
        Insert an order only if its key is not in the ledger yet.

        Used by backfills: an existing row (from a webhook or an earlier
        run) is left alone and reported as SKIPPED.
        """
        order = event.order
        values = self._order_values(
            integration, order, derive_status(order.financial_status), source
        )
        record = await self.uow.transactions.insert_if_absent(values)
        if record is None:
            return UpsertResult(record=None, outcome=UpsertOutcome.SKIPPED)

        await self._reconcile_refund_status(integration, order.external_id)
        return UpsertResult(record=record, outcome=UpsertOutcome.CREATED)

    async def upsert_many(
        self,
        integration: Integration,
        events: Iterable[LedgerEvent],
        source: str = "webhook",
    ) -> BatchResult:
        """
        Apply events one by one, each inside its own savepoint.

        A failing event is logged and counted; its siblings still apply.
        """

        async def apply(event: LedgerEvent) -> UpsertResult:
            return await self.upsert(integration, event, source=source)

        return await self._apply_each(integration, events, apply)

    async def insert_many_if_absent(
        self,
        integration: Integration,
        events: Iterable[OrderCreatedEvent],
        source: str = "backfill",
        result: Optional[BatchResult] = None,
    ) -> BatchResult:
        """
        Batch form of ``insert_if_absent`` with the same per-item isolation
        as ``upsert_many``. Counts are added to ``result`` when given.
        """

        async def apply(event: OrderCreatedEvent) -> UpsertResult:
            return await self.insert_if_absent(integration, event, source=source)

        return await self._apply_each(integration, events, apply, result)

    async def _apply_each(
        self,
        integration: Integration,
        events: Iterable[LedgerEvent],
        apply: Callable[[Any], Awaitable[UpsertResult]],
        result: Optional[BatchResult] = None,
    ) -> BatchResult:
        result = result if result is not None else BatchResult()
        for event in events:
            label = _event_label(event)
            try:
                async with self.uow.session.begin_nested():
                    applied = await apply(event)
            except Exception as e:
                logger.warning(
                    "upsert.item_failed",
                    integration_id=integration.id,
                    event=label,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.add_failure(label, e)
            else:
                result.add(applied.outcome)
        return result

    # Orders

    def _tax_breakdown(
        self, tax_lines: Sequence[TaxLineInput], order: OrderSnapshot, reported: int, currency: str
    ) -> Dict[str, Any]:
        breakdown = self.tax_calculator.calculate(
            tax_lines,
            order.billing_address,
            order.shipping_address,
            reported_total=reported,
            currency=currency,
        )
        return breakdown.model_dump(mode="json")

    def _order_values(
        self,
        integration: Integration,
        order: OrderSnapshot,
        status: TransactionStatus,
        source: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        breakdown = self._tax_breakdown(
            order.tax_lines, order, order.tax_amount, order.currency
        )
        jurisdiction = breakdown["jurisdiction"]
        return {
            "organization_id": integration.organization_id,
            "integration_id": integration.id,
            "external_id": order.external_id,
            "order_number": order.order_number,
            "type": TransactionType.SALE.value,
            "status": status.value,
            "currency": order.currency,
            "subtotal": order.subtotal,
            "tax_amount": order.tax_amount,
            "total_amount": order.total_amount,
            "discount_amount": order.discount_amount,
            "shipping_amount": order.shipping_amount,
            "tax_breakdown": breakdown,
            "tax_country": jurisdiction["country"],
            "tax_province": jurisdiction["province"],
            "tax_city": jurisdiction["city"],
            "tax_postal_code": jurisdiction["postal_code"],
            "customer_name": order.customer_name,
            "customer_email": order.customer_email,
            "transaction_date": order.created_at,
            "last_modified": order.updated_at,
            "parent_external_id": None,
            "source": source,
            "notes": notes,
            "extra_metadata": {
                "platform": integration.platform,
                "financial_status": order.financial_status,
                "fulfillment_status": order.fulfillment_status,
            },
        }

    async def _upsert_order(
        self,
        integration: Integration,
        order: OrderSnapshot,
        source: str,
        status: Optional[TransactionStatus] = None,
    ) -> UpsertResult:
        values = self._order_values(
            integration, order, status or derive_status(order.financial_status), source
        )
        record, created = await self.uow.transactions.upsert_if_newer(values)

        if record is None:
            stored = await self.uow.transactions.get_by_key(
                integration.organization_id, integration.id, order.external_id
            )
            logger.info(
                "upsert.stale_discarded",
                integration_id=integration.id,
                external_id=order.external_id,
                incoming=order.updated_at.isoformat(),
                stored=(
                    ensure_utc(stored.last_modified).isoformat() if stored else None
                ),
            )
            return UpsertResult(record=stored, outcome=UpsertOutcome.STALE)

        if await self._reconcile_refund_status(integration, order.external_id):
            record = await self._reload(integration, order.external_id)

        outcome = UpsertOutcome.CREATED if created else UpsertOutcome.UPDATED
        logger.debug(
            "upsert.order_applied",
            integration_id=integration.id,
            external_id=order.external_id,
            outcome=outcome.value,
            status=record.status if record else None,
        )
        return UpsertResult(record=record, outcome=outcome)

    async def _apply_cancel(
        self, integration: Integration, event: OrderCancelledEvent, source: str
    ) -> UpsertResult:
        notes = f"Cancelled: {event.cancel_reason}" if event.cancel_reason else "Cancelled"
        values = self._order_values(
            integration, event.order, TransactionStatus.CANCELLED, source, notes=notes
        )
        values["last_modified"] = event.source_timestamp

        inserted = await self.uow.transactions.insert_if_absent(values)
        if inserted is not None:
            await self._reconcile_refund_status(integration, event.order.external_id)
            return UpsertResult(
                record=await self._reload(integration, event.order.external_id),
                outcome=UpsertOutcome.CREATED,
            )

        record = await self.uow.transactions.update_status_if_newer(
            integration.organization_id,
            integration.id,
            event.order.external_id,
            status=TransactionStatus.CANCELLED.value,
            last_modified=event.source_timestamp,
            notes=notes,
        )
        if record is None:
            stored = await self._reload(integration, event.order.external_id)
            logger.info(
                "upsert.stale_cancel_discarded",
                integration_id=integration.id,
                external_id=event.order.external_id,
            )
            return UpsertResult(record=stored, outcome=UpsertOutcome.STALE)

        # A cancelled order can still be refunded in full later on.
        if await self._reconcile_refund_status(integration, event.order.external_id):
            record = await self._reload(integration, event.order.external_id)
        return UpsertResult(record=record, outcome=UpsertOutcome.UPDATED)

    # Refunds

    async def _apply_refunds(
        self, integration: Integration, event: RefundCreatedEvent, source: str
    ) -> UpsertResult:
        if event.order is not None:
            await self._upsert_order(
                integration, event.order, source, status=_status_before_refunds(event.order)
            )

        # Locked until commit; concurrent refunds of one order queue here.
        original = await self.uow.transactions.get_by_key(
            integration.organization_id,
            integration.id,
            event.order_external_id,
            for_update=True,
        )

        if original is None:
            logger.warning(
                "upsert.refund_before_order",
                integration_id=integration.id,
                order_external_id=event.order_external_id,
            )

        refund_rows: List[TransactionRecord] = []
        outcome = UpsertOutcome.STALE
        for refund in event.refunds:
            values = self._refund_values(integration, refund, original, event, source)
            record, created = await self.uow.transactions.upsert_if_newer(values)
            if record is None:
                continue
            refund_rows.append(record)
            if created:
                outcome = UpsertOutcome.CREATED
            elif outcome is UpsertOutcome.STALE:
                outcome = UpsertOutcome.UPDATED

        if await self._reconcile_refund_status(integration, event.order_external_id):
            logger.info(
                "upsert.order_fully_refunded",
                integration_id=integration.id,
                external_id=event.order_external_id,
            )
        original = await self._reload(integration, event.order_external_id)
        return UpsertResult(record=original, outcome=outcome, refunds=refund_rows)

    def _refund_values(
        self,
        integration: Integration,
        refund: RefundSnapshot,
        original: Optional[TransactionRecord],
        event: RefundCreatedEvent,
        source: str,
    ) -> Dict[str, Any]:
        original_total = original.total_amount if original else None
        refund_type = (
            TransactionType.REFUND
            if original_total is not None and refund.amount == original_total
            else TransactionType.PARTIAL_REFUND
        )
        currency = (original.currency if original else None) or event.currency or "USD"

        breakdown = self.tax_calculator.calculate(
            _refund_tax_lines(original, refund.tax_amount),
            event.order.billing_address if event.order else None,
            event.order.shipping_address if event.order else None,
            reported_total=-refund.tax_amount,
            currency=currency,
        ).model_dump(mode="json")

        return {
            "organization_id": integration.organization_id,
            "integration_id": integration.id,
            "external_id": refund.external_id,
            "order_number": original.order_number if original else None,
            "type": refund_type.value,
            "status": TransactionStatus.COMPLETED.value,
            "currency": currency,
            "subtotal": -(refund.amount - refund.tax_amount),
            "tax_amount": -refund.tax_amount,
            "total_amount": -refund.amount,
            "discount_amount": 0,
            "shipping_amount": 0,
            "tax_breakdown": breakdown,
            "tax_country": original.tax_country if original else breakdown["jurisdiction"]["country"],
            "tax_province": original.tax_province if original else breakdown["jurisdiction"]["province"],
            "tax_city": original.tax_city if original else breakdown["jurisdiction"]["city"],
            "tax_postal_code": (
                original.tax_postal_code if original else breakdown["jurisdiction"]["postal_code"]
            ),
            "customer_name": original.customer_name if original else None,
            "customer_email": original.customer_email if original else None,
            "transaction_date": refund.created_at,
            "last_modified": refund.created_at,
            "parent_external_id": refund.order_external_id,
            "source": source,
            "notes": refund.note,
            "extra_metadata": {
                "platform": integration.platform,
                "refund_id": refund.refund_id,
                "original_external_id": refund.order_external_id,
                "original_transaction_id": original.id if original else None,
            },
        }

    async def _reconcile_refund_status(
        self, integration: Integration, external_id: str
    ) -> bool:
        """Flip the order to REFUNDED if its refunds now cover its total exactly."""
        refunds = await self.uow.transactions.get_refunds(
            integration.organization_id, integration.id, external_id
        )
        if not refunds:
            return False

        refunded_total = -sum(r.total_amount for r in refunds)
        refunded_at = max(ensure_utc(r.transaction_date) for r in refunds)
        return await self.uow.transactions.mark_fully_refunded(
            integration.organization_id,
            integration.id,
            external_id,
            refunded_total=refunded_total,
            refunded_at=refunded_at,
        )

    async def _reload(
        self, integration: Integration, external_id: str
    ) -> Optional[TransactionRecord]:
        return await self.uow.transactions.get_by_key(
            integration.organization_id, integration.id, external_id
        )


def _status_before_refunds(order: OrderSnapshot) -> TransactionStatus:
    """
    Ledger status for an order snapshot carried by a refund event.

    The refund flip is decided from the stored refund rows alone, so a
    refunded financial status falls back to what the order was before.
    """
    status = derive_status(order.financial_status)
    if status is TransactionStatus.REFUNDED:
        return (
            TransactionStatus.CANCELLED if order.cancelled_at else TransactionStatus.COMPLETED
        )
    return status


def _refund_tax_lines(
    original: Optional[TransactionRecord], tax_amount: int
) -> List[TaxLineInput]:
    """
    Spread refunded tax over the original order's tax lines.

    Allocation is proportional to each line's share; the last line takes the
    rounding remainder so the lines always sum to ``-tax_amount``.
    """
    if not tax_amount:
        return []

    lines = ((original.tax_breakdown or {}).get("lines") if original else None) or []
    base = sum(int(line.get("amount", 0)) for line in lines)
    if not lines or base <= 0:
        return [TaxLineInput(title="Refunded tax", amount=-tax_amount)]

    allocated: List[TaxLineInput] = []
    remaining = tax_amount
    for index, line in enumerate(lines):
        if index == len(lines) - 1:
            share = remaining
        else:
            share = tax_amount * int(line.get("amount", 0)) // base
        remaining -= share
        allocated.append(
            TaxLineInput(
                title=line.get("title", ""),
                amount=-share,
                rate=line.get("rate", 0.0),
                currency=line.get("currency"),
            )
        )
    return allocated


def _event_label(event: LedgerEvent) -> str:
    if isinstance(event, RefundCreatedEvent):
        return f"{event.kind}:{event.order_external_id}"
    return f"{event.kind}:{event.order.external_id}"
