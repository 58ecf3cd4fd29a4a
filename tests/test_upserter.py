"""
Tests for idempotent ledger writes.

Covers duplicate and out-of-order delivery, cancellations, refund rows
and the full-refund status flip, plus per-item isolation in batches.
"""

from datetime import timedelta

import pytest

from taxsync.core.clock import ensure_utc
from taxsync.db.models import TransactionStatus, TransactionType
from taxsync.db.unit_of_work import UnitOfWork
from taxsync.ingestion.events import normalize_event
from taxsync.ingestion.tax import CategoryTaxCalculator
from taxsync.ingestion.upserter import (
    BatchResult,
    TransactionUpserter,
    UpsertOutcome,
    derive_status,
)
from tests.fixtures.sample_orders import (
    BASE_TIME,
    SHOP,
    make_ontario_order,
    make_order,
    make_refund,
    ts,
)


async def apply(session_factory, integration, topic, payload, tax_calculator=None):
    event = normalize_event(topic, payload, SHOP)
    async with UnitOfWork(session_factory=session_factory) as uow:
        return await TransactionUpserter(uow, tax_calculator).upsert(integration, event)


async def load(session_factory, integration, external_id):
    async with UnitOfWork(session_factory=session_factory) as uow:
        return await uow.transactions.get_by_key(
            integration.organization_id, integration.id, external_id
        )


async def count_rows(session_factory) -> int:
    async with UnitOfWork(session_factory=session_factory) as uow:
        return await uow.transactions.count()


@pytest.mark.parametrize(
    "financial_status, expected",
    [
        ("paid", TransactionStatus.COMPLETED),
        ("pending", TransactionStatus.PENDING),
        ("refunded", TransactionStatus.REFUNDED),
        ("partially_refunded", TransactionStatus.REFUNDED),
        ("voided", TransactionStatus.CANCELLED),
        ("authorized", TransactionStatus.PENDING),
        (None, TransactionStatus.PENDING),
    ],
)
def test_derive_status(financial_status, expected):
    assert derive_status(financial_status) == expected


@pytest.mark.asyncio
class TestOrderUpserts:
    async def test_create_stores_minor_units_and_tax(self, session_factory, integration):
        result = await apply(session_factory, integration, "orders/create", make_ontario_order())

        assert result.outcome is UpsertOutcome.CREATED
        record = result.record
        assert record.external_id == "2001"
        assert record.type == TransactionType.SALE.value
        assert record.status == TransactionStatus.COMPLETED.value
        assert (record.subtotal, record.tax_amount, record.total_amount) == (10000, 1300, 11300)
        assert record.tax_breakdown["categories"]["hst"] == 1300
        assert record.tax_breakdown["is_valid"] is True
        assert (record.tax_country, record.tax_province) == ("CA", "ON")
        assert record.source == "webhook"
        assert record.extra_metadata["financial_status"] == "paid"

    async def test_duplicate_delivery_is_idempotent(self, session_factory, integration):
        payload = make_order(order_id=1001)
        first = await apply(session_factory, integration, "orders/create", payload)
        second = await apply(session_factory, integration, "orders/create", payload)

        assert first.outcome is UpsertOutcome.CREATED
        assert second.outcome is UpsertOutcome.UPDATED
        assert second.record.id == first.record.id
        assert await count_rows(session_factory) == 1

    async def test_newer_update_overwrites(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))
        result = await apply(
            session_factory,
            integration,
            "orders/updated",
            make_order(order_id=1001, total="120.00", updated_minutes=30),
        )

        assert result.outcome is UpsertOutcome.UPDATED
        assert result.record.total_amount == 12000
        assert ensure_utc(result.record.last_modified) == BASE_TIME + timedelta(minutes=30)

    async def test_older_update_is_discarded(self, session_factory, integration):
        await apply(
            session_factory,
            integration,
            "orders/updated",
            make_order(order_id=1001, total="120.00", updated_minutes=30),
        )
        result = await apply(
            session_factory,
            integration,
            "orders/create",
            make_order(order_id=1001, total="100.00", updated_minutes=0),
        )

        assert result.outcome is UpsertOutcome.STALE
        stored = await load(session_factory, integration, "1001")
        assert stored.total_amount == 12000
        assert ensure_utc(stored.last_modified) == BASE_TIME + timedelta(minutes=30)

    async def test_update_for_unknown_order_creates_it(self, session_factory, integration):
        result = await apply(
            session_factory, integration, "orders/updated", make_order(order_id=3003)
        )
        assert result.outcome is UpsertOutcome.CREATED
        assert await count_rows(session_factory) == 1


@pytest.mark.asyncio
class TestCancellations:
    async def test_cancel_existing_is_status_only(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))
        result = await apply(
            session_factory,
            integration,
            "orders/cancelled",
            make_order(
                order_id=1001,
                total="999.00",
                financial_status="voided",
                updated_minutes=30,
                cancelled_at=(BASE_TIME + timedelta(minutes=30)).isoformat(),
                cancel_reason="customer",
            ),
        )

        assert result.outcome is UpsertOutcome.UPDATED
        record = result.record
        assert record.status == TransactionStatus.CANCELLED.value
        assert record.notes == "Cancelled: customer"
        assert record.total_amount == 10000

    async def test_cancel_unknown_order_inserts_snapshot(self, session_factory, integration):
        result = await apply(
            session_factory,
            integration,
            "orders/cancelled",
            make_order(order_id=4004, total="50.00", financial_status="voided", cancel_reason="fraud"),
        )

        assert result.outcome is UpsertOutcome.CREATED
        assert result.record.status == TransactionStatus.CANCELLED.value
        assert result.record.total_amount == 5000
        assert result.record.notes == "Cancelled: fraud"

    async def test_stale_cancel_is_discarded(self, session_factory, integration):
        await apply(
            session_factory,
            integration,
            "orders/updated",
            make_order(order_id=1001, updated_minutes=60),
        )
        result = await apply(
            session_factory,
            integration,
            "orders/cancelled",
            make_order(
                order_id=1001,
                updated_minutes=30,
                cancelled_at=(BASE_TIME + timedelta(minutes=30)).isoformat(),
            ),
        )

        assert result.outcome is UpsertOutcome.STALE
        assert result.record.status == TransactionStatus.COMPLETED.value

    async def test_update_older_than_cancel_cannot_revive(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))
        await apply(
            session_factory,
            integration,
            "orders/cancelled",
            make_order(
                order_id=1001,
                updated_minutes=30,
                cancelled_at=(BASE_TIME + timedelta(minutes=30)).isoformat(),
            ),
        )
        result = await apply(
            session_factory,
            integration,
            "orders/updated",
            make_order(order_id=1001, updated_minutes=10),
        )

        assert result.outcome is UpsertOutcome.STALE
        stored = await load(session_factory, integration, "1001")
        assert stored.status == TransactionStatus.CANCELLED.value


@pytest.mark.asyncio
class TestRefunds:
    async def test_partial_then_final_refund_flips_order(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))

        first = await apply(
            session_factory,
            integration,
            "refunds/create",
            make_refund(1, 1001, "40.00", created_minutes=60),
        )
        assert first.outcome is UpsertOutcome.CREATED
        refund = first.refunds[0]
        assert refund.external_id == "refund-1"
        assert refund.type == TransactionType.PARTIAL_REFUND.value
        assert refund.total_amount == -4000
        assert refund.parent_external_id == "1001"
        assert refund.extra_metadata["original_external_id"] == "1001"
        assert first.record.status == TransactionStatus.COMPLETED.value

        second = await apply(
            session_factory,
            integration,
            "refunds/create",
            make_refund(2, 1001, "60.00", created_minutes=120),
        )
        assert second.refunds[0].total_amount == -6000
        assert second.record.status == TransactionStatus.REFUNDED.value
        assert ensure_utc(second.record.last_modified) == BASE_TIME + timedelta(minutes=120)

        # A replay of the original paid order cannot undo the flip
        replay = await apply(
            session_factory, integration, "orders/create", make_order(order_id=1001)
        )
        assert replay.outcome is UpsertOutcome.STALE
        assert replay.record.status == TransactionStatus.REFUNDED.value

    async def test_single_full_refund(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))
        result = await apply(
            session_factory, integration, "refunds/create", make_refund(9, 1001, "100.00")
        )

        assert result.refunds[0].type == TransactionType.REFUND.value
        assert result.record.status == TransactionStatus.REFUNDED.value

    async def test_refund_off_by_one_cent_stays_partial(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))
        result = await apply(
            session_factory, integration, "refunds/create", make_refund(9, 1001, "99.99")
        )

        assert result.refunds[0].type == TransactionType.PARTIAL_REFUND.value
        assert result.record.status == TransactionStatus.COMPLETED.value

    async def test_duplicate_refund_delivery(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))
        payload = make_refund(5, 1001, "10.00")
        await apply(session_factory, integration, "refunds/create", payload)
        await apply(session_factory, integration, "refunds/create", payload)

        async with UnitOfWork(session_factory=session_factory) as uow:
            refunds = await uow.transactions.get_refunds("org_1", integration.id, "1001")
        assert len(refunds) == 1

    async def test_refund_tax_follows_original_lines(self, session_factory, integration):
        await apply(session_factory, integration, "orders/create", make_ontario_order(order_id=2001))
        result = await apply(
            session_factory,
            integration,
            "refunds/create",
            make_refund(3, 2001, "56.50", tax="6.50"),
        )

        refund = result.refunds[0]
        assert refund.tax_amount == -650
        assert refund.subtotal == -5000
        assert refund.tax_breakdown["categories"]["hst"] == -650
        assert refund.tax_breakdown["is_valid"] is True
        assert refund.tax_province == "ON"

    async def test_refund_before_order_is_reconciled_later(self, session_factory, integration):
        early = await apply(
            session_factory,
            integration,
            "refunds/create",
            make_refund(7, 1001, "100.00", created_minutes=60),
        )
        assert early.record is None
        assert early.refunds[0].parent_external_id == "1001"

        result = await apply(
            session_factory, integration, "orders/create", make_order(order_id=1001)
        )

        assert result.outcome is UpsertOutcome.CREATED
        assert result.record.status == TransactionStatus.REFUNDED.value
        assert ensure_utc(result.record.last_modified) == BASE_TIME + timedelta(minutes=60)

    async def test_order_payload_with_refunds_list(self, session_factory, integration):
        payload = make_order(
            order_id=1001,
            financial_status="partially_refunded",
            updated_minutes=90,
            refunds=[
                make_refund(1, 1001, "30.00", created_minutes=60),
                make_refund(2, 1001, "20.00", created_minutes=90),
            ],
        )
        result = await apply(session_factory, integration, "refunds/create", payload)

        assert [r.external_id for r in result.refunds] == ["refund-1", "refund-2"]
        assert result.record is not None
        assert result.record.total_amount == 10000
        # 50.00 of 100.00 refunded: the payload's financial status does not flip it
        assert result.record.status == TransactionStatus.COMPLETED.value
        assert await count_rows(session_factory) == 3

    async def test_partially_refunded_payload_keeps_order_completed(
        self, session_factory, integration
    ):
        await apply(session_factory, integration, "orders/create", make_order(order_id=1001))

        payload = make_order(
            order_id=1001,
            financial_status="partially_refunded",
            updated_minutes=60,
            refunds=[make_refund(1, 1001, "40.00", created_minutes=60)],
        )
        result = await apply(session_factory, integration, "refunds/create", payload)

        assert result.refunds[0].total_amount == -4000
        assert result.record.status == TransactionStatus.COMPLETED.value
        stored = await load(session_factory, integration, "1001")
        assert stored.status == TransactionStatus.COMPLETED.value

    async def test_refunded_payload_flips_only_when_refunds_cover_total(
        self, session_factory, integration
    ):
        payload = make_order(
            order_id=1001,
            financial_status="refunded",
            updated_minutes=60,
            refunds=[make_refund(1, 1001, "100.00", created_minutes=60)],
        )
        result = await apply(session_factory, integration, "refunds/create", payload)

        assert result.record.status == TransactionStatus.REFUNDED.value

    async def test_partial_refund_payload_of_cancelled_order_stays_cancelled(
        self, session_factory, integration
    ):
        payload = make_order(
            order_id=1001,
            financial_status="partially_refunded",
            updated_minutes=60,
            cancelled_at=ts(30),
            refunds=[make_refund(1, 1001, "25.00", created_minutes=60)],
        )
        result = await apply(session_factory, integration, "refunds/create", payload)

        assert result.record.status == TransactionStatus.CANCELLED.value


class ExplodingCalculator(CategoryTaxCalculator):
    """Fails for one specific reported tax amount."""

    def calculate(self, tax_lines, billing_address, shipping_address, reported_total, currency="USD"):
        if reported_total == 666:
            raise RuntimeError("tax service unavailable")
        return super().calculate(tax_lines, billing_address, shipping_address, reported_total, currency)


@pytest.mark.asyncio
async def test_upsert_many_isolates_failures(session_factory, integration):
    events = [
        normalize_event("orders/create", make_order(order_id=1), SHOP),
        normalize_event("orders/create", make_order(order_id=2, tax="6.66"), SHOP),
        normalize_event("orders/create", make_order(order_id=3), SHOP),
        normalize_event("orders/create", make_order(order_id=1), SHOP),
    ]

    async with UnitOfWork(session_factory=session_factory) as uow:
        result = await TransactionUpserter(uow, ExplodingCalculator()).upsert_many(
            integration, events
        )

    assert result.created == 2
    assert result.updated == 1
    assert result.failed == 1
    assert result.total == 4
    assert result.errors[0].startswith("create:2")
    assert await count_rows(session_factory) == 2


@pytest.mark.asyncio
async def test_insert_if_absent_skips_existing(session_factory, integration):
    await apply(session_factory, integration, "orders/create", make_order(order_id=1001, total="80.00"))

    event = normalize_event("orders/create", make_order(order_id=1001, total="10.00"), SHOP)
    async with UnitOfWork(session_factory=session_factory) as uow:
        result = await TransactionUpserter(uow).insert_if_absent(integration, event)

    assert result.outcome is UpsertOutcome.SKIPPED
    stored = await load(session_factory, integration, "1001")
    assert stored.total_amount == 8000
    assert stored.source == "webhook"


@pytest.mark.asyncio
async def test_insert_many_if_absent_counts_into_given_result(session_factory, integration):
    await apply(session_factory, integration, "orders/create", make_order(order_id=1))
    events = [
        normalize_event("orders/create", make_order(order_id=1, total="5.00"), SHOP),
        normalize_event("orders/create", make_order(order_id=2, tax="6.66"), SHOP),
        normalize_event("orders/create", make_order(order_id=3), SHOP),
    ]
    batch = BatchResult(failed=1, errors=["create:9: unparseable"])

    async with UnitOfWork(session_factory=session_factory) as uow:
        result = await TransactionUpserter(uow, ExplodingCalculator()).insert_many_if_absent(
            integration, events, result=batch
        )

    assert result is batch
    assert (result.created, result.skipped, result.failed) == (1, 1, 2)
    assert result.errors[1].startswith("create:2")
    stored = await load(session_factory, integration, "1")
    assert stored.total_amount == 10000
    assert stored.source == "webhook"
    assert (await load(session_factory, integration, "3")).source == "backfill"
