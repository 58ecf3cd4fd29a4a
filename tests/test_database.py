"""Tests for database models and repositories."""

from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql

from taxsync.core.clock import utcnow
from taxsync.db.models import IntegrationStatus, SyncStatus, TransactionStatus, TransactionType
from taxsync.db.unit_of_work import UnitOfWork
from tests.conftest import create_integration


def ledger_values(external_id="1001", total=10000, last_modified=None, **overrides):
    now = utcnow()
    values = {
        "organization_id": "org_1",
        "integration_id": "int_1",
        "external_id": external_id,
        "type": TransactionType.SALE.value,
        "status": TransactionStatus.COMPLETED.value,
        "currency": "USD",
        "subtotal": total,
        "tax_amount": 0,
        "total_amount": total,
        "transaction_date": now,
        "last_modified": last_modified or now,
        "source": "webhook",
    }
    values.update(overrides)
    return values


@pytest.mark.asyncio
class TestIntegrationRepository:
    """Test Integration model and repository."""

    async def test_get_by_shop_domain_is_case_insensitive(self, session_factory, integration):
        async with UnitOfWork() as uow:
            found = await uow.integrations.get_by_shop_domain("  ACME-Store.myshopify.com ")
            assert found is not None
            assert found.id == "int_1"

    async def test_list_connected(self, session_factory):
        await create_integration(session_factory, "int_1", "one.myshopify.com")
        await create_integration(
            session_factory,
            "int_2",
            "two.myshopify.com",
            status=IntegrationStatus.DISCONNECTED.value,
        )

        async with UnitOfWork() as uow:
            connected = await uow.integrations.list_connected()
            assert [i.id for i in connected] == ["int_1"]

    async def test_mark_disconnected(self, session_factory, integration):
        async with UnitOfWork() as uow:
            updated = await uow.integrations.mark_disconnected("int_1")
            assert updated.status == IntegrationStatus.DISCONNECTED.value
            assert updated.sync_status == SyncStatus.IDLE.value
            assert updated.sync_error == "App uninstalled by user"

    async def test_sync_status_round_trip(self, session_factory, integration):
        async with UnitOfWork() as uow:
            await uow.integrations.set_sync_status("int_1", SyncStatus.ERROR, "boom")

        async with UnitOfWork() as uow:
            stored = await uow.integrations.get_by_id("int_1")
            assert stored.sync_status == SyncStatus.ERROR.value
            assert stored.sync_error == "boom"

            touched = await uow.integrations.touch_sync("int_1")
            assert touched.sync_status == SyncStatus.SUCCESS.value
            assert touched.sync_error is None
            assert touched.last_sync_at is not None


@pytest.mark.asyncio
class TestUnitOfWork:
    async def test_owned_session_commits_on_exit(self, session_factory, integration):
        async with UnitOfWork() as uow:
            await uow.transactions.upsert_if_newer(ledger_values())

        async with UnitOfWork() as uow:
            assert await uow.transactions.count() == 1

    async def test_exception_rolls_back(self, session_factory, integration):
        with pytest.raises(RuntimeError):
            async with UnitOfWork() as uow:
                await uow.transactions.upsert_if_newer(ledger_values())
                raise RuntimeError("abort")

        async with UnitOfWork() as uow:
            assert await uow.transactions.count() == 0

    async def test_borrowed_session_is_not_committed(self, session_factory, integration):
        async with session_factory() as session:
            async with UnitOfWork(session=session) as uow:
                await uow.transactions.upsert_if_newer(ledger_values())
            await session.rollback()

        async with UnitOfWork() as uow:
            assert await uow.transactions.count() == 0


@pytest.mark.asyncio
class TestTransactionRepository:
    """Test the ledger's atomic write paths."""

    async def test_upsert_inserts_then_updates(self, session_factory, integration):
        async with UnitOfWork() as uow:
            record, created = await uow.transactions.upsert_if_newer(ledger_values())
            assert created is True
            assert record.total_amount == 10000

        async with UnitOfWork() as uow:
            record, created = await uow.transactions.upsert_if_newer(
                ledger_values(total=12000, last_modified=utcnow() + timedelta(minutes=5))
            )
            assert created is False
            assert record.total_amount == 12000

    async def test_older_write_is_discarded(self, session_factory, integration):
        newer = utcnow()
        async with UnitOfWork() as uow:
            await uow.transactions.upsert_if_newer(ledger_values(last_modified=newer))

        async with UnitOfWork() as uow:
            record, created = await uow.transactions.upsert_if_newer(
                ledger_values(total=1, last_modified=newer - timedelta(hours=1))
            )
            assert record is None
            assert created is False

            stored = await uow.transactions.get_by_key("org_1", "int_1", "1001")
            assert stored.total_amount == 10000

    async def test_equal_timestamp_overwrites(self, session_factory, integration):
        stamp = utcnow()
        async with UnitOfWork() as uow:
            await uow.transactions.upsert_if_newer(ledger_values(last_modified=stamp))

        async with UnitOfWork() as uow:
            record, _ = await uow.transactions.upsert_if_newer(
                ledger_values(total=5000, last_modified=stamp)
            )
            assert record is not None
            assert record.total_amount == 5000

    async def test_metadata_column_mapping(self, session_factory, integration):
        async with UnitOfWork() as uow:
            record, _ = await uow.transactions.upsert_if_newer(
                ledger_values(extra_metadata={"financial_status": "paid"})
            )
            assert record.extra_metadata == {"financial_status": "paid"}

    async def test_filter_operators(self, session_factory, integration):
        async with UnitOfWork() as uow:
            await uow.transactions.upsert_if_newer(ledger_values("1", total=500))
            await uow.transactions.upsert_if_newer(ledger_values("2", total=1500))
            await uow.transactions.upsert_if_newer(ledger_values("3", total=2500))

        async with UnitOfWork() as uow:
            large = await uow.transactions.filter(total_amount__gt=1000)
            assert sorted(r.external_id for r in large) == ["2", "3"]
            assert await uow.transactions.count(external_id__in=["1", "3"]) == 2
            assert await uow.transactions.exists(external_id="4") is False

    async def test_locking_read(self, session_factory, integration):
        async with UnitOfWork() as uow:
            await uow.transactions.upsert_if_newer(ledger_values())

        async with UnitOfWork() as uow:
            locked = await uow.transactions.get_by_key("org_1", "int_1", "1001", for_update=True)
            assert locked.total_amount == 10000

            query = uow.transactions.key_query("org_1", "int_1", "1001", for_update=True)
            assert "FOR UPDATE" in str(query.compile(dialect=postgresql.dialect()))
            plain = uow.transactions.key_query("org_1", "int_1", "1001")
            assert "FOR UPDATE" not in str(plain.compile(dialect=postgresql.dialect()))
