"""Transaction repository: atomic, timestamp-gated ledger writes."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Select, case, inspect, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from taxsync.core.clock import utcnow
from taxsync.db.models.transaction import (
    LEDGER_KEY,
    REFUND_TYPES,
    TransactionRecord,
    TransactionStatus,
)
from taxsync.db.repository import BaseRepository

_NEVER_OVERWRITTEN = set(LEDGER_KEY) | {"created_at"}


class TransactionRepository(BaseRepository[TransactionRecord]):
    """
    Repository for ledger rows.

    Every write that can race with another delivery of the same event is a
    single statement, so the database decides ordering rather than a
    read-then-write in Python.
    """

    def _insert(self):
        table = self.model.__table__
        if self.dialect_name == "postgresql":
            return pg_insert(table)
        if self.dialect_name == "sqlite":
            return sqlite_insert(table)
        raise NotImplementedError(
            f"Atomic upsert is not supported on dialect {self.dialect_name!r}"
        )

    def _row(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Translate ORM attribute names (extra_metadata) into column keys (metadata)."""
        columns = inspect(self.model).columns
        return {columns[name].key: value for name, value in values.items()}

    def _key_clause(self, organization_id: str, integration_id: str, external_id: str):
        return (
            (self.model.organization_id == organization_id)
            & (self.model.integration_id == integration_id)
            & (self.model.external_id == external_id)
        )

    async def _load(self, id: int) -> TransactionRecord:
        record = await self.session.get(self.model, id, populate_existing=True)
        if record is None:
            raise RuntimeError(f"Ledger row {id} vanished after write")
        return record

    def key_query(
        self,
        organization_id: str,
        integration_id: str,
        external_id: str,
        for_update: bool = False,
    ) -> Select:
        stmt = (
            select(self.model)
            .where(self._key_clause(organization_id, integration_id, external_id))
            .execution_options(populate_existing=True)
        )
        return stmt.with_for_update() if for_update else stmt

    async def get_by_key(
        self,
        organization_id: str,
        integration_id: str,
        external_id: str,
        for_update: bool = False,
    ) -> Optional[TransactionRecord]:
        """
        Get a ledger row by its (organization, integration, external id) key.

        With ``for_update`` the row stays locked until the transaction ends
        (PostgreSQL; SQLite serializes writers already).
        """
        result = await self.session.execute(
            self.key_query(organization_id, integration_id, external_id, for_update)
        )
        return result.scalar_one_or_none()

    async def upsert_if_newer(
        self, values: Dict[str, Any]
    ) -> Tuple[Optional[TransactionRecord], bool]:
        """
        Insert a row, or overwrite the stored one if it is not newer.

        Runs ``INSERT ... ON CONFLICT (key) DO UPDATE ... WHERE
        stored.last_modified <= excluded.last_modified RETURNING``.

        Args:
            values: Full row keyed by attribute name, including last_modified

        Returns:
            (record, created). ``record`` is None when the stored row is
            strictly newer and the write was discarded.
        """
        now = utcnow()
        row = self._row({**values, "created_at": now, "updated_at": now})
        table = self.model.__table__

        stmt = self._insert().values(row)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(LEDGER_KEY),
            set_={
                key: stmt.excluded[key]
                for key in row
                if key not in _NEVER_OVERWRITTEN
            },
            where=table.c.last_modified <= stmt.excluded.last_modified,
        ).returning(table.c.id, table.c.created_at, table.c.updated_at)

        returned = (await self.session.execute(stmt)).first()
        if returned is None:
            return None, False

        record = await self._load(returned.id)
        return record, returned.created_at == returned.updated_at

    async def insert_if_absent(
        self, values: Dict[str, Any]
    ) -> Optional[TransactionRecord]:
        """
        Insert a row unless its key already exists.

        Returns:
            The new record, or None if a row with the same key was already stored
        """
        now = utcnow()
        row = self._row({**values, "created_at": now, "updated_at": now})
        table = self.model.__table__

        stmt = (
            self._insert()
            .values(row)
            .on_conflict_do_nothing(index_elements=list(LEDGER_KEY))
            .returning(table.c.id)
        )
        returned = (await self.session.execute(stmt)).first()
        if returned is None:
            return None
        return await self._load(returned.id)

    async def update_status_if_newer(
        self,
        organization_id: str,
        integration_id: str,
        external_id: str,
        status: str,
        last_modified: datetime,
        notes: Optional[str] = None,
    ) -> Optional[TransactionRecord]:
        """
        Status-only transition gated by the same timestamp rule as upserts.

        Monetary fields are left untouched. Returns None when the stored row
        is newer (or missing).
        """
        values: Dict[str, Any] = {
            "status": status,
            "last_modified": last_modified,
            "updated_at": utcnow(),
        }
        if notes is not None:
            values["notes"] = notes

        result = await self.session.execute(
            update(self.model)
            .where(self._key_clause(organization_id, integration_id, external_id))
            .where(self.model.last_modified <= last_modified)
            .values(**values)
            .returning(self.model.id)
            .execution_options(synchronize_session=False)
        )
        returned = result.first()
        if returned is None:
            return None
        return await self._load(returned.id)

    async def get_refunds(
        self, organization_id: str, integration_id: str, parent_external_id: str
    ) -> List[TransactionRecord]:
        """Get refund rows that reference an original order."""
        result = await self.session.execute(
            select(self.model)
            .where(self.model.organization_id == organization_id)
            .where(self.model.integration_id == integration_id)
            .where(self.model.parent_external_id == parent_external_id)
            .where(self.model.type.in_(REFUND_TYPES))
            .order_by(self.model.transaction_date)
        )
        return list(result.scalars().all())

    async def mark_fully_refunded(
        self,
        organization_id: str,
        integration_id: str,
        external_id: str,
        refunded_total: int,
        refunded_at: datetime,
    ) -> bool:
        """
        Flip an order to REFUNDED if ``refunded_total`` equals its total exactly.

        ``last_modified`` moves forward to ``refunded_at`` (never backwards) so
        a replayed older update cannot revert the flip.

        Returns:
            True if the row changed
        """
        result = await self.session.execute(
            update(self.model)
            .where(self._key_clause(organization_id, integration_id, external_id))
            .where(self.model.status != TransactionStatus.REFUNDED.value)
            .where(self.model.total_amount > 0)
            .where(self.model.total_amount == refunded_total)
            .values(
                status=TransactionStatus.REFUNDED.value,
                last_modified=case(
                    (self.model.last_modified < refunded_at, refunded_at),
                    else_=self.model.last_modified,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore

    async def list_for_integration(
        self, integration_id: str, limit: Optional[int] = None
    ) -> List[TransactionRecord]:
        """Ledger rows of one integration, newest first."""
        query = (
            select(self.model)
            .where(self.model.integration_id == integration_id)
            .order_by(self.model.transaction_date.desc())
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())
