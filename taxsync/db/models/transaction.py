"""Ledger model: one row per order, refund or adjustment."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from taxsync.db.base import Base


class TransactionType(str, Enum):
    """Kind of ledger entry."""

    SALE = "SALE"
    REFUND = "REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    CANCEL = "CANCEL"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionStatus(str, Enum):
    """Lifecycle status of a ledger entry."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


REFUND_TYPES = (TransactionType.REFUND.value, TransactionType.PARTIAL_REFUND.value)

LEDGER_KEY = ("organization_id", "integration_id", "external_id")


class TransactionRecord(Base):
    """
    Ledger entry mirroring one remote order, refund or adjustment.

    Rows are keyed by (organization_id, integration_id, external_id) and are
    only ever status-transitioned after creation, never hard-deleted. All
    monetary amounts are integer minor units (cents).
    """

    __tablename__ = "transactions"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Ledger identity
    organization_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True, comment="Owning organization"
    )
    integration_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True, comment="Source integration"
    )
    external_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Remote order id, or refund-<id> for synthetic refund rows",
    )
    order_number: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, comment="Human-facing order number"
    )

    # Classification
    type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=TransactionType.SALE.value
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        index=True,
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD", comment="Currency code (ISO 4217)"
    )

    # Amounts in minor units
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shipping_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Tax calculator output, stored verbatim
    tax_breakdown: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )

    # Jurisdiction
    tax_country: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tax_province: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tax_city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tax_postal_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Customer identity
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps from the remote platform
    transaction_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="When the order or refund was created remotely",
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Source timestamp of the event that last wrote this row",
    )

    # Provenance
    parent_external_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Original order external_id for refund rows",
    )
    source: Mapped[str] = mapped_column(
        String(32), nullable=False, default="webhook", comment="webhook or backfill"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True
    )

    # Audit fields
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint(*LEDGER_KEY, name="uq_transaction_ledger_key"),
        Index("idx_transaction_org_date", "organization_id", "transaction_date"),
        Index(
            "idx_transaction_parent",
            "organization_id",
            "integration_id",
            "parent_external_id",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord(id={self.id}, external_id={self.external_id}, "
            f"type={self.type}, status={self.status}, total={self.total_amount})>"
        )
