"""Quota ledger ORM model and enums.

QuotaTransaction is the single ledger entity. A row is either a GRANT
(positive amount, live remaining_amount) or a CONSUME (negative amount,
consumed_detail reversal manifest). Rows are never physically deleted: only
remaining_amount (GRANT rows) and status change after insert.
"""

import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from quota_ledger.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")

# Scale matches the Numeric(20, 6) amount columns
AMOUNT_QUANTUM = Decimal("0.000001")


class QuotaPoolType(str, Enum):
    """Consumption-priority partition of a user's balance."""

    TRIAL = "trial"
    SUBSCRIPTION = "subscription"
    PAYGO = "paygo"


# Pools are drained strictly in this order
POOL_PRIORITY: tuple[QuotaPoolType, ...] = (
    QuotaPoolType.TRIAL,
    QuotaPoolType.SUBSCRIPTION,
    QuotaPoolType.PAYGO,
)


class QuotaMeasurementType(str, Enum):
    """Unit a pool instance is denominated in."""

    DOLLAR = "dollar"
    UNIT = "unit"


class QuotaTransactionType(str, Enum):
    GRANT = "grant"
    CONSUME = "consume"


class QuotaStatus(str, Enum):
    """Row status. DELETED marks a refunded consume or a swept grant."""

    ACTIVE = "active"
    EXPIRED = "expired"
    DELETED = "deleted"


class QuotaTransactionScene(str, Enum):
    """Scene tags for GRANT rows. CONSUME rows use the service type instead."""

    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    GIFT = "gift"
    REWARD = "reward"
    TRIAL = "trial"


def quantize_amount(value: Decimal) -> Decimal:
    """Round an amount to the ledger's storage scale."""
    return value.quantize(AMOUNT_QUANTUM)


def generate_transaction_no() -> str:
    """Time-ordered transaction number: epoch milliseconds + 6 random digits."""
    return f"{time.time_ns() // 1_000_000}{secrets.randbelow(1_000_000):06d}"


@dataclass(frozen=True)
class ConsumedItem:
    """One entry of a CONSUME row's reversal manifest.

    Replaying amount_before/amount_after against the referenced grant
    reconstructs the exact deduction; refunds restore amount_consumed.

    Attributes:
        grant_id: GRANT row the amount was drawn from.
        grant_transaction_no: transaction_no of that GRANT row.
        expires_at: Expiry of the GRANT row at consumption time.
        amount_consumed: Amount deducted from the GRANT row.
        amount_before: GRANT remaining_amount before the deduction.
        amount_after: GRANT remaining_amount after the deduction.
        batch_no: FIFO batch (1-indexed) the row was locked in.
    """

    grant_id: uuid.UUID
    grant_transaction_no: str
    expires_at: datetime | None
    amount_consumed: Decimal
    amount_before: Decimal
    amount_after: Decimal
    batch_no: int

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the JSONB column (decimals as strings)."""
        return {
            "grant_id": str(self.grant_id),
            "grant_transaction_no": self.grant_transaction_no,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "amount_consumed": str(self.amount_consumed),
            "amount_before": str(self.amount_before),
            "amount_after": str(self.amount_after),
            "batch_no": self.batch_no,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsumedItem":
        """Parse one manifest entry read back from the JSONB column."""
        expires_at = data.get("expires_at")
        return cls(
            grant_id=uuid.UUID(data["grant_id"]),
            grant_transaction_no=data["grant_transaction_no"],
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            amount_consumed=Decimal(data["amount_consumed"]),
            amount_before=Decimal(data["amount_before"]),
            amount_after=Decimal(data["amount_after"]),
            batch_no=int(data["batch_no"]),
        )


class QuotaTransaction(Base, TimestampMixin):
    """Ledger row: one grant or one consume event.

    Attributes:
        id: UUID primary key.
        user_id: Owning account (FK to users).
        user_email: Email snapshot at write time.
        pool_type: QuotaPoolType value.
        measurement_type: QuotaMeasurementType value, fixed at grant time.
        order_no: Originating order, used for grant idempotency.
        subscription_no: Originating subscription.
        transaction_no: Unique human-referenceable number.
        transaction_type: QuotaTransactionType value.
        transaction_scene: Grant scene, or the service type for consumes.
        amount: Signed amount (+grant, -consume).
        remaining_amount: Live balance of a GRANT row. 0 on CONSUME rows.
        description: Free-form description.
        expires_at: Expiry instant. NULL = never expires.
        status: QuotaStatus value.
        consumed_detail: CONSUME rows only, list of ConsumedItem dicts.
        extra_metadata: Free-form JSON stored in the "metadata" column.
    """

    __tablename__ = "quota_transactions"
    __table_args__ = (
        CheckConstraint(
            "pool_type IN ('trial', 'subscription', 'paygo')",
            name="ck_quota_txn_pool_type_valid",
        ),
        CheckConstraint(
            "measurement_type IN ('dollar', 'unit')",
            name="ck_quota_txn_measurement_type_valid",
        ),
        CheckConstraint(
            "transaction_type IN ('grant', 'consume')",
            name="ck_quota_txn_type_valid",
        ),
        CheckConstraint(
            "status IN ('active', 'expired', 'deleted')",
            name="ck_quota_txn_status_valid",
        ),
        CheckConstraint(
            "transaction_type <> 'grant' OR (amount > 0 "
            "AND remaining_amount >= 0 AND remaining_amount <= amount)",
            name="ck_quota_txn_grant_remaining_bounds",
        ),
        CheckConstraint(
            "transaction_type <> 'consume' OR amount < 0",
            name="ck_quota_txn_consume_negative",
        ),
        # FIFO consumption lookup
        Index(
            "ix_quota_transactions_consume_fifo",
            "user_id",
            "pool_type",
            "status",
            "transaction_type",
            "remaining_amount",
            "expires_at",
        ),
        Index("ix_quota_transactions_order_no", "order_no"),
        Index("ix_quota_transactions_subscription_no", "subscription_no"),
        # One grant per order
        Index(
            "uq_quota_transactions_grant_order_no",
            "order_no",
            unique=True,
            postgresql_where=text(
                "transaction_type = 'grant' AND order_no IS NOT NULL"
            ),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    pool_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    measurement_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    order_no: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    subscription_no: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    transaction_no: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
    )
    transaction_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    transaction_scene: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 6),
        nullable=False,
    )
    remaining_amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        default=Decimal("0"),
        server_default=text("0"),
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    consumed_detail: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSONB,
        nullable=True,
    )
    extra_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSONB,
        nullable=True,
    )

    @property
    def consumed_items(self) -> list[ConsumedItem]:
        """Parsed reversal manifest (empty for GRANT rows)."""
        return [ConsumedItem.from_dict(entry) for entry in self.consumed_detail or []]
