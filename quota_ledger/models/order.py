"""Order and subscription models - the payment records the ledger grants against.

Payment checkout and webhook handling live outside this package. These models
carry only the columns the grant/order coordinator reads and updates: status,
provider correlation ids, billing period bounds, and the quota that a paid
order or a renewed subscription period entitles the user to.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from quota_ledger.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")


class OrderStatus(str, Enum):
    """Order lifecycle: PENDING -> CREATED -> {PAID | FAILED}.

    COMPLETED means checkout completed but payment did not succeed.
    """

    PENDING = "pending"
    CREATED = "created"
    COMPLETED = "completed"
    PAID = "paid"
    FAILED = "failed"


# An order may only move to PAID from one of these
PAYABLE_ORDER_STATUSES: tuple[OrderStatus, ...] = (
    OrderStatus.CREATED,
    OrderStatus.PENDING,
)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PENDING_CANCEL = "pending_cancel"
    CANCELED = "canceled"
    PAUSED = "paused"
    EXPIRED = "expired"


class Order(Base, TimestampMixin):
    """Checkout order.

    Attributes:
        id: UUID primary key.
        order_no: Unique order number (grant idempotency key).
        user_id: Purchasing user (FK to users).
        user_email: Checkout email.
        status: OrderStatus value.
        amount: Checkout amount in cents.
        currency: Checkout currency.
        payment_type: one_time or subscription.
        payment_provider: Payment provider name.
        transaction_id: Provider transaction id (renewal order dedup key).
        subscription_id: Provider subscription id.
        subscription_no: Local subscription number, if any.
        quota_pool_type: Pool the paid order grants into.
        quota_measurement_type: Measurement of the granted quota.
        quota_amount: Quota amount to grant.
        quota_valid_days: Validity of the grant in days (0 = never expires).
        paid_at: When payment succeeded.
    """

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'created', 'completed', 'paid', 'failed')",
            name="ck_orders_status_valid",
        ),
        Index("ix_orders_user_status", "user_id", "status"),
        Index(
            "ix_orders_transaction_provider",
            "transaction_id",
            "payment_provider",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    order_no: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    payment_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True
    )
    subscription_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quota_pool_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    quota_measurement_type: Mapped[str | None] = mapped_column(
        String(20), nullable=True
    )
    quota_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(20, 6), nullable=True
    )
    quota_valid_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Subscription(Base, TimestampMixin):
    """Recurring subscription.

    Attributes:
        id: UUID primary key.
        subscription_no: Unique local subscription number.
        user_id: Subscribing user (FK to users).
        status: SubscriptionStatus value.
        payment_provider: Payment provider name.
        subscription_id: Provider subscription id (dedup key with provider).
        current_period_start: Start of the current billing period.
        current_period_end: End of the current billing period. Subscription
            grants expire exactly at this instant.
        quota_pool_type: Pool each period's grant goes into.
        quota_measurement_type: Measurement of the per-period grant.
        quota_amount: Quota granted per period.
        quota_valid_days: Fallback validity when no period end is known.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
        Index(
            "ix_subscriptions_provider_id",
            "subscription_id",
            "payment_provider",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    subscription_no: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    interval: Mapped[str | None] = mapped_column(String(20), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    quota_pool_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    quota_measurement_type: Mapped[str | None] = mapped_column(
        String(20), nullable=True
    )
    quota_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(20, 6), nullable=True
    )
    quota_valid_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
