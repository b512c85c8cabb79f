"""Grant/order transaction coordinator.

Payment webhooks are delivered at least once. These operations apply an
order or subscription update together with the quota grant it entitles the
user to, in one SAVEPOINT, and check for an existing grant before creating
one so a retried webhook never grants twice:

- update_order_in_transaction: checkout completed (one-time or first
  subscription payment). Grants are de-duplicated by order_no.
- update_subscription_in_transaction: renewal. Grants are de-duplicated by
  the renewal order's order_no, or by (subscription_no, period end) when the
  renewal carries no order.

Order state machine: PENDING -> CREATED -> {PAID | FAILED}. The move to PAID
is applied only from CREATED or PENDING (optimistic lock), so a duplicate
delivery does not reprocess an already-paid order.
"""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.errors import NotFoundError, ValidationError
from quota_ledger.models.order import (
    PAYABLE_ORDER_STATUSES,
    Order,
    OrderStatus,
    Subscription,
)
from quota_ledger.models.quota import (
    QuotaMeasurementType,
    QuotaPoolType,
    QuotaTransaction,
    QuotaTransactionScene,
)
from quota_ledger.repositories.quota_repository import QuotaRepository
from quota_ledger.services.quota_grants import (
    QuotaGrantRequest,
    QuotaGrantService,
    to_amount,
)

logger = logging.getLogger(__name__)

# Columns a caller may never overwrite through an update dict
_PROTECTED_FIELDS = frozenset({"id", "created_at", "updated_at"})


@dataclass
class OrderTransactionResult:
    """Records touched by one coordinator call.

    Attributes:
        order: Updated or de-duplicated order. None when the optimistic lock
            skipped the order update.
        subscription: Created, de-duplicated or updated subscription.
        quota: Created or already-existing GRANT row.
    """

    order: Order | None = None
    subscription: Subscription | None = None
    quota: QuotaTransaction | None = None


def grant_request_from_order(
    order: Order,
    current_period_end: datetime | None = None,
) -> QuotaGrantRequest | None:
    """Build the grant a paid order entitles its user to.

    Args:
        order: Order carrying quota_* fields.
        current_period_end: Billing period end for subscription orders.

    Returns:
        The grant request, or None if the order carries no positive quota.
    """
    if not order.quota_pool_type or order.quota_amount is None:
        return None
    amount = to_amount(order.quota_amount)
    if amount <= 0:
        return None

    scene = (
        QuotaTransactionScene.SUBSCRIPTION
        if current_period_end is not None
        else QuotaTransactionScene.PAYMENT
    )
    return QuotaGrantRequest(
        user_id=order.user_id,
        user_email=order.user_email,
        pool_type=QuotaPoolType(order.quota_pool_type),
        measurement_type=QuotaMeasurementType(
            order.quota_measurement_type or QuotaMeasurementType.UNIT.value
        ),
        amount=amount,
        scene=scene.value,
        valid_days=order.quota_valid_days or 0,
        current_period_end=current_period_end,
        order_no=order.order_no,
        subscription_no=order.subscription_no,
        description=order.description,
    )


def grant_request_from_subscription(
    subscription: Subscription,
    order_no: str | None = None,
) -> QuotaGrantRequest | None:
    """Build the renewal grant for a subscription's current period.

    Returns:
        The grant request, or None if the subscription carries no positive
        quota.
    """
    if not subscription.quota_pool_type or subscription.quota_amount is None:
        return None
    amount = to_amount(subscription.quota_amount)
    if amount <= 0:
        return None

    return QuotaGrantRequest(
        user_id=subscription.user_id,
        user_email=subscription.user_email,
        pool_type=QuotaPoolType(subscription.quota_pool_type),
        measurement_type=QuotaMeasurementType(
            subscription.quota_measurement_type or QuotaMeasurementType.UNIT.value
        ),
        amount=amount,
        scene=QuotaTransactionScene.RENEWAL.value,
        valid_days=subscription.quota_valid_days or 0,
        current_period_end=subscription.current_period_end,
        order_no=order_no,
        subscription_no=subscription.subscription_no,
        description=subscription.plan_name,
    )


def _column_values(model: type, values: dict[str, Any]) -> dict[str, Any]:
    """Validate an update/insert dict against a model's columns.

    Enum members are stored as their values.

    Raises:
        ValidationError: On unknown or protected fields.
    """
    columns = set(model.__table__.columns.keys())
    bad = sorted(key for key in values if key not in columns or key in _PROTECTED_FIELDS)
    if bad:
        raise ValidationError(
            f"Invalid {model.__name__} fields: {', '.join(bad)}",
            details=[{"field": key} for key in bad],
        )
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in values.items()
    }


class OrderTransactionService:
    """Applies payment events and their grants atomically.

    Args:
        db: Async database session. The caller owns the outer transaction.
        grants: Grant engine.
    """

    def __init__(self, db: AsyncSession, grants: QuotaGrantService) -> None:
        self._db = db
        self._grants = grants

    async def _get_or_create_subscription(
        self, new_subscription: dict[str, Any]
    ) -> Subscription:
        values = _column_values(Subscription, new_subscription)
        subscription_id = values.get("subscription_id")
        payment_provider = values.get("payment_provider")
        if subscription_id and payment_provider:
            result = await self._db.execute(
                select(Subscription).where(
                    Subscription.subscription_id == subscription_id,
                    Subscription.payment_provider == payment_provider,
                )
            )
            existing = result.scalars().first()
            if existing is not None:
                logger.info(
                    "Subscription %s/%s already exists, reusing",
                    payment_provider,
                    subscription_id,
                )
                return existing

        subscription = Subscription(**values)
        self._db.add(subscription)
        await self._db.flush()
        await self._db.refresh(subscription)
        return subscription

    async def _get_or_create_order(self, new_order: dict[str, Any]) -> Order:
        values = _column_values(Order, new_order)
        if not values.get("order_no"):
            raise ValidationError("new_order requires order_no")
        transaction_id = values.get("transaction_id")
        payment_provider = values.get("payment_provider")
        if transaction_id and payment_provider:
            result = await self._db.execute(
                select(Order).where(
                    Order.transaction_id == transaction_id,
                    Order.payment_provider == payment_provider,
                )
            )
            existing = result.scalars().first()
            if existing is not None:
                logger.info(
                    "Order for transaction %s/%s already exists, reusing",
                    payment_provider,
                    transaction_id,
                )
                return existing

        order = Order(**values)
        self._db.add(order)
        await self._db.flush()
        await self._db.refresh(order)
        return order

    async def _grant_once(
        self,
        request: QuotaGrantRequest,
        existing: QuotaTransaction | None,
        now: datetime,
    ) -> QuotaTransaction:
        if existing is not None:
            logger.info(
                "Grant already applied (order=%s subscription=%s), skipping",
                request.order_no,
                request.subscription_no,
            )
            return existing
        return await self._grants.grant_from_request(request, now=now)

    async def update_order_in_transaction(
        self,
        order_no: str,
        update_order: dict[str, Any],
        *,
        new_subscription: dict[str, Any] | None = None,
        new_quota: QuotaGrantRequest | None = None,
        now: datetime | None = None,
    ) -> OrderTransactionResult:
        """Update an order, creating its subscription and grant at most once.

        Args:
            order_no: Order to update.
            update_order: Column values to set on the order.
            new_subscription: Subscription column values, de-duplicated by
                (subscription_id, payment_provider).
            new_quota: Grant to apply, de-duplicated by order_no.
            now: Grant instant (defaults to the current time).

        Returns:
            OrderTransactionResult. ``order`` is None when the order was
            already past CREATED/PENDING and the update targeted PAID.

        Raises:
            ValidationError: If order_no or update_order is missing, or the
                update names unknown fields.
            NotFoundError: If the order does not exist.
        """
        if not order_no or not update_order:
            raise ValidationError("order_no and update_order are required")
        values = _column_values(Order, update_order)
        if "order_no" in values:
            raise ValidationError("order_no cannot be updated")
        now = now or datetime.now(UTC)
        result = OrderTransactionResult()

        async with self._db.begin_nested():
            stmt = (
                select(Order)
                .where(Order.order_no == order_no)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            order = (await self._db.execute(stmt)).scalar_one_or_none()
            if order is None:
                raise NotFoundError("Order", order_no)

            if new_subscription:
                result.subscription = await self._get_or_create_subscription(
                    new_subscription
                )

            if new_quota is not None:
                request = dataclasses.replace(new_quota, order_no=order_no)
                existing = await QuotaRepository.find_grant_by_order_no(
                    self._db, order_no
                )
                result.quota = await self._grant_once(request, existing, now)

            if (
                values.get("status") == OrderStatus.PAID.value
                and order.status not in PAYABLE_ORDER_STATUSES
            ):
                logger.info(
                    "Order %s already %s, skipping update to paid",
                    order_no,
                    order.status,
                )
                return result

            for key, value in values.items():
                setattr(order, key, value)
            await self._db.flush()
            await self._db.refresh(order)
            result.order = order

        return result

    async def update_subscription_in_transaction(
        self,
        subscription_no: str,
        update_subscription: dict[str, Any],
        *,
        new_order: dict[str, Any] | None = None,
        new_quota: QuotaGrantRequest | None = None,
        now: datetime | None = None,
    ) -> OrderTransactionResult:
        """Update a subscription, creating its renewal order and grant at most once.

        Args:
            subscription_no: Subscription to update.
            update_subscription: Column values to set on the subscription.
            new_order: Renewal order column values, de-duplicated by
                (transaction_id, payment_provider).
            new_quota: Grant to apply. De-duplicated by the renewal order's
                order_no, or by (subscription_no, current_period_end)
                without an order.
            now: Grant instant (defaults to the current time).

        Returns:
            OrderTransactionResult.

        Raises:
            ValidationError: If subscription_no or update_subscription is
                missing, an update names unknown fields, or an order-less
                grant has no current_period_end.
            NotFoundError: If the subscription does not exist.
        """
        if not subscription_no or not update_subscription:
            raise ValidationError(
                "subscription_no and update_subscription are required"
            )
        values = _column_values(Subscription, update_subscription)
        if "subscription_no" in values:
            raise ValidationError("subscription_no cannot be updated")
        # Without an order, the billing period end is the only stable key
        if (
            new_quota is not None
            and not new_order
            and new_quota.current_period_end is None
        ):
            raise ValidationError(
                "Renewal grants without an order require current_period_end"
            )
        now = now or datetime.now(UTC)
        result = OrderTransactionResult()

        async with self._db.begin_nested():
            stmt = (
                select(Subscription)
                .where(Subscription.subscription_no == subscription_no)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            subscription = (await self._db.execute(stmt)).scalar_one_or_none()
            if subscription is None:
                raise NotFoundError("Subscription", subscription_no)

            if new_order:
                result.order = await self._get_or_create_order(new_order)

            if new_quota is not None:
                if result.order is not None:
                    request = dataclasses.replace(
                        new_quota,
                        order_no=result.order.order_no,
                        subscription_no=new_quota.subscription_no or subscription_no,
                    )
                    existing = await QuotaRepository.find_grant_by_order_no(
                        self._db, result.order.order_no
                    )
                else:
                    request = dataclasses.replace(
                        new_quota,
                        subscription_no=new_quota.subscription_no or subscription_no,
                    )
                    existing = await QuotaRepository.find_grant_for_subscription_period(
                        self._db, request.subscription_no, request.current_period_end
                    )
                result.quota = await self._grant_once(request, existing, now)

            for key, value in values.items():
                setattr(subscription, key, value)
            await self._db.flush()
            await self._db.refresh(subscription)
            result.subscription = subscription

        return result
