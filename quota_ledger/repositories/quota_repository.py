"""Repository for quota ledger rows.

Provides database access for the quota_transactions table: inserts, the
eligibility aggregates that drive pool selection and the overview, and the
row-locked FIFO fetch used by consumption.

Every query that depends on expiry takes ``now`` explicitly so callers (and
tests) pin a single instant for a whole operation.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import ColumnElement, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.models.quota import (
    QuotaStatus,
    QuotaTransaction,
    QuotaTransactionType,
    generate_transaction_no,
)

_ZERO = Decimal("0")


def _not_expired(now: datetime) -> ColumnElement[bool]:
    return or_(
        QuotaTransaction.expires_at.is_(None),
        QuotaTransaction.expires_at > now,
    )


def _active_grant_conditions(
    user_id: uuid.UUID,
    pool_type: str | None,
    now: datetime,
) -> list[ColumnElement[bool]]:
    """ACTIVE, non-expired GRANT rows of a user (optionally one pool)."""
    conditions = [
        QuotaTransaction.user_id == user_id,
        QuotaTransaction.transaction_type == QuotaTransactionType.GRANT.value,
        QuotaTransaction.status == QuotaStatus.ACTIVE.value,
        _not_expired(now),
    ]
    if pool_type is not None:
        conditions.append(QuotaTransaction.pool_type == pool_type)
    return conditions


def _available_grant_conditions(
    user_id: uuid.UUID,
    pool_type: str | None,
    now: datetime,
    measurement_type: str | None = None,
) -> list[ColumnElement[bool]]:
    """Grants that can still be consumed from: active grants with balance left."""
    conditions = _active_grant_conditions(user_id, pool_type, now)
    conditions.append(QuotaTransaction.remaining_amount > 0)
    if measurement_type is not None:
        conditions.append(QuotaTransaction.measurement_type == measurement_type)
    return conditions


# Earliest expiry first, never-expiring grants last
_FIFO_ORDER = (
    QuotaTransaction.expires_at.asc().nulls_last(),
    QuotaTransaction.created_at.asc(),
    QuotaTransaction.id.asc(),
)


class QuotaRepository:
    """Stateless repository for QuotaTransaction rows.

    All methods are static with no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        pool_type: str,
        measurement_type: str,
        transaction_type: str,
        amount: Decimal,
        remaining_amount: Decimal = _ZERO,
        status: str = QuotaStatus.ACTIVE.value,
        transaction_scene: str | None = None,
        expires_at: datetime | None = None,
        order_no: str | None = None,
        subscription_no: str | None = None,
        user_email: str | None = None,
        description: str | None = None,
        consumed_detail: list[dict[str, Any]] | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> QuotaTransaction:
        """Insert a ledger row.

        Args:
            db: Async database session.
            user_id: Account owner.
            pool_type: QuotaPoolType value.
            measurement_type: QuotaMeasurementType value.
            transaction_type: QuotaTransactionType value.
            amount: Signed amount (+grant, -consume).
            remaining_amount: Live balance (GRANT rows only).
            status: QuotaStatus value.
            transaction_scene: Grant scene or consumed service type.
            expires_at: Expiry instant, None for never.
            order_no: Originating order number.
            subscription_no: Originating subscription number.
            user_email: Email snapshot.
            description: Human-readable description.
            consumed_detail: Reversal manifest (CONSUME rows only).
            extra_metadata: Free-form JSON.

        Returns:
            Created QuotaTransaction with database-generated fields.
        """
        txn = QuotaTransaction(
            user_id=user_id,
            user_email=user_email,
            pool_type=pool_type,
            measurement_type=measurement_type,
            transaction_type=transaction_type,
            transaction_scene=transaction_scene,
            transaction_no=generate_transaction_no(),
            amount=amount,
            remaining_amount=remaining_amount,
            status=status,
            expires_at=expires_at,
            order_no=order_no,
            subscription_no=subscription_no,
            description=description,
            consumed_detail=consumed_detail,
            extra_metadata=extra_metadata,
        )
        db.add(txn)
        await db.flush()
        await db.refresh(txn)
        return txn

    @staticmethod
    async def get_by_id(
        db: AsyncSession,
        transaction_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> QuotaTransaction | None:
        """Fetch one row by id, optionally taking a row lock.

        Args:
            db: Async database session.
            transaction_id: Row id.
            for_update: Lock the row (SELECT ... FOR UPDATE) and reload it.

        Returns:
            The row, or None if not found.
        """
        stmt = select(QuotaTransaction).where(QuotaTransaction.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def find_grant_by_order_no(
        db: AsyncSession,
        order_no: str,
    ) -> QuotaTransaction | None:
        """Return the GRANT row created for an order, if any."""
        stmt = (
            select(QuotaTransaction)
            .where(
                QuotaTransaction.order_no == order_no,
                QuotaTransaction.transaction_type
                == QuotaTransactionType.GRANT.value,
            )
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def find_grant_for_subscription_period(
        db: AsyncSession,
        subscription_no: str,
        period_end: datetime,
    ) -> QuotaTransaction | None:
        """Return the GRANT row of a subscription billing period, if any.

        A subscription grant expires at its period end, so
        (subscription_no, period_end) identifies one period's grant.
        """
        stmt = (
            select(QuotaTransaction)
            .where(
                QuotaTransaction.subscription_no == subscription_no,
                QuotaTransaction.transaction_type
                == QuotaTransactionType.GRANT.value,
                QuotaTransaction.expires_at == period_end,
            )
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def count_by_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        pool_type: str | None = None,
        transaction_type: str | None = None,
        status: str | None = None,
    ) -> int:
        """Count a user's ledger rows matching the optional filters."""
        conditions = _history_conditions(user_id, pool_type, transaction_type, status)
        stmt = select(func.count()).select_from(QuotaTransaction).where(*conditions)
        result = await db.execute(stmt)
        return result.scalar_one()

    @staticmethod
    async def list_by_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 50,
        pool_type: str | None = None,
        transaction_type: str | None = None,
        status: str | None = None,
    ) -> tuple[list[QuotaTransaction], int]:
        """List a user's ledger rows, newest first, with pagination.

        Args:
            db: Async database session.
            user_id: User to query rows for.
            offset: Number of records to skip.
            limit: Maximum records to return.
            pool_type: Optional pool filter.
            transaction_type: Optional grant/consume filter.
            status: Optional status filter.

        Returns:
            Tuple of (rows list, total count).
        """
        total = await QuotaRepository.count_by_user(
            db,
            user_id,
            pool_type=pool_type,
            transaction_type=transaction_type,
            status=status,
        )
        conditions = _history_conditions(user_id, pool_type, transaction_type, status)
        data_stmt = (
            select(QuotaTransaction)
            .where(*conditions)
            .order_by(
                QuotaTransaction.created_at.desc(),
                QuotaTransaction.transaction_no.desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(data_stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def first_available_grant(
        db: AsyncSession,
        user_id: uuid.UUID,
        pool_type: str,
        now: datetime,
    ) -> QuotaTransaction | None:
        """Return the grant FIFO consumption would draw from first.

        Used to read a pool's current measurement type without locking.
        """
        stmt = (
            select(QuotaTransaction)
            .where(*_available_grant_conditions(user_id, pool_type, now))
            .order_by(*_FIFO_ORDER)
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def sum_remaining(
        db: AsyncSession,
        user_id: uuid.UUID,
        now: datetime,
        *,
        pool_type: str | None = None,
        measurement_type: str | None = None,
    ) -> Decimal:
        """Sum remaining_amount over available grants.

        Args:
            db: Async database session.
            user_id: Account owner.
            now: Evaluation instant for expiry.
            pool_type: Restrict to one pool (None = all pools).
            measurement_type: Restrict to one measurement type.

        Returns:
            Total remaining balance (0 when there are no rows).
        """
        stmt = select(
            func.coalesce(func.sum(QuotaTransaction.remaining_amount), 0)
        ).where(
            *_available_grant_conditions(user_id, pool_type, now, measurement_type)
        )
        result = await db.execute(stmt)
        return Decimal(result.scalar_one())

    @staticmethod
    async def sum_granted(
        db: AsyncSession,
        user_id: uuid.UUID,
        pool_type: str,
        now: datetime,
    ) -> Decimal:
        """Sum the original amount over ACTIVE, non-expired grants of a pool.

        Fully drained grants still count; expired ones do not.
        """
        stmt = select(func.coalesce(func.sum(QuotaTransaction.amount), 0)).where(
            *_active_grant_conditions(user_id, pool_type, now)
        )
        result = await db.execute(stmt)
        return Decimal(result.scalar_one())

    @staticmethod
    async def earliest_expiry(
        db: AsyncSession,
        user_id: uuid.UUID,
        pool_type: str,
        now: datetime,
    ) -> datetime | None:
        """Soonest future expiry among available grants of a pool.

        Never-expiring grants are ignored; None when no grant with balance
        has an expiry.
        """
        stmt = select(func.min(QuotaTransaction.expires_at)).where(
            *_available_grant_conditions(user_id, pool_type, now),
            QuotaTransaction.expires_at.is_not(None),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def latest_grant(
        db: AsyncSession,
        user_id: uuid.UUID,
        pool_type: str,
        now: datetime,
    ) -> QuotaTransaction | None:
        """Most recently created ACTIVE, non-expired grant of a pool."""
        stmt = (
            select(QuotaTransaction)
            .where(*_active_grant_conditions(user_id, pool_type, now))
            .order_by(QuotaTransaction.created_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def lock_available_grants(
        db: AsyncSession,
        user_id: uuid.UUID,
        pool_type: str,
        now: datetime,
        *,
        limit: int,
        measurement_type: str | None = None,
    ) -> list[QuotaTransaction]:
        """Lock and return the next batch of available grants in FIFO order.

        SELECT ... FOR UPDATE blocks until concurrent consumers holding the
        same rows commit, then re-reads them (populate_existing), so the
        caller always deducts from the committed remaining_amount.

        Args:
            db: Async database session.
            user_id: Account owner.
            pool_type: Pool to lock grants in.
            now: Evaluation instant for expiry.
            limit: Batch size.
            measurement_type: Restrict to one measurement type.

        Returns:
            Up to ``limit`` locked rows, earliest expiry first.
        """
        stmt = (
            select(QuotaTransaction)
            .where(
                *_available_grant_conditions(
                    user_id, pool_type, now, measurement_type
                )
            )
            .order_by(*_FIFO_ORDER)
            .limit(limit)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def restore_remaining(
        db: AsyncSession,
        grant_id: uuid.UUID,
        amount: Decimal,
    ) -> Decimal | None:
        """Atomically add ``amount`` back to a grant's remaining balance.

        Applies regardless of the grant's current status or expiry. The
        result is capped at the grant's original amount.

        Args:
            db: Async database session.
            grant_id: GRANT row to restore.
            amount: Amount to add back (positive).

        Returns:
            New remaining_amount, or None if no such GRANT row exists.

        Raises:
            ValueError: If amount is not positive.
        """
        if amount <= _ZERO:
            raise ValueError("restore_remaining amount must be positive")
        stmt = (
            update(QuotaTransaction)
            .where(
                QuotaTransaction.id == grant_id,
                QuotaTransaction.transaction_type
                == QuotaTransactionType.GRANT.value,
            )
            .values(
                remaining_amount=func.least(
                    QuotaTransaction.remaining_amount + amount,
                    QuotaTransaction.amount,
                )
            )
            .returning(QuotaTransaction.remaining_amount)
            .execution_options(synchronize_session="fetch")
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def update_status(
        db: AsyncSession,
        txn: QuotaTransaction,
        status: str,
    ) -> QuotaTransaction:
        """Set a row's status and flush."""
        txn.status = status
        await db.flush()
        return txn


def _history_conditions(
    user_id: uuid.UUID,
    pool_type: str | None,
    transaction_type: str | None,
    status: str | None,
) -> list[ColumnElement[bool]]:
    conditions = [QuotaTransaction.user_id == user_id]
    if pool_type is not None:
        conditions.append(QuotaTransaction.pool_type == pool_type)
    if transaction_type is not None:
        conditions.append(QuotaTransaction.transaction_type == transaction_type)
    if status is not None:
        conditions.append(QuotaTransaction.status == status)
    return conditions
