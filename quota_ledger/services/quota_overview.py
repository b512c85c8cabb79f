"""Overview/query engine - read-only balance aggregates.

Feeds the billing UI. Reads take no locks and may be slightly stale under
concurrent consumption.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.models.quota import (
    POOL_PRIORITY,
    QuotaMeasurementType,
    QuotaPoolType,
    QuotaTransaction,
)
from quota_ledger.repositories.quota_repository import QuotaRepository

_ZERO = Decimal("0")


@dataclass(frozen=True)
class QuotaPoolOverview:
    """Balance summary of one pool.

    total_granted - total_consumed == remaining always holds.

    Attributes:
        pool_type: Pool summarized.
        measurement_type: Measurement of the most recent active grant.
        total_granted: Sum of amount over ACTIVE, non-expired grants.
        total_consumed: total_granted - remaining.
        remaining: Sum of remaining_amount over available grants.
        earliest_expiry: Soonest future expiry among grants with balance.
    """

    pool_type: QuotaPoolType
    measurement_type: QuotaMeasurementType
    total_granted: Decimal
    total_consumed: Decimal
    remaining: Decimal
    earliest_expiry: datetime | None


@dataclass(frozen=True)
class QuotaOverview:
    """Per-pool summaries. A pool the user never had is None."""

    trial: QuotaPoolOverview | None
    subscription: QuotaPoolOverview | None
    paygo: QuotaPoolOverview | None

    def pools(self) -> dict[QuotaPoolType, QuotaPoolOverview | None]:
        return {
            QuotaPoolType.TRIAL: self.trial,
            QuotaPoolType.SUBSCRIPTION: self.subscription,
            QuotaPoolType.PAYGO: self.paygo,
        }


class QuotaOverviewService:
    """Read-side aggregates over the ledger.

    Args:
        db: Async database session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_pool_overview(
        self,
        user_id: uuid.UUID,
        pool_type: QuotaPoolType,
        now: datetime,
    ) -> QuotaPoolOverview | None:
        """Summarize one pool.

        Returns:
            The summary, or None when nothing has been granted into the pool
            (or all of it has expired).
        """
        total_granted = await QuotaRepository.sum_granted(
            self._db, user_id, pool_type.value, now
        )
        if total_granted <= _ZERO:
            return None

        remaining = await QuotaRepository.sum_remaining(
            self._db, user_id, now, pool_type=pool_type.value
        )
        earliest_expiry = await QuotaRepository.earliest_expiry(
            self._db, user_id, pool_type.value, now
        )
        latest = await QuotaRepository.latest_grant(
            self._db, user_id, pool_type.value, now
        )
        measurement_type = (
            QuotaMeasurementType(latest.measurement_type)
            if latest is not None
            else QuotaMeasurementType.UNIT
        )

        return QuotaPoolOverview(
            pool_type=pool_type,
            measurement_type=measurement_type,
            total_granted=total_granted,
            total_consumed=total_granted - remaining,
            remaining=remaining,
            earliest_expiry=earliest_expiry,
        )

    async def get_quota_overview(
        self,
        user_id: uuid.UUID,
        now: datetime | None = None,
    ) -> QuotaOverview:
        """Summarize every pool of a user.

        Pools are aggregated one after another on the same session.
        """
        now = now or datetime.now(UTC)
        summaries = {}
        for pool_type in POOL_PRIORITY:
            summaries[pool_type] = await self.get_pool_overview(
                user_id, pool_type, now
            )
        return QuotaOverview(
            trial=summaries[QuotaPoolType.TRIAL],
            subscription=summaries[QuotaPoolType.SUBSCRIPTION],
            paygo=summaries[QuotaPoolType.PAYGO],
        )

    async def get_remaining_quota(
        self,
        user_id: uuid.UUID,
        pool_type: QuotaPoolType | None = None,
        now: datetime | None = None,
    ) -> Decimal:
        """Total available balance, optionally scoped to one pool."""
        return await QuotaRepository.sum_remaining(
            self._db,
            user_id,
            now or datetime.now(UTC),
            pool_type=pool_type.value if pool_type is not None else None,
        )

    async def list_transactions(
        self,
        user_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 20,
        pool_type: QuotaPoolType | None = None,
        transaction_type: str | None = None,
    ) -> tuple[list[QuotaTransaction], int]:
        """Ledger history, newest first.

        Returns:
            Tuple of (rows, total count).
        """
        return await QuotaRepository.list_by_user(
            self._db,
            user_id,
            offset=offset,
            limit=limit,
            pool_type=pool_type.value if pool_type is not None else None,
            transaction_type=transaction_type,
        )
