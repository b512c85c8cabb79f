"""Consumption engine - charges a service usage against a user's pools.

Pools are tried in fixed priority order (TRIAL, SUBSCRIPTION, PAYGO). A pool
is used only if it can cover the whole cost on its own; within the chosen
pool, grants are drained earliest-expiry-first under row locks, and one
CONSUME row records the total and a manifest of every deduction so the
charge can be refunded exactly.

Consumption joins the caller's transaction (e.g. AI task creation) inside a
SAVEPOINT, so a failed attempt rolls back its own deductions and leaves the
caller's transaction usable.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.config import settings
from quota_ledger.core.errors import (
    InsufficientQuotaError,
    QuotaRaceConditionError,
)
from quota_ledger.models.quota import (
    POOL_PRIORITY,
    ConsumedItem,
    QuotaMeasurementType,
    QuotaPoolType,
    QuotaStatus,
    QuotaTransactionType,
    quantize_amount,
)
from quota_ledger.repositories.quota_repository import QuotaRepository
from quota_ledger.services.service_cost_cache import ServiceCostResult
from quota_ledger.services.service_cost_service import ServiceCostService

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a successful consumption.

    Attributes:
        quota_id: Id of the CONSUME row (pass to refund_quota).
        transaction_no: transaction_no of the CONSUME row.
        pool_type: Pool that paid.
        measurement_type: Measurement the cost was charged in.
        cost_amount: Total cost charged (positive).
        consumed_detail: Deductions in FIFO order.
    """

    quota_id: uuid.UUID
    transaction_no: str
    pool_type: QuotaPoolType
    measurement_type: QuotaMeasurementType
    cost_amount: Decimal
    consumed_detail: tuple[ConsumedItem, ...]


@dataclass(frozen=True)
class _PoolQuote:
    """What a pool would charge right now, read without locks."""

    pool_type: QuotaPoolType
    measurement_type: QuotaMeasurementType
    required_cost: Decimal
    available: Decimal

    @property
    def sufficient(self) -> bool:
        return self.available >= self.required_cost


class QuotaConsumptionService:
    """Consumes and refunds quota.

    Args:
        db: Async database session. The caller owns the outer transaction.
        service_costs: Cost lookup collaborator.
        batch_size: Grants locked per FIFO batch.
        max_batches: Maximum FIFO batches per consumption.
    """

    def __init__(
        self,
        db: AsyncSession,
        service_costs: ServiceCostService,
        *,
        batch_size: int | None = None,
        max_batches: int | None = None,
    ) -> None:
        self._db = db
        self._service_costs = service_costs
        self._batch_size = batch_size or settings.quota_consume_batch_size
        self._max_batches = max_batches or settings.quota_consume_max_batches

    async def _quote_pool(
        self,
        user_id: uuid.UUID,
        pool_type: QuotaPoolType,
        cost: ServiceCostResult,
        now: datetime,
    ) -> _PoolQuote | None:
        """Price a cost in one pool.

        The pool's measurement type is read from the grant FIFO would draw
        from first.

        Returns:
            The quote, or None if the pool has no available grant or the
            cost in its measurement type is not positive.
        """
        head = await QuotaRepository.first_available_grant(
            self._db, user_id, pool_type.value, now
        )
        if head is None:
            return None

        measurement_type = QuotaMeasurementType(head.measurement_type)
        required_cost = quantize_amount(cost.cost_for(measurement_type))
        if required_cost <= _ZERO:
            logger.debug(
                "Skipping pool %s: non-positive %s cost for %s/%s",
                pool_type.value,
                measurement_type.value,
                cost.service_type,
                cost.scene,
            )
            return None

        available = await QuotaRepository.sum_remaining(
            self._db,
            user_id,
            now,
            pool_type=pool_type.value,
            measurement_type=measurement_type.value,
        )
        return _PoolQuote(
            pool_type=pool_type,
            measurement_type=measurement_type,
            required_cost=required_cost,
            available=available,
        )

    async def _drain_fifo(
        self,
        user_id: uuid.UUID,
        quote: _PoolQuote,
        now: datetime,
    ) -> list[ConsumedItem]:
        """Deduct the quoted cost from the pool's grants, earliest expiry first.

        Each batch re-queries from the head of the eligible set: every row of
        a finished batch has been drained to zero and no longer matches.

        Raises:
            QuotaRaceConditionError: If the eligible rows ran out before the
                cost was drained.
        """
        items: list[ConsumedItem] = []
        left = quote.required_cost

        for batch_no in range(1, self._max_batches + 1):
            grants = await QuotaRepository.lock_available_grants(
                self._db,
                user_id,
                quote.pool_type.value,
                now,
                limit=self._batch_size,
                measurement_type=quote.measurement_type.value,
            )
            if not grants:
                break

            for grant in grants:
                if left <= _ZERO:
                    break
                before = grant.remaining_amount
                taken = min(left, before)
                after = before - taken
                grant.remaining_amount = after
                left -= taken
                items.append(
                    ConsumedItem(
                        grant_id=grant.id,
                        grant_transaction_no=grant.transaction_no,
                        expires_at=grant.expires_at,
                        amount_consumed=taken,
                        amount_before=before,
                        amount_after=after,
                        batch_no=batch_no,
                    )
                )

            await self._db.flush()
            if left <= _ZERO:
                break

        if left > _ZERO:
            logger.warning(
                "Quota race detected: user=%s pool=%s undrained=%s of %s",
                user_id,
                quote.pool_type.value,
                left,
                quote.required_cost,
            )
            raise QuotaRaceConditionError(quote.pool_type.value, left)
        return items

    async def consume_quota(
        self,
        *,
        user_id: uuid.UUID,
        service_type: str,
        scene: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        user_email: str | None = None,
        now: datetime | None = None,
    ) -> ConsumeResult:
        """Charge one service usage.

        The cost is resolved before any row is locked. Pools are then tried
        in priority order; the first pool whose balance covers the full cost
        pays for it. A race detected while draining aborts the whole attempt
        without falling through to the next pool.

        Args:
            user_id: Consuming user.
            service_type: Service identifier (ai-image, ...).
            scene: Usage scene (text-to-image, ...).
            description: Stored on the CONSUME row. Defaults to
                "Consume for <service_type>/<scene>".
            metadata: Free-form JSON stored on the CONSUME row.
            user_email: Email snapshot.
            now: Evaluation instant (defaults to the current time).

        Returns:
            ConsumeResult describing the CONSUME row.

        Raises:
            CostNotConfiguredError: If no cost entry matches.
            InsufficientQuotaError: If no single pool covers the cost.
            QuotaRaceConditionError: If a concurrent consumer drained the
                chosen pool mid-walk (retryable).
        """
        cost = await self._service_costs.get_cost(service_type, scene)
        now = now or datetime.now(UTC)

        async with self._db.begin_nested():
            for pool_type in POOL_PRIORITY:
                quote = await self._quote_pool(user_id, pool_type, cost, now)
                if quote is None:
                    continue
                if not quote.sufficient:
                    logger.debug(
                        "Pool %s insufficient for user=%s: %s < %s",
                        pool_type.value,
                        user_id,
                        quote.available,
                        quote.required_cost,
                    )
                    continue

                items = await self._drain_fifo(user_id, quote, now)
                consume = await QuotaRepository.create(
                    self._db,
                    user_id=user_id,
                    user_email=user_email,
                    pool_type=quote.pool_type.value,
                    measurement_type=quote.measurement_type.value,
                    transaction_type=QuotaTransactionType.CONSUME.value,
                    transaction_scene=service_type,
                    amount=-quote.required_cost,
                    remaining_amount=_ZERO,
                    status=QuotaStatus.ACTIVE.value,
                    description=description
                    or f"Consume for {service_type}/{scene}",
                    consumed_detail=[item.to_dict() for item in items],
                    extra_metadata=metadata,
                )
                logger.info(
                    "Quota consumed: user=%s pool=%s cost=%s %s grants=%d txn=%s",
                    user_id,
                    quote.pool_type.value,
                    quote.required_cost,
                    quote.measurement_type.value,
                    len(items),
                    consume.transaction_no,
                )
                return ConsumeResult(
                    quota_id=consume.id,
                    transaction_no=consume.transaction_no,
                    pool_type=quote.pool_type,
                    measurement_type=quote.measurement_type,
                    cost_amount=quote.required_cost,
                    consumed_detail=tuple(items),
                )

        raise InsufficientQuotaError(service_type, scene)

    async def can_consume_service(
        self,
        *,
        user_id: uuid.UUID,
        service_type: str,
        scene: str,
        now: datetime | None = None,
    ) -> bool:
        """Advisory check: could any single pool cover the cost right now?

        Takes no locks and writes nothing, so the answer may be stale by the
        time consume_quota runs. Never raises.
        """
        try:
            cost = await self._service_costs.get_cost(service_type, scene)
            now = now or datetime.now(UTC)
            for pool_type in POOL_PRIORITY:
                quote = await self._quote_pool(user_id, pool_type, cost, now)
                if quote is not None and quote.sufficient:
                    return True
            return False
        except Exception:
            logger.warning(
                "can_consume_service failed for user=%s %s/%s",
                user_id,
                service_type,
                scene,
                exc_info=True,
            )
            return False

    async def refund_quota(self, consume_transaction_id: uuid.UUID) -> bool:
        """Reverse one CONSUME row.

        Adds every manifest amount back to its grant, whatever the grant's
        current status or expiry, then marks the CONSUME row DELETED. The
        row is locked first so duplicate concurrent refunds apply once.

        Args:
            consume_transaction_id: Id returned as ConsumeResult.quota_id.

        Returns:
            True if the refund was applied, False if the row is missing,
            not a CONSUME row, or already reversed.
        """
        async with self._db.begin_nested():
            txn = await QuotaRepository.get_by_id(
                self._db, consume_transaction_id, for_update=True
            )
            if (
                txn is None
                or txn.transaction_type != QuotaTransactionType.CONSUME
                or txn.status != QuotaStatus.ACTIVE
            ):
                logger.debug(
                    "Refund no-op for %s: missing or not an active consume",
                    consume_transaction_id,
                )
                return False

            for item in txn.consumed_items:
                if item.amount_consumed <= _ZERO:
                    continue
                restored = await QuotaRepository.restore_remaining(
                    self._db, item.grant_id, item.amount_consumed
                )
                if restored is None:
                    logger.warning(
                        "Refund of %s: grant %s no longer exists",
                        txn.transaction_no,
                        item.grant_id,
                    )

            await QuotaRepository.update_status(
                self._db, txn, QuotaStatus.DELETED.value
            )

        logger.info(
            "Quota refunded: user=%s amount=%s %s txn=%s",
            txn.user_id,
            -txn.amount,
            txn.measurement_type,
            txn.transaction_no,
        )
        return True
