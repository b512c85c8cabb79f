"""Grant engine - adds quota to a user's pools.

Grants come from subscription renewals, one-time purchases, the sign-up
trial, and admin gifts. Each grant is one GRANT row with its own expiry and
remaining balance.

grant_quota performs no idempotency check. Callers that may be retried
(payment webhooks) go through OrderTransactionService, which checks for an
existing grant by order/subscription before calling it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.config import settings
from quota_ledger.core.errors import InvalidAmountError, ValidationError
from quota_ledger.models.quota import (
    QuotaMeasurementType,
    QuotaPoolType,
    QuotaStatus,
    QuotaTransaction,
    QuotaTransactionScene,
    QuotaTransactionType,
    quantize_amount,
)
from quota_ledger.models.user import User
from quota_ledger.repositories.quota_repository import QuotaRepository

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def calculate_expiration_time(
    valid_days: int | None,
    current_period_end: datetime | None,
    now: datetime,
) -> datetime | None:
    """Compute a grant's expiry.

    A billing period end, when given, is used exactly. Otherwise a
    non-positive validity means the grant never expires.

    Args:
        valid_days: Validity in days.
        current_period_end: End of the subscription billing period.
        now: Grant instant.

    Returns:
        Expiry instant, or None for never.
    """
    if current_period_end is not None:
        return current_period_end
    if not valid_days or valid_days <= 0:
        return None
    return now + timedelta(days=valid_days)


def to_amount(value: Decimal | int | float | str) -> Decimal:
    """Convert an incoming amount to a Decimal at ledger scale.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return quantize_amount(amount)


def _parse_enum(enum_cls: type, value: Any, field: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            details=[{"field": field, "value": str(value)}],
        ) from exc


@dataclass(frozen=True)
class QuotaGrantRequest:
    """A grant to apply, described without executing it.

    Attributes:
        user_id: Receiving user.
        pool_type: Target pool.
        measurement_type: Measurement of the granted amount.
        amount: Amount to grant (must be positive).
        scene: Grant scene (payment, subscription, renewal, gift, ...).
        valid_days: Validity in days (<= 0 = never expires).
        current_period_end: Billing period end; wins over valid_days.
        order_no: Originating order.
        subscription_no: Originating subscription.
        description: Human-readable description.
        user_email: Email snapshot.
    """

    user_id: uuid.UUID
    pool_type: QuotaPoolType
    measurement_type: QuotaMeasurementType
    amount: Decimal
    scene: str
    valid_days: int = 0
    current_period_end: datetime | None = None
    order_no: str | None = None
    subscription_no: str | None = None
    description: str | None = None
    user_email: str | None = None

    def expires_at(self, now: datetime) -> datetime | None:
        return calculate_expiration_time(
            self.valid_days, self.current_period_end, now
        )


class QuotaGrantService:
    """Creates GRANT rows.

    Args:
        db: Async database session. The caller owns the transaction.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def grant_quota(
        self,
        *,
        user_id: uuid.UUID,
        pool_type: QuotaPoolType | str,
        measurement_type: QuotaMeasurementType | str,
        amount: Decimal | int | float | str,
        scene: str,
        valid_days: int | None = 0,
        current_period_end: datetime | None = None,
        order_no: str | None = None,
        subscription_no: str | None = None,
        description: str | None = None,
        user_email: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> QuotaTransaction:
        """Insert one ACTIVE GRANT row with remaining_amount = amount.

        Args:
            user_id: Receiving user.
            pool_type: Target pool.
            measurement_type: Measurement of the amount.
            amount: Amount to grant.
            scene: Grant scene.
            valid_days: Validity in days (<= 0 = never expires).
            current_period_end: Billing period end; used as the expiry when set.
            order_no: Originating order.
            subscription_no: Originating subscription.
            description: Human-readable description.
            user_email: Email snapshot.
            metadata: Free-form JSON.
            now: Grant instant (defaults to the current time).

        Returns:
            The created GRANT row.

        Raises:
            InvalidAmountError: If amount <= 0 at ledger scale.
            ValidationError: If pool or measurement type is unknown.
        """
        pool = _parse_enum(QuotaPoolType, pool_type, "pool_type")
        measurement = _parse_enum(
            QuotaMeasurementType, measurement_type, "measurement_type"
        )
        grant_amount = to_amount(amount)
        if grant_amount <= _ZERO:
            raise InvalidAmountError(grant_amount)

        now = now or datetime.now(UTC)
        expires_at = calculate_expiration_time(valid_days, current_period_end, now)

        txn = await QuotaRepository.create(
            self._db,
            user_id=user_id,
            user_email=user_email,
            pool_type=pool.value,
            measurement_type=measurement.value,
            transaction_type=QuotaTransactionType.GRANT.value,
            transaction_scene=scene,
            amount=grant_amount,
            remaining_amount=grant_amount,
            status=QuotaStatus.ACTIVE.value,
            expires_at=expires_at,
            order_no=order_no,
            subscription_no=subscription_no,
            description=description,
            extra_metadata=metadata,
        )
        logger.info(
            "Quota granted: user=%s pool=%s amount=%s %s expires_at=%s txn=%s",
            user_id,
            pool.value,
            grant_amount,
            measurement.value,
            expires_at,
            txn.transaction_no,
        )
        return txn

    async def grant_from_request(
        self,
        request: QuotaGrantRequest,
        *,
        now: datetime | None = None,
    ) -> QuotaTransaction:
        """Execute a QuotaGrantRequest."""
        return await self.grant_quota(
            user_id=request.user_id,
            pool_type=request.pool_type,
            measurement_type=request.measurement_type,
            amount=request.amount,
            scene=request.scene,
            valid_days=request.valid_days,
            current_period_end=request.current_period_end,
            order_no=request.order_no,
            subscription_no=request.subscription_no,
            description=request.description,
            user_email=request.user_email,
            now=now,
        )

    async def grant_quota_for_new_user(
        self,
        user: User,
        *,
        now: datetime | None = None,
    ) -> QuotaTransaction | None:
        """Apply the sign-up grant configured by the initial_quota_* settings.

        Returns:
            The GRANT row, or None when the sign-up grant is disabled or its
            amount is not positive.
        """
        if not settings.initial_quota_enabled:
            return None
        amount = to_amount(settings.initial_quota_amount)
        if amount <= _ZERO:
            return None

        return await self.grant_quota(
            user_id=user.id,
            user_email=user.email,
            pool_type=settings.initial_quota_pool_type,
            measurement_type=settings.initial_quota_measurement_type,
            amount=amount,
            scene=QuotaTransactionScene.GIFT.value,
            valid_days=settings.initial_quota_valid_days,
            description=settings.initial_quota_description,
            now=now,
        )

    async def grant_quota_for_user(
        self,
        user: User,
        *,
        pool_type: QuotaPoolType | str,
        measurement_type: QuotaMeasurementType | str,
        amount: Decimal | int | float | str,
        valid_days: int | None = 0,
        description: str | None = None,
        now: datetime | None = None,
    ) -> QuotaTransaction | None:
        """Admin gift grant.

        A non-positive amount is skipped rather than rejected; negative
        valid_days is treated as 0 (never expires).

        Returns:
            The GRANT row, or None when amount <= 0.
        """
        grant_amount = to_amount(amount)
        if grant_amount <= _ZERO:
            logger.info(
                "Gift grant skipped for user=%s: non-positive amount %s",
                user.id,
                grant_amount,
            )
            return None

        return await self.grant_quota(
            user_id=user.id,
            user_email=user.email,
            pool_type=pool_type,
            measurement_type=measurement_type,
            amount=grant_amount,
            scene=QuotaTransactionScene.GIFT.value,
            valid_days=max(valid_days or 0, 0),
            description=description or "Admin gift",
            now=now,
        )
