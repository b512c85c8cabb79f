"""Quota API response schemas.

Response models for the billing UI endpoints under /api/v1/quota.
All amounts are strings with 6 decimal places.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

# =============================================================================
# Overview
# =============================================================================


class QuotaPoolSummary(BaseModel):
    """Balance summary for one pool.

    Attributes:
        pool_type: trial, subscription or paygo.
        measurement_type: dollar or unit.
        total_granted: Sum of active, non-expired grant amounts.
        total_consumed: total_granted - remaining.
        remaining: Available balance.
        earliest_expiry: Soonest future expiry among grants with balance.
    """

    model_config = ConfigDict(extra="forbid")

    pool_type: str
    measurement_type: str
    total_granted: str
    total_consumed: str
    remaining: str
    earliest_expiry: datetime | None = None


class QuotaOverviewResponse(BaseModel):
    """Response for GET /api/v1/quota/overview.

    A pool the user never had is null rather than zeroed.
    """

    model_config = ConfigDict(extra="forbid")

    trial: QuotaPoolSummary | None = None
    subscription: QuotaPoolSummary | None = None
    paygo: QuotaPoolSummary | None = None


# =============================================================================
# Balance / affordability
# =============================================================================


class RemainingQuotaResponse(BaseModel):
    """Response for GET /api/v1/quota/remaining.

    Attributes:
        pool_type: Pool the balance is scoped to, or None for all pools.
        remaining: Available balance with 6 decimal places.
        as_of: When the balance was read.
    """

    model_config = ConfigDict(extra="forbid")

    pool_type: str | None = None
    remaining: str
    as_of: datetime


class CanConsumeResponse(BaseModel):
    """Response for GET /api/v1/quota/can-consume.

    Advisory only: the charge itself re-checks under row locks.
    """

    model_config = ConfigDict(extra="forbid")

    service_type: str
    scene: str
    can_consume: bool


# =============================================================================
# History
# =============================================================================


class QuotaTransactionResponse(BaseModel):
    """Response item for GET /api/v1/quota/transactions.

    Attributes:
        id: Row UUID as string.
        transaction_no: Human-referenceable transaction number.
        pool_type: Pool of the row.
        measurement_type: Measurement of the amount.
        transaction_type: grant or consume.
        transaction_scene: Grant scene or consumed service type.
        amount: Signed amount with 6 decimal places.
        remaining_amount: Live balance (grants) with 6 decimal places.
        status: active, expired or deleted.
        description: Row description.
        expires_at: Expiry, None for never.
        created_at: When the row was written.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    transaction_no: str
    pool_type: str
    measurement_type: str
    transaction_type: str
    transaction_scene: str | None = None
    amount: str
    remaining_amount: str
    status: str
    description: str | None = None
    expires_at: datetime | None = None
    created_at: datetime
