"""Quota API router.

Read-only endpoints for the billing UI: per-pool overview, remaining
balance, ledger history, and the advisory can-consume check.
All endpoints require authentication. Amounts are strings with 6 decimals.
"""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from quota_ledger.api.deps import Consumption, CurrentUserId, Overview
from quota_ledger.core.pagination import PaginationParams, pagination_params
from quota_ledger.core.responses import DataResponse, ListResponse, PaginationMeta
from quota_ledger.models.quota import (
    QuotaPoolType,
    QuotaTransaction,
    QuotaTransactionType,
)
from quota_ledger.schemas.quota import (
    CanConsumeResponse,
    QuotaOverviewResponse,
    QuotaPoolSummary,
    QuotaTransactionResponse,
    RemainingQuotaResponse,
)
from quota_ledger.services.quota_overview import QuotaPoolOverview

router = APIRouter()

# =============================================================================
# Shared types and helpers
# =============================================================================

_DECIMAL_FMT = "{:.6f}"
Pagination = Annotated[PaginationParams, Depends(pagination_params)]

PoolTypeFilter = Annotated[
    QuotaPoolType | None,
    Query(description="Filter: trial, subscription, paygo"),
]
TransactionTypeFilter = Annotated[
    QuotaTransactionType | None,
    Query(description="Filter: grant, consume"),
]
ServiceTypeParam = Annotated[
    str,
    Query(min_length=1, max_length=50, description="Service type, e.g. ai-image"),
]
SceneParam = Annotated[
    str,
    Query(max_length=50, description="Usage scene, e.g. text-to-image"),
]


def _pool_summary(pool: QuotaPoolOverview | None) -> QuotaPoolSummary | None:
    if pool is None:
        return None
    return QuotaPoolSummary(
        pool_type=pool.pool_type.value,
        measurement_type=pool.measurement_type.value,
        total_granted=_DECIMAL_FMT.format(pool.total_granted),
        total_consumed=_DECIMAL_FMT.format(pool.total_consumed),
        remaining=_DECIMAL_FMT.format(pool.remaining),
        earliest_expiry=pool.earliest_expiry,
    )


def _transaction_response(txn: QuotaTransaction) -> QuotaTransactionResponse:
    """Build QuotaTransactionResponse from ORM row."""
    return QuotaTransactionResponse(
        id=str(txn.id),
        transaction_no=txn.transaction_no,
        pool_type=txn.pool_type,
        measurement_type=txn.measurement_type,
        transaction_type=txn.transaction_type,
        transaction_scene=txn.transaction_scene,
        amount=_DECIMAL_FMT.format(txn.amount),
        remaining_amount=_DECIMAL_FMT.format(txn.remaining_amount),
        status=txn.status,
        description=txn.description,
        expires_at=txn.expires_at,
        created_at=txn.created_at,
    )


# =============================================================================
# GET /overview
# =============================================================================


@router.get("/overview")
async def get_overview(
    user_id: CurrentUserId,
    overview: Overview,
) -> DataResponse[QuotaOverviewResponse]:
    """Return per-pool balance summaries.

    A pool the user never had is null.
    """
    result = await overview.get_quota_overview(user_id)
    return DataResponse(
        data=QuotaOverviewResponse(
            trial=_pool_summary(result.trial),
            subscription=_pool_summary(result.subscription),
            paygo=_pool_summary(result.paygo),
        )
    )


# =============================================================================
# GET /remaining
# =============================================================================


@router.get("/remaining")
async def get_remaining(
    user_id: CurrentUserId,
    overview: Overview,
    pool_type: PoolTypeFilter = None,
) -> DataResponse[RemainingQuotaResponse]:
    """Return the available balance, optionally scoped to one pool."""
    now = datetime.now(UTC)
    remaining = await overview.get_remaining_quota(user_id, pool_type, now)
    return DataResponse(
        data=RemainingQuotaResponse(
            pool_type=pool_type.value if pool_type is not None else None,
            remaining=_DECIMAL_FMT.format(remaining),
            as_of=now,
        )
    )


# =============================================================================
# GET /transactions
# =============================================================================


@router.get("/transactions")
async def get_transactions(
    user_id: CurrentUserId,
    overview: Overview,
    pagination: Pagination,
    pool_type: PoolTypeFilter = None,
    transaction_type: TransactionTypeFilter = None,
) -> ListResponse[QuotaTransactionResponse]:
    """Return paginated ledger history, newest first."""
    rows, total = await overview.list_transactions(
        user_id,
        offset=pagination.offset,
        limit=pagination.limit,
        pool_type=pool_type,
        transaction_type=(
            transaction_type.value if transaction_type is not None else None
        ),
    )
    return ListResponse(
        data=[_transaction_response(row) for row in rows],
        meta=PaginationMeta(
            total=total,
            page=pagination.page,
            per_page=pagination.per_page,
        ),
    )


# =============================================================================
# GET /can-consume
# =============================================================================


@router.get("/can-consume")
async def get_can_consume(
    user_id: CurrentUserId,
    consumption: Consumption,
    service_type: ServiceTypeParam,
    scene: SceneParam = "",
) -> DataResponse[CanConsumeResponse]:
    """Advisory pre-flight check. Never fails on missing cost config."""
    allowed = await consumption.can_consume_service(
        user_id=user_id,
        service_type=service_type,
        scene=scene,
    )
    return DataResponse(
        data=CanConsumeResponse(
            service_type=service_type,
            scene=scene,
            can_consume=allowed,
        )
    )
