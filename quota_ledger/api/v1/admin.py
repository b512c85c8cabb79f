"""Admin API router.

Endpoints for manual quota gifts and service cost management.

All endpoints require the AdminUser dependency.
"""

import uuid
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Query, status

from quota_ledger.api.deps import AdminUser, CostCache, DbSession, Grants, ServiceCosts
from quota_ledger.core.errors import NotFoundError, ValidationError
from quota_ledger.core.responses import DataResponse
from quota_ledger.models.quota import QuotaTransaction
from quota_ledger.models.service_cost import ServiceCost
from quota_ledger.models.user import User
from quota_ledger.schemas.admin import (
    CacheRefreshResponse,
    QuotaGrantCreate,
    QuotaGrantResponse,
    ServiceCostResponse,
    ServiceCostUpsert,
)

router = APIRouter()

# =============================================================================
# Shared types and helpers
# =============================================================================

_DECIMAL_FMT = "{:.6f}"

ServiceTypeFilter = Annotated[
    str | None,
    Query(max_length=50, description="Filter by service type"),
]
IsActiveFilter = Annotated[
    bool | None,
    Query(description="Filter by active status"),
]


def _grant_response(row: QuotaTransaction) -> QuotaGrantResponse:
    """Build QuotaGrantResponse from ORM row."""
    return QuotaGrantResponse(
        id=str(row.id),
        transaction_no=row.transaction_no,
        user_id=str(row.user_id),
        pool_type=row.pool_type,
        measurement_type=row.measurement_type,
        amount=_DECIMAL_FMT.format(row.amount),
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _cost_response(row: ServiceCost) -> ServiceCostResponse:
    """Build ServiceCostResponse from ORM row."""
    return ServiceCostResponse(
        id=str(row.id),
        service_type=row.service_type,
        scene=row.scene,
        dollar_cost=_DECIMAL_FMT.format(row.dollar_cost),
        unit_cost=_DECIMAL_FMT.format(row.unit_cost),
        display_name=row.display_name,
        description=row.description,
        is_active=row.is_active,
        updated_at=row.updated_at,
    )


# =============================================================================
# Gift grants
# =============================================================================


@router.post("/users/{user_id}/quota-grants", status_code=status.HTTP_201_CREATED)
async def create_quota_grant(
    _admin: AdminUser,
    db: DbSession,
    grants: Grants,
    user_id: uuid.UUID,
    body: QuotaGrantCreate,
) -> DataResponse[QuotaGrantResponse]:
    """Gift quota to a user (scene GIFT)."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", str(user_id))

    row = await grants.grant_quota_for_user(
        user,
        pool_type=body.pool_type,
        measurement_type=body.measurement_type,
        amount=Decimal(body.amount),
        valid_days=body.valid_days,
        description=body.description,
    )
    if row is None:
        # Positive at request scale but zero at ledger scale (e.g. "0.0000001")
        raise ValidationError("amount rounds to zero at 6 decimal places")
    await db.commit()
    return DataResponse(data=_grant_response(row))


# =============================================================================
# Service costs
# =============================================================================


@router.get("/service-costs")
async def list_service_costs(
    _admin: AdminUser,
    service_costs: ServiceCosts,
    service_type: ServiceTypeFilter = None,
    is_active: IsActiveFilter = None,
) -> DataResponse[list[ServiceCostResponse]]:
    """List service cost rows, active and inactive."""
    rows = await service_costs.list_for_admin(
        service_type=service_type, is_active=is_active
    )
    return DataResponse(data=[_cost_response(row) for row in rows])


@router.put("/service-costs")
async def upsert_service_cost(
    _admin: AdminUser,
    db: DbSession,
    service_costs: ServiceCosts,
    body: ServiceCostUpsert,
) -> DataResponse[ServiceCostResponse]:
    """Create or update the cost of (service_type, scene)."""
    row = await service_costs.upsert(
        service_type=body.service_type,
        scene=body.scene,
        dollar_cost=Decimal(body.dollar_cost),
        unit_cost=Decimal(body.unit_cost),
        display_name=body.display_name,
        description=body.description,
        is_active=body.is_active,
    )
    await db.commit()
    return DataResponse(data=_cost_response(row))


@router.post("/service-costs/cache-refresh")
async def refresh_service_cost_cache(
    _admin: AdminUser,
    cache: CostCache,
) -> DataResponse[CacheRefreshResponse]:
    """Drop the cached cost table so the next lookup reloads it."""
    cache.invalidate()
    stats = cache.get_stats()
    return DataResponse(
        data=CacheRefreshResponse(
            message="Service cost cache invalidated",
            ttl_seconds=stats.ttl_seconds,
            invalidations=stats.invalidations,
        )
    )
