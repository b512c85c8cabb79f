"""Shared dependencies for API endpoints.

Identity: local mode uses DEFAULT_USER_ID; hosted mode validates the JWT
session cookie issued by the external auth system.
Ledger services are built per request on the request's database session and
share one process-wide service cost cache.
"""

import uuid
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.config import settings
from quota_ledger.core.database import get_db
from quota_ledger.core.errors import AdminRequiredError
from quota_ledger.models import User
from quota_ledger.services.quota_consumption import QuotaConsumptionService
from quota_ledger.services.quota_grants import QuotaGrantService
from quota_ledger.services.quota_overview import QuotaOverviewService
from quota_ledger.services.service_cost_cache import ServiceCostCache
from quota_ledger.services.service_cost_service import ServiceCostService

# Generic 401 detail.
# Security: Never include specifics about WHY auth failed (expired, bad sig, etc.).
_UNAUTHORIZED_DETAIL = {
    "code": "UNAUTHORIZED",
    "message": "Authentication required",
}

_service_cost_cache = ServiceCostCache(
    ttl_seconds=settings.service_cost_cache_ttl_seconds,
)


async def get_current_user_id(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> uuid.UUID:
    """Get current user ID from auth context.

    Validation steps (hosted mode):
    1. Read JWT from cookie
    2. Decode + verify signature (HS256)
    3. Verify exp, aud, iss claims
    4. Extract sub as UUID
    5. Check token_invalidated_before (revocation)

    Args:
        request: HTTP request (injected by FastAPI).
        db: Database session for revocation check (injected).

    Returns:
        UUID of the current authenticated user.

    Raises:
        HTTPException: 401 for any auth failure.
    """
    if not settings.auth_enabled:
        # Local mode: use DEFAULT_USER_ID from environment
        if settings.default_user_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=_UNAUTHORIZED_DETAIL,
            )
        return settings.default_user_id

    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=_UNAUTHORIZED_DETAIL,
        )

    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
        user_id = uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=_UNAUTHORIZED_DETAIL,
        ) from exc

    # Security: iat is required for revocation check. A JWT without iat
    # would bypass token_invalidated_before entirely.
    iat = payload.get("iat")
    if iat is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=_UNAUTHORIZED_DETAIL,
        )

    result = await db.execute(
        select(User.token_invalidated_before).where(User.id == user_id)
    )
    invalidated_before = result.scalar_one_or_none()
    if invalidated_before is not None and iat < invalidated_before.timestamp():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=_UNAUTHORIZED_DETAIL,
        )

    return user_id


async def get_current_user(
    user_id: Annotated[uuid.UUID, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """Get full User object for current user.

    Raises:
        HTTPException: 401 if user not found (deleted account, invalid ID).
    """
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=_UNAUTHORIZED_DETAIL,
        )

    return user


async def require_admin(
    user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Gate admin endpoints on User.is_admin.

    Raises:
        AdminRequiredError: 403 when the user is not an admin.
    """
    if not user.is_admin:
        raise AdminRequiredError()
    return user


# Reusable type aliases for dependency injection
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(require_admin)]
DbSession = Annotated[AsyncSession, Depends(get_db)]


# =============================================================================
# Ledger services
# =============================================================================


def get_service_cost_cache() -> ServiceCostCache:
    """Process-wide service cost cache (override in tests)."""
    return _service_cost_cache


CostCache = Annotated[ServiceCostCache, Depends(get_service_cost_cache)]


def get_service_cost_service(db: DbSession, cache: CostCache) -> ServiceCostService:
    return ServiceCostService(db, cache)


ServiceCosts = Annotated[ServiceCostService, Depends(get_service_cost_service)]


def get_consumption_service(
    db: DbSession,
    service_costs: ServiceCosts,
) -> QuotaConsumptionService:
    return QuotaConsumptionService(
        db,
        service_costs,
        batch_size=settings.quota_consume_batch_size,
        max_batches=settings.quota_consume_max_batches,
    )


def get_grant_service(db: DbSession) -> QuotaGrantService:
    return QuotaGrantService(db)


def get_overview_service(db: DbSession) -> QuotaOverviewService:
    return QuotaOverviewService(db)


Consumption = Annotated[QuotaConsumptionService, Depends(get_consumption_service)]
Grants = Annotated[QuotaGrantService, Depends(get_grant_service)]
Overview = Annotated[QuotaOverviewService, Depends(get_overview_service)]
