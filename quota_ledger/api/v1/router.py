"""API v1 router aggregator.

URL structure with /api/v1 prefix. All v1 endpoint routers are included here.
"""

from fastapi import APIRouter

from quota_ledger.api.v1 import admin, quota

router = APIRouter()

# =============================================================================
# Billing UI (read-only ledger views)
# =============================================================================

router.include_router(quota.router, prefix="/quota", tags=["quota"])

# =============================================================================
# Admin
# =============================================================================

router.include_router(admin.router, prefix="/admin", tags=["admin"])
