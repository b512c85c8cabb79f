"""Pydantic request/response schemas for API endpoints."""

from quota_ledger.schemas.admin import (
    CacheRefreshResponse,
    QuotaGrantCreate,
    QuotaGrantResponse,
    ServiceCostResponse,
    ServiceCostUpsert,
)
from quota_ledger.schemas.quota import (
    CanConsumeResponse,
    QuotaOverviewResponse,
    QuotaPoolSummary,
    QuotaTransactionResponse,
    RemainingQuotaResponse,
)

__all__ = [
    # Billing UI
    "CanConsumeResponse",
    "QuotaOverviewResponse",
    "QuotaPoolSummary",
    "QuotaTransactionResponse",
    "RemainingQuotaResponse",
    # Admin
    "CacheRefreshResponse",
    "QuotaGrantCreate",
    "QuotaGrantResponse",
    "ServiceCostResponse",
    "ServiceCostUpsert",
]
