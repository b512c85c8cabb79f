"""Admin API request/response schemas.

Pydantic models for the admin quota endpoints: gift grants and service cost
management.

All monetary values are serialized as strings to preserve decimal precision.
All schemas use ConfigDict(extra="forbid") to reject unexpected fields.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict, field_validator

from quota_ledger.models.quota import QuotaMeasurementType, QuotaPoolType

# Max string length for decimal input fields. Prevents pathological-precision
# Decimal parsing (e.g. "0." + "0" * 100_000) from consuming CPU/memory.
_MAX_DECIMAL_STR_LEN = 20

_MSG_DESC_MAX_255 = "description must be at most 255 characters"


def _parse_decimal(value: str, field_name: str) -> Decimal:
    if len(value) > _MAX_DECIMAL_STR_LEN:
        msg = f"{field_name} string representation too long"
        raise ValueError(msg)
    try:
        d = Decimal(value)
    except InvalidOperation:
        msg = f"{field_name} must be a valid decimal number"
        raise ValueError(msg) from None
    if not d.is_finite():
        msg = f"{field_name} must be a finite number"
        raise ValueError(msg)
    return d


def _validate_non_negative_decimal(value: str, field_name: str) -> str:
    """Validate a string parses as a finite, non-negative Decimal."""
    if _parse_decimal(value, field_name) < 0:
        msg = f"{field_name} must be >= 0"
        raise ValueError(msg)
    return value


def _validate_positive_decimal(value: str, field_name: str) -> str:
    """Validate a string parses as a finite, positive Decimal (> 0)."""
    if _parse_decimal(value, field_name) <= 0:
        msg = f"{field_name} must be > 0"
        raise ValueError(msg)
    return value


def _validate_description(value: str | None) -> str | None:
    if value is not None and len(value) > 255:
        raise ValueError(_MSG_DESC_MAX_255)
    return value


# =============================================================================
# Gift grants
# =============================================================================


class QuotaGrantCreate(BaseModel):
    """Request schema for POST /admin/users/:id/quota-grants.

    Attributes:
        pool_type: Target pool.
        measurement_type: dollar or unit.
        amount: Positive decimal string.
        valid_days: Validity in days, 0 = never expires.
        description: Human-readable description, max 255 chars.
    """

    model_config = ConfigDict(extra="forbid")

    pool_type: QuotaPoolType
    measurement_type: QuotaMeasurementType
    amount: str
    valid_days: int = 0
    description: str | None = None

    @field_validator("amount")
    @classmethod
    def check_amount(cls, v: str) -> str:
        return _validate_positive_decimal(v, "amount")

    @field_validator("valid_days")
    @classmethod
    def check_valid_days(cls, v: int) -> int:
        if v < 0 or v > 36_500:
            msg = "valid_days must be between 0 and 36500"
            raise ValueError(msg)
        return v

    @field_validator("description")
    @classmethod
    def check_description_length(cls, v: str | None) -> str | None:
        return _validate_description(v)


class QuotaGrantResponse(BaseModel):
    """Response schema for a created gift grant.

    Attributes:
        id: GRANT row UUID as string.
        transaction_no: Transaction number.
        user_id: Receiving user UUID as string.
        pool_type: Target pool.
        measurement_type: dollar or unit.
        amount: Granted amount with 6 decimal places.
        expires_at: Expiry, None for never.
        created_at: Creation timestamp.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    transaction_no: str
    user_id: str
    pool_type: str
    measurement_type: str
    amount: str
    expires_at: datetime | None = None
    created_at: datetime


# =============================================================================
# Service costs
# =============================================================================


class ServiceCostUpsert(BaseModel):
    """Request schema for PUT /admin/service-costs.

    Attributes:
        service_type: Service identifier (ai-image, ai-video, ...), max 50 chars.
        scene: Usage scene, "" for the wildcard entry, max 50 chars.
        dollar_cost: Non-negative decimal string.
        unit_cost: Non-negative decimal string.
        display_name: Human-friendly name, max 100 chars.
        description: Description, max 255 chars.
        is_active: Whether the lookup may use the row.
    """

    model_config = ConfigDict(extra="forbid")

    service_type: str
    scene: str = ""
    dollar_cost: str
    unit_cost: str
    display_name: str | None = None
    description: str | None = None
    is_active: bool = True

    @field_validator("service_type")
    @classmethod
    def check_service_type(cls, v: str) -> str:
        if not v or len(v) > 50:
            msg = "service_type must be 1-50 characters"
            raise ValueError(msg)
        return v

    @field_validator("scene")
    @classmethod
    def check_scene_length(cls, v: str) -> str:
        if len(v) > 50:
            msg = "scene must be at most 50 characters"
            raise ValueError(msg)
        return v

    @field_validator("dollar_cost")
    @classmethod
    def check_dollar_cost(cls, v: str) -> str:
        return _validate_non_negative_decimal(v, "dollar_cost")

    @field_validator("unit_cost")
    @classmethod
    def check_unit_cost(cls, v: str) -> str:
        return _validate_non_negative_decimal(v, "unit_cost")

    @field_validator("display_name")
    @classmethod
    def check_display_name_length(cls, v: str | None) -> str | None:
        if v is not None and len(v) > 100:
            msg = "display_name must be at most 100 characters"
            raise ValueError(msg)
        return v

    @field_validator("description")
    @classmethod
    def check_description_length(cls, v: str | None) -> str | None:
        return _validate_description(v)


class ServiceCostResponse(BaseModel):
    """Response schema for service cost items.

    Attributes:
        id: UUID as string.
        service_type: Service identifier.
        scene: Usage scene ("" = wildcard).
        dollar_cost: Dollar cost with 6 decimal places.
        unit_cost: Unit cost with 6 decimal places.
        display_name: Human-friendly name or None.
        description: Description or None.
        is_active: Whether the lookup may use the row.
        updated_at: Last update timestamp.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    service_type: str
    scene: str
    dollar_cost: str
    unit_cost: str
    display_name: str | None = None
    description: str | None = None
    is_active: bool
    updated_at: datetime


# =============================================================================
# Cache Refresh
# =============================================================================


class CacheRefreshResponse(BaseModel):
    """Response schema for POST /admin/service-costs/cache-refresh.

    Attributes:
        message: Confirmation message.
        ttl_seconds: Configured cache TTL.
        invalidations: Invalidations since process start.
    """

    model_config = ConfigDict(extra="forbid")

    message: str
    ttl_seconds: float
    invalidations: int
