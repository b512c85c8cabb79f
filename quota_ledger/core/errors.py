"""API and ledger error classes.

Every error carries a machine-readable code, a human-readable message and the
HTTP status the API layer maps it to. Services raise these directly; the
FastAPI exception handler renders them into the standard error envelope.

Ledger errors (QuotaLedgerError subclasses) are raised synchronously inside
the caller's transaction attempt. The ledger never retries internally.
"""

from decimal import Decimal


class APIError(Exception):
    """Base class for API errors.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(APIError):
    """Field validation failed (400)."""

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class ForbiddenError(APIError):
    """Not allowed to access resource (403)."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
        )


class AdminRequiredError(ForbiddenError):
    """Admin access required (403)."""

    def __init__(self) -> None:
        APIError.__init__(
            self,
            code="ADMIN_REQUIRED",
            message="Admin access required",
            status_code=403,
        )


class NotFoundError(APIError):
    """Resource not found (404).

    Also used when the resource exists but belongs to another user, so the
    response never reveals that it exists.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


# =============================================================================
# Quota ledger errors
# =============================================================================


class QuotaLedgerError(APIError):
    """Base class for errors raised by the quota ledger.

    Attributes:
        retryable: True when repeating the whole operation may succeed.
    """

    retryable: bool = False


class InvalidAmountError(QuotaLedgerError):
    """Grant requested with a non-positive amount (400).

    Rejected before any write.

    Args:
        amount: The rejected amount.
    """

    def __init__(self, amount: Decimal) -> None:
        super().__init__(
            code="INVALID_AMOUNT",
            message=f"Grant amount must be positive, got {amount}",
            status_code=400,
            details=[{"amount": str(amount)}],
        )


class CostNotConfiguredError(QuotaLedgerError):
    """No cost entry for a service, including the wildcard scene (503).

    Operational config error: the names are included so an admin can fix the
    missing service cost row.

    Args:
        service_type: Service type that was looked up (e.g. "ai-image").
        scene: Scene that was looked up (e.g. "text-to-image").
    """

    def __init__(self, service_type: str, scene: str) -> None:
        super().__init__(
            code="COST_NOT_CONFIGURED",
            message=(
                "Service cost not configured for "
                f"service_type='{service_type}', scene='{scene}'"
            ),
            status_code=503,
        )


class InsufficientQuotaError(QuotaLedgerError):
    """No pool, checked in priority order, can cover the cost (402).

    Args:
        service_type: Service the user tried to consume.
        scene: Usage scene.
    """

    def __init__(self, service_type: str, scene: str) -> None:
        super().__init__(
            code="INSUFFICIENT_QUOTA",
            message="Insufficient quota. Please add credits to continue.",
            status_code=402,
            details=[{"service_type": service_type, "scene": scene}],
        )


class QuotaRaceConditionError(QuotaLedgerError):
    """Balance changed between the sum check and the FIFO walk (409).

    The consumption attempt is rolled back as a whole. Retryable.

    Args:
        pool_type: Pool that appeared sufficient.
        undrained: Cost left undrained after exhausting eligible rows.
    """

    retryable = True

    def __init__(self, pool_type: str, undrained: Decimal) -> None:
        super().__init__(
            code="QUOTA_RACE_CONDITION",
            message=(
                "Quota balance changed during consumption, please retry. "
                f"{undrained} left undrained in pool '{pool_type}'"
            ),
            status_code=409,
            details=[{"pool_type": pool_type, "undrained": str(undrained)}],
        )
