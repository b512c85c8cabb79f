"""Response envelope models.

Every success response is wrapped as {"data": ...}; collections add a "meta"
block with pagination; errors use {"error": {...}}.
"""

from typing import Generic, TypeVar

from pydantic import BaseModel, computed_field

T = TypeVar("T")


class PaginationMeta(BaseModel):
    """Pagination metadata for collections.

    Attributes:
        total: Total number of items across all pages.
        page: Current page number (1-indexed).
        per_page: Number of items per page.
    """

    total: int
    page: int
    per_page: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        """Number of pages needed to display all items (0 when empty)."""
        if self.total == 0:
            return 0
        return (self.total + self.per_page - 1) // self.per_page


class DataResponse(BaseModel, Generic[T]):
    """Envelope for single resources.

    Usage:
        @router.get("/quota/overview")
        async def get_overview(...) -> DataResponse[QuotaOverviewResponse]:
            return DataResponse(data=_overview_response(overview))
    """

    data: T


class ListResponse(BaseModel, Generic[T]):
    """Envelope for paginated collections such as ledger history."""

    data: list[T]
    meta: PaginationMeta


class ErrorDetail(BaseModel):
    """Error body: code, message and optional details."""

    code: str
    message: str
    details: list[dict] | None = None


class ErrorResponse(BaseModel):
    """Error envelope rendered by the APIError exception handler."""

    error: ErrorDetail
