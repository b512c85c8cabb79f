"""Shared fixtures for ledger unit tests.

InMemoryQuotaRepository mirrors QuotaRepository over a list of transient
QuotaTransaction rows and is patched into every service module that uses
the repository. FakeSession stands in for AsyncSession: begin_nested()
snapshots the ledger and restores it when the block raises, the way a
SAVEPOINT rollback would.
"""

import uuid
from collections.abc import AsyncGenerator, Iterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from quota_ledger.models.quota import (
    QuotaStatus,
    QuotaTransaction,
    QuotaTransactionType,
)
from quota_ledger.models.user import User
from quota_ledger.services.quota_consumption import QuotaConsumptionService
from quota_ledger.services.quota_grants import QuotaGrantService
from quota_ledger.services.quota_overview import QuotaOverviewService
from quota_ledger.services.service_cost_cache import (
    ServiceCostCache,
    ServiceCostResult,
)
from quota_ledger.services.service_cost_service import ServiceCostService

# Pinned evaluation instant shared by ledger tests
NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

_REPOSITORY_MODULES = (
    "quota_ledger.services.quota_consumption",
    "quota_ledger.services.quota_grants",
    "quota_ledger.services.quota_overview",
    "quota_ledger.services.order_transactions",
)

_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


# =============================================================================
# In-memory ledger
# =============================================================================


class InMemoryQuotaRepository:
    """QuotaRepository semantics over an in-memory row list."""

    def __init__(self) -> None:
        self.rows: list[QuotaTransaction] = []
        self._seq = 0

    def reset(self) -> None:
        self.rows.clear()
        self._seq = 0

    # -- savepoint support ---------------------------------------------------

    def snapshot(self) -> tuple[int, list[tuple[QuotaTransaction, Decimal, str]]]:
        return len(self.rows), [
            (row, row.remaining_amount, row.status) for row in self.rows
        ]

    def restore(
        self, snapshot: tuple[int, list[tuple[QuotaTransaction, Decimal, str]]]
    ) -> None:
        count, states = snapshot
        del self.rows[count:]
        for row, remaining, status in states:
            row.remaining_amount = remaining
            row.status = status

    # -- helpers -------------------------------------------------------------

    def grants(self) -> list[QuotaTransaction]:
        return [r for r in self.rows if r.transaction_type == "grant"]

    def consumes(self) -> list[QuotaTransaction]:
        return [r for r in self.rows if r.transaction_type == "consume"]

    @staticmethod
    def _active(
        row: QuotaTransaction,
        user_id: uuid.UUID,
        pool_type: str | None,
        now: datetime,
    ) -> bool:
        return (
            row.user_id == user_id
            and row.transaction_type == QuotaTransactionType.GRANT.value
            and row.status == QuotaStatus.ACTIVE.value
            and (row.expires_at is None or row.expires_at > now)
            and (pool_type is None or row.pool_type == pool_type)
        )

    def _available(
        self,
        user_id: uuid.UUID,
        pool_type: str | None,
        now: datetime,
        measurement_type: str | None = None,
    ) -> list[QuotaTransaction]:
        rows = [
            r
            for r in self.rows
            if self._active(r, user_id, pool_type, now)
            and r.remaining_amount > 0
            and (measurement_type is None or r.measurement_type == measurement_type)
        ]
        return sorted(
            rows,
            key=lambda r: (r.expires_at or _FAR_FUTURE, r.created_at, str(r.id)),
        )

    # -- QuotaRepository interface -------------------------------------------

    async def create(
        self,
        db: Any,
        *,
        remaining_amount: Decimal = Decimal("0"),
        status: str = QuotaStatus.ACTIVE.value,
        extra_metadata: dict[str, Any] | None = None,
        **values: Any,
    ) -> QuotaTransaction:
        self._seq += 1
        values.setdefault("transaction_scene", None)
        values.setdefault("expires_at", None)
        values.setdefault("order_no", None)
        values.setdefault("subscription_no", None)
        values.setdefault("consumed_detail", None)
        txn = QuotaTransaction(
            id=uuid.uuid4(),
            transaction_no=f"{self._seq:016d}",
            remaining_amount=remaining_amount,
            status=status,
            extra_metadata=extra_metadata,
            created_at=NOW - timedelta(days=365) + timedelta(seconds=self._seq),
            **values,
        )
        self.rows.append(txn)
        return txn

    async def get_by_id(
        self, db: Any, transaction_id: uuid.UUID, *, for_update: bool = False
    ) -> QuotaTransaction | None:
        return next((r for r in self.rows if r.id == transaction_id), None)

    async def find_grant_by_order_no(
        self, db: Any, order_no: str
    ) -> QuotaTransaction | None:
        return next(
            (r for r in self.grants() if r.order_no == order_no),
            None,
        )

    async def find_grant_for_subscription_period(
        self, db: Any, subscription_no: str, period_end: datetime
    ) -> QuotaTransaction | None:
        return next(
            (
                r
                for r in self.grants()
                if r.subscription_no == subscription_no and r.expires_at == period_end
            ),
            None,
        )

    def _history(
        self,
        user_id: uuid.UUID,
        pool_type: str | None,
        transaction_type: str | None,
        status: str | None,
    ) -> list[QuotaTransaction]:
        return [
            r
            for r in self.rows
            if r.user_id == user_id
            and (pool_type is None or r.pool_type == pool_type)
            and (transaction_type is None or r.transaction_type == transaction_type)
            and (status is None or r.status == status)
        ]

    async def count_by_user(
        self,
        db: Any,
        user_id: uuid.UUID,
        *,
        pool_type: str | None = None,
        transaction_type: str | None = None,
        status: str | None = None,
    ) -> int:
        return len(self._history(user_id, pool_type, transaction_type, status))

    async def list_by_user(
        self,
        db: Any,
        user_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 50,
        pool_type: str | None = None,
        transaction_type: str | None = None,
        status: str | None = None,
    ) -> tuple[list[QuotaTransaction], int]:
        rows = self._history(user_id, pool_type, transaction_type, status)
        rows.sort(key=lambda r: (r.created_at, r.transaction_no), reverse=True)
        return rows[offset : offset + limit], len(rows)

    async def first_available_grant(
        self, db: Any, user_id: uuid.UUID, pool_type: str, now: datetime
    ) -> QuotaTransaction | None:
        available = self._available(user_id, pool_type, now)
        return available[0] if available else None

    async def sum_remaining(
        self,
        db: Any,
        user_id: uuid.UUID,
        now: datetime,
        *,
        pool_type: str | None = None,
        measurement_type: str | None = None,
    ) -> Decimal:
        return sum(
            (
                r.remaining_amount
                for r in self._available(user_id, pool_type, now, measurement_type)
            ),
            Decimal("0"),
        )

    async def sum_granted(
        self, db: Any, user_id: uuid.UUID, pool_type: str, now: datetime
    ) -> Decimal:
        return sum(
            (r.amount for r in self.rows if self._active(r, user_id, pool_type, now)),
            Decimal("0"),
        )

    async def earliest_expiry(
        self, db: Any, user_id: uuid.UUID, pool_type: str, now: datetime
    ) -> datetime | None:
        expiries = [
            r.expires_at
            for r in self._available(user_id, pool_type, now)
            if r.expires_at is not None
        ]
        return min(expiries) if expiries else None

    async def latest_grant(
        self, db: Any, user_id: uuid.UUID, pool_type: str, now: datetime
    ) -> QuotaTransaction | None:
        rows = [r for r in self.rows if self._active(r, user_id, pool_type, now)]
        return max(rows, key=lambda r: r.created_at) if rows else None

    async def lock_available_grants(
        self,
        db: Any,
        user_id: uuid.UUID,
        pool_type: str,
        now: datetime,
        *,
        limit: int,
        measurement_type: str | None = None,
    ) -> list[QuotaTransaction]:
        return self._available(user_id, pool_type, now, measurement_type)[:limit]

    async def restore_remaining(
        self, db: Any, grant_id: uuid.UUID, amount: Decimal
    ) -> Decimal | None:
        if amount <= 0:
            raise ValueError("restore_remaining amount must be positive")
        grant = next((r for r in self.grants() if r.id == grant_id), None)
        if grant is None:
            return None
        grant.remaining_amount = min(grant.remaining_amount + amount, grant.amount)
        return grant.remaining_amount

    async def update_status(
        self, db: Any, txn: QuotaTransaction, status: str
    ) -> QuotaTransaction:
        txn.status = status
        return txn


# =============================================================================
# Fake session
# =============================================================================


class FakeSession:
    """AsyncSession double backed by an InMemoryQuotaRepository.

    execute() is an AsyncMock so tests can script query results for code
    that builds its own SELECTs.
    """

    def __init__(self, ledger: InMemoryQuotaRepository) -> None:
        self.ledger = ledger
        self.objects: list[Any] = []
        self.execute = AsyncMock()
        self.flush = AsyncMock()
        self.refresh = AsyncMock()
        self.commit = AsyncMock()
        self.rollback = AsyncMock()

    def add(self, obj: Any) -> None:
        if getattr(obj, "id", None) is None:
            obj.id = uuid.uuid4()
        self.objects.append(obj)

    async def get(self, model: type, ident: Any) -> Any:
        return next(
            (o for o in self.objects if type(o) is model and o.id == ident),
            None,
        )

    @asynccontextmanager
    async def begin_nested(self) -> AsyncGenerator[None, None]:
        snapshot = self.ledger.snapshot()
        added = len(self.objects)
        try:
            yield
        except BaseException:
            # Rolled-back savepoints drop both ledger rows and added objects
            self.ledger.restore(snapshot)
            del self.objects[added:]
            raise


def scalar_result(value: Any) -> MagicMock:
    """Result double answering scalar_one_or_none() and scalars().first()."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalars.return_value.first.return_value = value
    result.scalars.return_value.all.return_value = [] if value is None else [value]
    return result


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ledger(monkeypatch: pytest.MonkeyPatch) -> InMemoryQuotaRepository:
    """In-memory repository patched over QuotaRepository in the services."""
    repo = InMemoryQuotaRepository()
    for module in _REPOSITORY_MODULES:
        monkeypatch.setattr(f"{module}.QuotaRepository", repo)
    return repo


@pytest.fixture
def fake_db(ledger: InMemoryQuotaRepository) -> FakeSession:
    return FakeSession(ledger)


@pytest.fixture
def cost_cache() -> ServiceCostCache:
    return ServiceCostCache(ttl_seconds=300.0)


@pytest.fixture
def set_costs(cost_cache: ServiceCostCache):
    """Load cost entries straight into the cache.

    Usage: set_costs(("ai-image", "text-to-image", "0.05", "2"), ...)
    """

    def _set(*entries: tuple[str, str, str, str]) -> None:
        cost_cache.put(
            {
                (service_type, scene): ServiceCostResult(
                    service_type=service_type,
                    scene=scene,
                    dollar_cost=Decimal(dollar),
                    unit_cost=Decimal(unit),
                )
                for service_type, scene, dollar, unit in entries
            }
        )

    return _set


@pytest.fixture
def service_costs(fake_db: FakeSession, cost_cache: ServiceCostCache):
    return ServiceCostService(fake_db, cost_cache)


@pytest.fixture
def grants(fake_db: FakeSession) -> QuotaGrantService:
    return QuotaGrantService(fake_db)


@pytest.fixture
def consumption(
    fake_db: FakeSession, service_costs: ServiceCostService
) -> QuotaConsumptionService:
    return QuotaConsumptionService(fake_db, service_costs, batch_size=2, max_batches=5)


@pytest.fixture
def overview(fake_db: FakeSession) -> QuotaOverviewService:
    return QuotaOverviewService(fake_db)


@pytest.fixture
def user() -> User:
    return User(id=uuid.uuid4(), email="ledger@example.com", is_admin=False)


# =============================================================================
# API client over the in-memory ledger
# =============================================================================


@pytest_asyncio.fixture
async def api_client(
    fake_db: FakeSession,
    cost_cache: ServiceCostCache,
    user: User,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client in local mode (DEFAULT_USER_ID) over the fake session."""
    from quota_ledger.api.deps import get_service_cost_cache
    from quota_ledger.core.config import settings
    from quota_ledger.core.database import get_db
    from quota_ledger.main import app

    async def override_get_db() -> AsyncGenerator[FakeSession, None]:
        yield fake_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_cost_cache] = lambda: cost_cache

    original_auth_enabled = settings.auth_enabled
    original_default_user_id = settings.default_user_id
    settings.auth_enabled = False
    settings.default_user_id = user.id

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    settings.auth_enabled = original_auth_enabled
    settings.default_user_id = original_default_user_id
    app.dependency_overrides.clear()


@pytest.fixture
def as_admin(fake_db: FakeSession, user: User) -> Iterator[User]:
    """Make the local-mode user an admin visible to get_current_user."""
    user.is_admin = True
    fake_db.add(user)
    fake_db.execute.return_value = scalar_result(user)
    yield user
