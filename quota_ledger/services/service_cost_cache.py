"""Service cost cache.

Holds a snapshot of every active service cost keyed by (service_type, scene).
Costs change rarely, so the whole table is cached for a short TTL and dropped
on any admin write. The ledger balance itself is never cached.

The clock is injectable so tests drive expiry without sleeping.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from quota_ledger.models.quota import QuotaMeasurementType

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ServiceCostResult:
    """Resolved cost of one service usage.

    Attributes:
        service_type: Service identifier.
        scene: Scene of the matched row ("" when the wildcard matched).
        dollar_cost: Cost charged to DOLLAR pools.
        unit_cost: Cost charged to UNIT pools.
    """

    service_type: str
    scene: str
    dollar_cost: Decimal
    unit_cost: Decimal

    def cost_for(self, measurement_type: str) -> Decimal:
        """Cost in the given measurement type."""
        if measurement_type == QuotaMeasurementType.DOLLAR:
            return self.dollar_cost
        return self.unit_cost


CostKey = tuple[str, str]


@dataclass
class CacheStats:
    """Cache statistics for monitoring.

    Attributes:
        size: Number of cached cost entries.
        ttl_seconds: Configured time-to-live.
        hits: Number of fresh reads since creation.
        misses: Number of empty or stale reads since creation.
        invalidations: Number of explicit invalidations since creation.
    """

    size: int
    ttl_seconds: float
    hits: int
    misses: int
    invalidations: int


# =============================================================================
# Service Cost Cache
# =============================================================================


class ServiceCostCache:
    """TTL cache for the active service cost table.

    Single-process, designed for asyncio usage (no locking). Two concurrent
    misses both reload from the database, which is harmless.

    Args:
        ttl_seconds: How long a snapshot stays fresh. 0 disables caching.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            msg = f"ttl_seconds must be non-negative, got {ttl_seconds}"
            raise ValueError(msg)

        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._costs: dict[CostKey, ServiceCostResult] | None = None
        self._loaded_at = 0.0
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self) -> dict[CostKey, ServiceCostResult] | None:
        """Return the cached snapshot, or None if empty or stale."""
        if self._costs is None or self._clock() - self._loaded_at >= self._ttl_seconds:
            self._misses += 1
            return None
        self._hits += 1
        return self._costs

    def put(self, costs: dict[CostKey, ServiceCostResult]) -> None:
        """Store a fresh snapshot."""
        self._costs = dict(costs)
        self._loaded_at = self._clock()

    def invalidate(self) -> None:
        """Drop the snapshot so the next read reloads from the database."""
        self._costs = None
        self._invalidations += 1

    def get_stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._costs) if self._costs is not None else 0,
            ttl_seconds=self._ttl_seconds,
            hits=self._hits,
            misses=self._misses,
            invalidations=self._invalidations,
        )
