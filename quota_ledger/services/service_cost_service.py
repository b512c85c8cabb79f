"""Service cost lookup and admin management.

Translates a (service_type, scene) pair into a dollar cost and a unit cost.
The read side serves the consumption engine through ServiceCostCache; the
write side is used only by admin endpoints and invalidates the cache on
every change.
"""

import logging
import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.errors import CostNotConfiguredError, NotFoundError
from quota_ledger.models.service_cost import WILDCARD_SCENE, ServiceCost
from quota_ledger.services.service_cost_cache import (
    CostKey,
    ServiceCostCache,
    ServiceCostResult,
)

logger = logging.getLogger(__name__)


class ServiceCostService:
    """Reads and manages the service cost table.

    Args:
        db: Async database session.
        cache: Shared cost snapshot cache.
    """

    def __init__(self, db: AsyncSession, cache: ServiceCostCache) -> None:
        self._db = db
        self._cache = cache

    # -----------------------------------------------------------------------
    # Read side
    # -----------------------------------------------------------------------

    async def get_all_active(self) -> dict[CostKey, ServiceCostResult]:
        """Return every active cost keyed by (service_type, scene).

        Served from the cache while fresh; reloaded from the database
        otherwise.
        """
        cached = self._cache.get()
        if cached is not None:
            return cached

        result = await self._db.execute(
            select(ServiceCost).where(ServiceCost.is_active.is_(True))
        )
        costs = {
            (row.service_type, row.scene): ServiceCostResult(
                service_type=row.service_type,
                scene=row.scene,
                dollar_cost=row.dollar_cost,
                unit_cost=row.unit_cost,
            )
            for row in result.scalars().all()
        }
        self._cache.put(costs)
        logger.debug("Service cost cache refreshed with %d entries", len(costs))
        return costs

    async def get_cost(self, service_type: str, scene: str) -> ServiceCostResult:
        """Resolve the cost of one usage.

        Lookup order:
        1. Exact match: (service_type, scene)
        2. Fallback: (service_type, "")

        Args:
            service_type: Service identifier (ai-image, ai-video, ...).
            scene: Usage scene (text-to-image, ...).

        Returns:
            The matched cost.

        Raises:
            CostNotConfiguredError: If neither entry exists.
        """
        costs = await self.get_all_active()

        exact = costs.get((service_type, scene))
        if exact is not None:
            return exact

        wildcard = costs.get((service_type, WILDCARD_SCENE))
        if wildcard is not None:
            logger.debug(
                "No cost for %s/%s, using wildcard scene", service_type, scene
            )
            return wildcard

        raise CostNotConfiguredError(service_type, scene)

    # -----------------------------------------------------------------------
    # Write side (admin)
    # -----------------------------------------------------------------------

    async def list_for_admin(
        self,
        *,
        service_type: str | None = None,
        is_active: bool | None = None,
    ) -> list[ServiceCost]:
        """List cost rows (active and inactive) with optional filters."""
        stmt = select(ServiceCost)
        if service_type is not None:
            stmt = stmt.where(ServiceCost.service_type == service_type)
        if is_active is not None:
            stmt = stmt.where(ServiceCost.is_active == is_active)
        stmt = stmt.order_by(ServiceCost.service_type, ServiceCost.scene)

        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def upsert(
        self,
        *,
        service_type: str,
        scene: str = WILDCARD_SCENE,
        dollar_cost: Decimal,
        unit_cost: Decimal,
        display_name: str | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> ServiceCost:
        """Create or update the cost row for (service_type, scene).

        Args:
            service_type: Service identifier.
            scene: Usage scene, "" for the wildcard entry.
            dollar_cost: Cost charged to DOLLAR pools (>= 0).
            unit_cost: Cost charged to UNIT pools (>= 0).
            display_name: Human-friendly name.
            description: Short description.
            is_active: Whether the lookup may use the row.

        Returns:
            The created or updated row.
        """
        result = await self._db.execute(
            select(ServiceCost).where(
                ServiceCost.service_type == service_type,
                ServiceCost.scene == scene,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = ServiceCost(service_type=service_type, scene=scene)
            self._db.add(row)

        row.dollar_cost = dollar_cost
        row.unit_cost = unit_cost
        row.display_name = display_name
        row.description = description
        row.is_active = is_active

        await self._db.flush()
        await self._db.refresh(row)
        self._cache.invalidate()
        logger.info(
            "Service cost upserted: %s/%s dollar=%s unit=%s",
            service_type,
            scene,
            dollar_cost,
            unit_cost,
        )
        return row

    async def set_active(self, cost_id: uuid.UUID, is_active: bool) -> ServiceCost:
        """Enable or disable a cost row.

        Raises:
            NotFoundError: If the row does not exist.
        """
        row = await self._db.get(ServiceCost, cost_id)
        if row is None:
            raise NotFoundError("ServiceCost", str(cost_id))

        row.is_active = is_active
        await self._db.flush()
        await self._db.refresh(row)
        self._cache.invalidate()
        return row

    def refresh_cache(self) -> None:
        """Force the next lookup to reload from the database."""
        self._cache.invalidate()
