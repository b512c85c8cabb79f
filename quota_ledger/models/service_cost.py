"""Service cost ORM model.

Maps a (service_type, scene) pair to a dollar cost and a unit cost. An empty
scene is the wildcard entry for the service type, used when no row matches
the exact scene.
"""

import uuid
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from quota_ledger.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")

WILDCARD_SCENE = ""


class ServiceCost(Base, TimestampMixin):
    """Admin-configured price of one service usage.

    Attributes:
        id: UUID primary key.
        service_type: Service identifier (ai-image, ai-video, ai-music, ai-chat).
        scene: Usage scene (text-to-image, ...) or "" for the wildcard entry.
        dollar_cost: Cost charged to DOLLAR pools.
        unit_cost: Cost charged to UNIT pools.
        display_name: Human-friendly name for admin UI.
        description: Short description for admin UI.
        is_active: Inactive rows are ignored by the cost lookup.
    """

    __tablename__ = "service_costs"
    __table_args__ = (
        UniqueConstraint(
            "service_type",
            "scene",
            name="uq_service_costs_type_scene",
        ),
        CheckConstraint(
            "dollar_cost >= 0",
            name="ck_service_costs_dollar_cost_nonneg",
        ),
        CheckConstraint(
            "unit_cost >= 0",
            name="ck_service_costs_unit_cost_nonneg",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    service_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    scene: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=WILDCARD_SCENE,
        server_default=text("''"),
    )
    dollar_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 6),
        nullable=False,
        default=Decimal("0"),
        server_default=text("0"),
    )
    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 6),
        nullable=False,
        default=Decimal("1"),
        server_default=text("1"),
    )
    display_name: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
