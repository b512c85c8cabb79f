"""AI generation task model.

Only the ledger-facing columns are modelled: the cost charged at creation and
the CONSUME row id needed to refund it when the task fails.
"""

import uuid
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from quota_ledger.models.base import Base, TimestampMixin

_DEFAULT_UUID = text("gen_random_uuid()")


class AITaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"


class AITask(Base, TimestampMixin):
    """One generation request.

    Attributes:
        id: UUID primary key.
        user_id: Requesting user (FK to users).
        media_type: image, video, music or chat. The charged service type is
            "ai-<media_type>".
        provider: AI provider name.
        model: Provider model identifier.
        prompt: User prompt.
        status: AITaskStatus value.
        scene: Usage scene. Empty scene means the task is not charged.
        cost_amount: Amount consumed at creation.
        cost_measurement_type: Measurement of cost_amount.
        quota_id: CONSUME row created for this task, refunded on failure.
        task_id: Provider-side task id.
        task_result: Provider result payload.
    """

    __tablename__ = "ai_tasks"
    __table_args__ = (
        Index("ix_ai_tasks_user_media_type", "user_id", "media_type"),
        Index("ix_ai_tasks_media_type_status", "media_type", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    media_type: Mapped[str] = mapped_column(String(20), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    scene: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="",
        server_default=text("''"),
    )
    cost_amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        default=Decimal("0"),
        server_default=text("0"),
    )
    cost_measurement_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unit",
        server_default=text("'unit'"),
    )
    quota_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("quota_transactions.id", ondelete="SET NULL"),
        nullable=True,
    )
    task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    task_result: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB, nullable=True
    )
