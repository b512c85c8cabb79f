"""AI task ledger touchpoint.

A charged task consumes quota in the same transaction that creates it, and
gets that quota refunded in the same transaction that marks it FAILED.
"""

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.errors import NotFoundError
from quota_ledger.models.ai_task import AITask, AITaskStatus
from quota_ledger.services.quota_consumption import QuotaConsumptionService

logger = logging.getLogger(__name__)


def service_type_for(media_type: str) -> str:
    """Service type charged for a media type (image -> ai-image)."""
    return f"ai-{media_type}"


class AITaskService:
    """Creates tasks and moves them through their lifecycle.

    Args:
        db: Async database session. The caller owns the transaction.
        consumption: Consumption engine used to charge and refund.
    """

    def __init__(
        self,
        db: AsyncSession,
        consumption: QuotaConsumptionService,
    ) -> None:
        self._db = db
        self._consumption = consumption

    async def create_ai_task(
        self,
        *,
        user_id: uuid.UUID,
        media_type: str,
        provider: str,
        model: str,
        prompt: str,
        scene: str = "",
        user_email: str | None = None,
    ) -> AITask:
        """Insert a task and charge it.

        Tasks without a scene are not charged.

        Raises:
            CostNotConfiguredError: No cost for ai-<media_type>/scene.
            InsufficientQuotaError: No pool can pay.
            QuotaRaceConditionError: Concurrent consumption won (retryable).
        """
        task = AITask(
            user_id=user_id,
            media_type=media_type,
            provider=provider,
            model=model,
            prompt=prompt,
            scene=scene,
            status=AITaskStatus.PENDING.value,
        )
        # The task and its charge commit together or not at all
        async with self._db.begin_nested():
            self._db.add(task)
            await self._db.flush()

            if scene:
                consumed = await self._consumption.consume_quota(
                    user_id=user_id,
                    service_type=service_type_for(media_type),
                    scene=scene,
                    description=f"generate {media_type}",
                    metadata={
                        "type": "ai-task",
                        "media_type": media_type,
                        "task_id": str(task.id),
                    },
                    user_email=user_email,
                )
                task.quota_id = consumed.quota_id
                task.cost_amount = consumed.cost_amount
                task.cost_measurement_type = consumed.measurement_type.value
                await self._db.flush()

        await self._db.refresh(task)
        return task

    async def update_ai_task_status(
        self,
        task_id: uuid.UUID,
        status: AITaskStatus,
        task_result: dict[str, Any] | None = None,
    ) -> AITask:
        """Move a task to a new status, refunding its charge on failure.

        Raises:
            NotFoundError: If the task does not exist.
        """
        task = await self._db.get(AITask, task_id)
        if task is None:
            raise NotFoundError("AITask", str(task_id))

        if status == AITaskStatus.FAILED and task.quota_id is not None:
            refunded = await self._consumption.refund_quota(task.quota_id)
            if refunded:
                logger.info("Refunded quota for failed task %s", task_id)

        task.status = status.value
        if task_result is not None:
            task.task_result = task_result
        await self._db.flush()
        await self._db.refresh(task)
        return task
