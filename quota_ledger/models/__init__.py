"""SQLAlchemy ORM models for the quota ledger.

All models are exported from this module for convenient imports:
    from quota_ledger.models import QuotaTransaction, ServiceCost, ...

Models are organized by domain:
- user.py: User (referenced, not owned)
- quota.py: QuotaTransaction + ledger enums (the ledger itself)
- service_cost.py: ServiceCost (cost lookup collaborator)
- order.py: Order, Subscription (payment records the coordinator updates)
- ai_task.py: AITask (consume-on-create, refund-on-failure)
"""

from quota_ledger.models.ai_task import AITask, AITaskStatus
from quota_ledger.models.base import Base, TimestampMixin
from quota_ledger.models.order import (
    Order,
    OrderStatus,
    Subscription,
    SubscriptionStatus,
)
from quota_ledger.models.quota import (
    POOL_PRIORITY,
    ConsumedItem,
    QuotaMeasurementType,
    QuotaPoolType,
    QuotaStatus,
    QuotaTransaction,
    QuotaTransactionScene,
    QuotaTransactionType,
)
from quota_ledger.models.service_cost import ServiceCost
from quota_ledger.models.user import User

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    # Accounts
    "User",
    # Ledger
    "ConsumedItem",
    "POOL_PRIORITY",
    "QuotaMeasurementType",
    "QuotaPoolType",
    "QuotaStatus",
    "QuotaTransaction",
    "QuotaTransactionScene",
    "QuotaTransactionType",
    # Cost lookup
    "ServiceCost",
    # Payments
    "Order",
    "OrderStatus",
    "Subscription",
    "SubscriptionStatus",
    # Tasks
    "AITask",
    "AITaskStatus",
]
