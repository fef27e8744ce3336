"""Ribbit Reserve: chore tasks and the reward ledger that pays for them."""

from .api import ApiExporter, ChangeFeed
from .config import RetryPolicy
from .directory import FamilyDirectory
from .exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RibbitError,
    ValidationError,
)
from .ledger import MoneyBalance, PointsBalance, RewardLedger, SpecialRewardEntry, SpecialRewardStatus
from .models import (
    Actor,
    ChildProfile,
    Family,
    MoneyReward,
    PointsReward,
    Recurrence,
    RewardKind,
    RewardSpec,
    Role,
    SettlementRecord,
    SpecialReward,
    Task,
    TaskStatus,
)
from .notifications import Notification, NotificationCenter, NotificationType
from .ops import StructuredLogger
from .recurrence import RecurrenceScheduler
from .service import RibbitReserve
from .settlement import InterestResult, RedemptionResult, SettlementEngine, SettlementResult
from .store import MemoryStore, RibbitStore
from .tasks import ApprovalResult, TaskLifecycleManager

__all__ = [
    "Actor",
    "ApiExporter",
    "ApprovalResult",
    "ChangeFeed",
    "ChildProfile",
    "ConcurrencyConflictError",
    "Family",
    "FamilyDirectory",
    "InsufficientBalanceError",
    "InterestResult",
    "InvalidStateTransitionError",
    "MemoryStore",
    "MoneyBalance",
    "MoneyReward",
    "NotFoundError",
    "Notification",
    "NotificationCenter",
    "NotificationType",
    "PermissionDeniedError",
    "PointsBalance",
    "PointsReward",
    "Recurrence",
    "RecurrenceScheduler",
    "RedemptionResult",
    "RetryPolicy",
    "RewardKind",
    "RewardLedger",
    "RewardSpec",
    "RibbitError",
    "RibbitReserve",
    "RibbitStore",
    "Role",
    "SettlementEngine",
    "SettlementRecord",
    "SettlementResult",
    "SpecialReward",
    "SpecialRewardEntry",
    "SpecialRewardStatus",
    "StructuredLogger",
    "Task",
    "TaskLifecycleManager",
    "TaskStatus",
    "ValidationError",
]
