from .reposition import (
    AccessMode,
    ActionTaken,
    DecisionAction,
    ExecutionMode,
    HealthAnalysis,
    HealthStatus,
    IntentStatus,
    NotificationChannel,
    NotificationType,
    RepositionDecision,
    RepositionPolicy,
    RepositionPolicyUpdate,
    SkipReason,
    Strategy,
    Urgency,
)

__all__ = [
    "AccessMode",
    "ActionTaken",
    "DecisionAction",
    "ExecutionMode",
    "HealthAnalysis",
    "HealthStatus",
    "IntentStatus",
    "NotificationChannel",
    "NotificationType",
    "RepositionDecision",
    "RepositionPolicy",
    "RepositionPolicyUpdate",
    "SkipReason",
    "Strategy",
    "Urgency",
]
