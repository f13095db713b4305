"""Domain types shared by the analyzer, decision engine, executor and worker."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class Urgency(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]

    def at_least(self, other: "Urgency") -> bool:
        return self.rank >= other.rank


_URGENCY_RANK = {Urgency.NONE: 0, Urgency.LOW: 1, Urgency.MEDIUM: 2, Urgency.HIGH: 3}


class HealthStatus(str, Enum):
    """Label written to the monitoring log for each scanned position."""

    HEALTHY = "healthy"
    BUFFER_ZONE = "buffer_zone"
    WARNING = "warning"  # out of range, low urgency
    OUT_OF_RANGE = "out_of_range"  # medium urgency
    CRITICAL = "critical"  # high urgency
    CLOSED = "closed"
    UNKNOWN = "unknown"


class Strategy(str, Enum):
    """Liquidity distribution shapes accepted by the DLMM transaction builder."""

    SPOT = "spot"
    CURVE = "curve"
    BID_ASK = "bid_ask"


class ActionTaken(str, Enum):
    MONITORED = "monitored"
    SKIPPED = "skipped"
    NOTIFIED = "notified"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    AUTO_REPOSITIONED = "auto_repositioned"
    PENDING_CONFIRMATION = "pending_confirmation"
    REPOSITION_FAILED = "reposition_failed"
    AUTO_CLOSED_STALE = "auto_closed_stale"
    ERROR = "error"


class SkipReason(str, Enum):
    POSITION_HEALTHY = "position_healthy"
    URGENCY_BELOW_THRESHOLD = "urgency_below_threshold"
    FEE_ABOVE_BUDGET = "fee_above_budget"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


class NotificationType(str, Enum):
    REPOSITION_NEEDED = "reposition_needed"
    REPOSITION_SUCCESS = "reposition_success"
    REPOSITION_FAILED = "reposition_failed"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    POSITION_CLOSED = "position_closed"


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    MESSAGING_BOT = "messaging_bot"


class ExecutionMode(str, Enum):
    AUTO = "auto"
    NOTIFY = "notify"


class AccessMode(str, Enum):
    """How a wallet pays for an auto-reposition."""

    CREDITS = "credits"
    SUBSCRIPTION = "subscription"
    NONE = "none"


class DecisionAction(str, Enum):
    SKIP = "skip"
    NOTIFY = "notify"
    AUTO_EXECUTE = "auto_execute"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class IntentStatus(str, Enum):
    SUBMITTED = "submitted"
    SETTLED = "settled"
    UNBILLED = "unbilled"  # confirmed on-chain but the credit charge was rejected
    FAILED = "failed"


class RepositionPolicy(BaseModel):
    """Validated per-user policy. Built from a ``RepositionSettings`` row."""

    auto_reposition_enabled: bool = False
    urgency_threshold: Urgency = Urgency.MEDIUM
    max_gas_cost_sol: float = Field(default=0.01, ge=0)
    min_fees_to_collect_usd: float = Field(default=1.0, ge=0)
    allowed_strategies: list[Strategy] = Field(default_factory=lambda: [Strategy.SPOT])
    telegram_notifications: bool = True
    in_app_notifications: bool = True

    @field_validator("urgency_threshold")
    @classmethod
    def _threshold_not_none(cls, value: Urgency) -> Urgency:
        if value == Urgency.NONE:
            raise ValueError("urgency_threshold must be low, medium or high")
        return value

    @field_validator("allowed_strategies")
    @classmethod
    def _dedupe_strategies(cls, value: list[Strategy]) -> list[Strategy]:
        seen: list[Strategy] = []
        for item in value:
            if item not in seen:
                seen.append(item)
        if not seen:
            raise ValueError("allowed_strategies must not be empty")
        return seen

    @property
    def preferred_strategy(self) -> Strategy:
        return self.allowed_strategies[0]

    @classmethod
    def from_row(cls, row: Any) -> "RepositionPolicy":
        if row is None:
            return cls()
        return cls(
            auto_reposition_enabled=bool(row.auto_reposition_enabled),
            urgency_threshold=row.urgency_threshold or Urgency.MEDIUM,
            max_gas_cost_sol=row.max_gas_cost_sol if row.max_gas_cost_sol is not None else 0.01,
            min_fees_to_collect_usd=row.min_fees_to_collect_usd or 0.0,
            allowed_strategies=row.allowed_strategies or [Strategy.SPOT],
            telegram_notifications=bool(row.telegram_notifications),
            in_app_notifications=bool(row.in_app_notifications),
        )


class RepositionPolicyUpdate(BaseModel):
    """Partial update accepted by the settings endpoint."""

    auto_reposition_enabled: Optional[bool] = None
    urgency_threshold: Optional[Urgency] = None
    max_gas_cost_sol: Optional[float] = Field(default=None, ge=0)
    min_fees_to_collect_usd: Optional[float] = Field(default=None, ge=0)
    allowed_strategies: Optional[list[Strategy]] = None
    telegram_notifications: Optional[bool] = None
    in_app_notifications: Optional[bool] = None


class HealthAnalysis(BaseModel):
    """Result of analysing one position against its pool's active bin.

    ``distance_from_range`` is signed: negative below ``min_bin``, positive
    above ``max_bin``, zero inside the range.
    """

    status: HealthStatus
    urgency: Urgency = Urgency.NONE
    should_reposition: bool = False
    distance_from_range: int = 0
    active_bin: int
    min_bin: int
    max_bin: int
    buffer_bins: int
    estimated_fee_sol: float = 0.0
    reason: str = ""

    @property
    def bins_out_of_range(self) -> int:
        return abs(self.distance_from_range)


class RepositionDecision(BaseModel):
    """Outcome of the policy chain for one analysed position."""

    action: DecisionAction
    skip_reason: Optional[SkipReason] = None
    mode: Optional[ExecutionMode] = None
    access_mode: AccessMode = AccessMode.NONE
    strategy: Optional[Strategy] = None
    reason: str = ""
