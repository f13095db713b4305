"""Reposition decision engine.

Applies a user's policy to an analysed position. Checks run in a fixed order
and stop at the first failure so every skip carries exactly one reason:

1. the analyzer says the position should be repositioned
2. urgency meets the user's threshold
3. the estimated network fee fits the user's budget
4. the wallet holds a usable credit or an active subscription

Insufficient credit always ends in a "paused" notification, whatever the
custody situation. Otherwise wallets whose key material came from the bot's
custody channel are auto-executed and everyone else gets a notification.
"""

from typing import Any, Optional

from models.reposition import (
    AccessMode,
    DecisionAction,
    ExecutionMode,
    HealthAnalysis,
    RepositionDecision,
    RepositionPolicy,
    SkipReason,
)
from utils.secrets import is_encrypted

TRUSTED_CUSTODY_SOURCE = "telegram"
CREDITS_PER_REPOSITION = 1.0


def can_auto_sign(wallet: Optional[Any]) -> bool:
    """True when the wallet's key material is held by the trusted custody channel."""
    if wallet is None:
        return False
    return wallet.source == TRUSTED_CUSTODY_SOURCE and is_encrypted(wallet.encrypted_secret)


def decide_reposition(
    analysis: HealthAnalysis,
    policy: RepositionPolicy,
    *,
    credit_balance: float,
    has_active_subscription: bool,
    auto_sign_available: bool,
) -> RepositionDecision:
    if not analysis.should_reposition:
        return RepositionDecision(
            action=DecisionAction.SKIP,
            skip_reason=SkipReason.POSITION_HEALTHY,
            reason=analysis.reason,
        )

    if not analysis.urgency.at_least(policy.urgency_threshold):
        return RepositionDecision(
            action=DecisionAction.SKIP,
            skip_reason=SkipReason.URGENCY_BELOW_THRESHOLD,
            reason=(
                f"Urgency {analysis.urgency.value} is below threshold "
                f"{policy.urgency_threshold.value}"
            ),
        )

    if analysis.estimated_fee_sol > policy.max_gas_cost_sol:
        return RepositionDecision(
            action=DecisionAction.SKIP,
            skip_reason=SkipReason.FEE_ABOVE_BUDGET,
            reason=(
                f"Estimated fee {analysis.estimated_fee_sol} SOL exceeds budget "
                f"{policy.max_gas_cost_sol} SOL"
            ),
        )

    if has_active_subscription:
        access = AccessMode.SUBSCRIPTION
    elif credit_balance >= CREDITS_PER_REPOSITION:
        access = AccessMode.CREDITS
    else:
        return RepositionDecision(
            action=DecisionAction.INSUFFICIENT_CREDITS,
            skip_reason=SkipReason.INSUFFICIENT_CREDITS,
            mode=ExecutionMode.NOTIFY,
            reason="Insufficient credits and no active subscription",
        )

    mode = ExecutionMode.AUTO if auto_sign_available else ExecutionMode.NOTIFY
    return RepositionDecision(
        action=DecisionAction.AUTO_EXECUTE if mode == ExecutionMode.AUTO else DecisionAction.NOTIFY,
        mode=mode,
        access_mode=access,
        strategy=policy.preferred_strategy,
        reason=analysis.reason,
    )
