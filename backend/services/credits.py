"""Credit balances, the append-only credit ledger, and subscriptions.

The balance row is authoritative and the ledger explains it: every change to
``credit_balances.balance`` is paired with a ``credit_transactions`` row in the
same database transaction, so ``balance == sum(ledger.amount)`` per wallet.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import CreditBalance, CreditTransaction, Subscription
from utils.logger import get_logger, short_address
from utils.utcnow import to_iso, utcnow

logger = get_logger("credits")

SUBSCRIPTION_PERIOD_DAYS = 30


class InsufficientCreditsError(Exception):
    """A usage charge would drive the wallet's balance below zero."""

    def __init__(self, wallet_address: str, requested: float):
        self.wallet_address = wallet_address
        self.requested = requested
        super().__init__(f"Insufficient credits for {short_address(wallet_address)} (need {requested})")


async def get_balance_row(session: AsyncSession, wallet_address: str) -> Optional[CreditBalance]:
    result = await session.execute(
        select(CreditBalance)
        .where(CreditBalance.wallet_address == wallet_address)
        # charge_usage decrements with a bulk UPDATE; always read the stored value
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_balance(session: AsyncSession, wallet_address: str) -> float:
    row = await get_balance_row(session, wallet_address)
    return float(row.balance) if row is not None else 0.0


async def ledger_total(session: AsyncSession, wallet_address: str) -> float:
    """Sum of all ledger deltas for the wallet."""
    result = await session.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.wallet_address == wallet_address
        )
    )
    return float(result.scalar_one() or 0)


async def get_active_subscription(
    session: AsyncSession, wallet_address: str, now: Optional[datetime] = None
) -> Optional[Subscription]:
    now = now or utcnow()
    result = await session.execute(
        select(Subscription).where(
            Subscription.wallet_address == wallet_address,
            Subscription.status == "active",
            Subscription.current_period_end > now,
        )
    )
    return result.scalar_one_or_none()


async def has_active_subscription(
    session: AsyncSession, wallet_address: str, now: Optional[datetime] = None
) -> bool:
    return await get_active_subscription(session, wallet_address, now) is not None


async def purchase_credits(
    session: AsyncSession,
    wallet_address: str,
    credits_amount: float,
    usdc_amount_paid: float,
    payment_tx_signature: str,
) -> CreditTransaction:
    """Record a verified credit purchase and commit.

    Payment verification happens upstream. A payment signature that was
    already recorded returns the original ledger row without crediting twice.
    """
    if credits_amount <= 0:
        raise ValueError("credits_amount must be positive")

    existing = await session.execute(
        select(CreditTransaction).where(
            CreditTransaction.payment_tx_signature == payment_tx_signature,
            CreditTransaction.transaction_type == "purchase",
        )
    )
    duplicate = existing.scalar_one_or_none()
    if duplicate is not None:
        logger.info(
            "Duplicate credit purchase ignored",
            wallet=short_address(wallet_address),
            payment=short_address(payment_tx_signature),
        )
        return duplicate

    row = await get_balance_row(session, wallet_address)
    if row is None:
        row = CreditBalance(wallet_address=wallet_address, balance=0.0, total_purchased=0.0, total_used=0.0)
        session.add(row)
        await session.flush()

    before = float(row.balance)
    after = before + credits_amount
    row.balance = after
    row.total_purchased = float(row.total_purchased or 0.0) + credits_amount

    tx = CreditTransaction(
        id=str(uuid.uuid4()),
        wallet_address=wallet_address,
        transaction_type="purchase",
        amount=credits_amount,
        balance_before=before,
        balance_after=after,
        usdc_amount_paid=usdc_amount_paid,
        payment_tx_signature=payment_tx_signature,
        description=f"Purchased {credits_amount:g} credits",
    )
    session.add(tx)
    await session.commit()
    logger.info(
        "Credits purchased",
        wallet=short_address(wallet_address),
        credits=credits_amount,
        balance=after,
    )
    return tx


async def charge_usage(
    session: AsyncSession,
    wallet_address: str,
    *,
    amount: float = 1.0,
    description: str = "Auto-reposition execution",
    related_resource_id: Optional[str] = None,
    payment_tx_signature: Optional[str] = None,
) -> CreditTransaction:
    """Atomically decrement the balance and append the usage ledger row.

    The decrement is a single conditional UPDATE so two writers can never
    push the balance negative. Nothing is committed here; the caller commits
    together with whatever the charge paid for.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")

    result = await session.execute(
        update(CreditBalance)
        .where(CreditBalance.wallet_address == wallet_address, CreditBalance.balance >= amount)
        .values(
            balance=CreditBalance.balance - amount,
            total_used=CreditBalance.total_used + amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientCreditsError(wallet_address, amount)

    refreshed = await session.execute(
        select(CreditBalance.balance).where(CreditBalance.wallet_address == wallet_address)
    )
    after = float(refreshed.scalar_one())
    tx = CreditTransaction(
        id=str(uuid.uuid4()),
        wallet_address=wallet_address,
        transaction_type="usage",
        amount=-amount,
        balance_before=after + amount,
        balance_after=after,
        description=description,
        related_resource_id=related_resource_id,
        payment_tx_signature=payment_tx_signature,
    )
    session.add(tx)
    await session.flush()
    return tx


async def activate_subscription(
    session: AsyncSession,
    wallet_address: str,
    payment_tx_signature: str,
    *,
    tier: str = "premium",
    period_days: int = SUBSCRIPTION_PERIOD_DAYS,
    now: Optional[datetime] = None,
) -> Subscription:
    """Create a subscription, or extend the existing one by one period, and commit."""
    now = now or utcnow()
    result = await session.execute(
        select(Subscription).where(Subscription.wallet_address == wallet_address)
    )
    sub = result.scalar_one_or_none()
    if sub is None:
        sub = Subscription(
            id=str(uuid.uuid4()),
            wallet_address=wallet_address,
            tier=tier,
            status="active",
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
            payment_tx_signature=payment_tx_signature,
        )
        session.add(sub)
    else:
        still_running = sub.status == "active" and sub.current_period_end > now
        start = sub.current_period_end if still_running else now
        if not still_running:
            sub.current_period_start = now
        sub.current_period_end = start + timedelta(days=period_days)
        sub.status = "active"
        sub.tier = tier
        sub.payment_tx_signature = payment_tx_signature
    await session.commit()
    logger.info(
        "Subscription activated",
        wallet=short_address(wallet_address),
        tier=tier,
        period_end=to_iso(sub.current_period_end),
    )
    return sub


async def get_credit_summary(session: AsyncSession, wallet_address: str) -> dict[str, Any]:
    row = await get_balance_row(session, wallet_address)
    sub = await get_active_subscription(session, wallet_address)
    return {
        "wallet_address": wallet_address,
        "balance": float(row.balance) if row else 0.0,
        "total_purchased": float(row.total_purchased) if row else 0.0,
        "total_used": float(row.total_used) if row else 0.0,
        "subscription": (
            {
                "tier": sub.tier,
                "status": sub.status,
                "current_period_start": to_iso(sub.current_period_start),
                "current_period_end": to_iso(sub.current_period_end),
            }
            if sub
            else None
        ),
    }
