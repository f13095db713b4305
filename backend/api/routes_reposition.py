"""Admin and client routes for auto-repositioning."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from interfaces.pool_client import DlmmClientError
from models.database import User, get_db_session
from models.reposition import RepositionPolicyUpdate
from services.credits import activate_subscription, get_credit_summary, purchase_credits
from services.monitor_state import AUTO_REPOSITION_SERVICE, read_monitor_state
from services.notifications import list_notifications, mark_read, serialize_notification
from services.reconciliation import ReconciliationService
from services.reposition_ledger import get_position_chain, get_wallet_reposition_stats
from services.reposition_settings import get_or_create_settings, serialize_settings, update_settings
from utils.logger import api_logger as logger
from utils.logger import short_address
from utils.utcnow import to_iso
from utils.validation import CreditPurchaseParams, SubscriptionActivationParams, validate_solana_address
from workers.auto_reposition_worker import AutoRepositionWorker, get_auto_reposition_worker

router = APIRouter(prefix="/reposition", tags=["Reposition"])


def get_worker() -> AutoRepositionWorker:
    return get_auto_reposition_worker()


def get_reconciliation(worker: AutoRepositionWorker = Depends(get_worker)) -> ReconciliationService:
    if worker.reconciliation is not None:
        return worker.reconciliation
    return ReconciliationService(worker.pool_client, worker.executor.price_feed)


def _wallet_or_400(wallet_address: str) -> str:
    try:
        return validate_solana_address(wallet_address)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


async def _require_user(session: AsyncSession, user_id: str) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"Unknown user '{user_id}'")
    return user


# ==================== WORKER / RECONCILIATION ====================


@router.post("/reconcile/{wallet_address}")
async def force_reconcile(
    wallet_address: str,
    reconciliation: ReconciliationService = Depends(get_reconciliation),
):
    wallet_address = _wallet_or_400(wallet_address)
    try:
        result = await reconciliation.reconcile_wallet(wallet_address)
    except DlmmClientError as exc:
        logger.warning("Forced reconciliation failed", wallet=short_address(wallet_address), error=str(exc))
        raise HTTPException(status_code=502, detail=f"Could not fetch on-chain positions: {exc}")
    return result.to_dict()


@router.post("/worker/tick")
async def force_tick(worker: AutoRepositionWorker = Depends(get_worker)):
    stats = await worker.run_tick()
    return stats.to_dict()


@router.get("/monitor")
async def get_monitor(session: AsyncSession = Depends(get_db_session)):
    return await read_monitor_state(session, AUTO_REPOSITION_SERVICE)


# ==================== SETTINGS ====================


@router.get("/settings/{user_id}")
async def get_settings(user_id: str, session: AsyncSession = Depends(get_db_session)):
    await _require_user(session, user_id)
    row = await get_or_create_settings(session, user_id)
    return serialize_settings(row)


@router.put("/settings/{user_id}")
async def put_settings(
    user_id: str,
    changes: RepositionPolicyUpdate,
    session: AsyncSession = Depends(get_db_session),
):
    await _require_user(session, user_id)
    try:
        row = await update_settings(session, user_id, changes)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    return serialize_settings(row)


# ==================== CREDITS ====================


@router.get("/credits/{wallet_address}")
async def get_credits(wallet_address: str, session: AsyncSession = Depends(get_db_session)):
    wallet_address = _wallet_or_400(wallet_address)
    return await get_credit_summary(session, wallet_address)


@router.post("/credits/purchase")
async def post_credit_purchase(params: CreditPurchaseParams, session: AsyncSession = Depends(get_db_session)):
    tx = await purchase_credits(
        session,
        params.wallet_address,
        params.credits_amount,
        params.usdc_amount_paid,
        params.payment_tx_signature,
    )
    return {
        "transaction_id": tx.id,
        "balance_after": tx.balance_after,
        "credits": await get_credit_summary(session, params.wallet_address),
    }


@router.post("/subscriptions/activate")
async def post_subscription(params: SubscriptionActivationParams, session: AsyncSession = Depends(get_db_session)):
    sub = await activate_subscription(
        session,
        params.wallet_address,
        params.payment_tx_signature,
        tier=params.tier,
        period_days=params.period_days,
    )
    return {
        "wallet_address": sub.wallet_address,
        "tier": sub.tier,
        "status": sub.status,
        "current_period_start": to_iso(sub.current_period_start),
        "current_period_end": to_iso(sub.current_period_end),
    }


# ==================== NOTIFICATIONS ====================


@router.get("/notifications/{user_id}")
async def get_notifications(
    user_id: str,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
):
    rows = await list_notifications(session, user_id, unread_only=unread_only, limit=limit)
    return {"notifications": [serialize_notification(r) for r in rows]}


@router.post("/notifications/{notification_id}/read")
async def post_notification_read(notification_id: str, session: AsyncSession = Depends(get_db_session)):
    if not await mark_read(session, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"id": notification_id, "is_read": True}


# ==================== LEDGER ====================


@router.get("/positions/{position_id}/chain")
async def get_chain(position_id: str, session: AsyncSession = Depends(get_db_session)):
    chain = await get_position_chain(session, position_id)
    if chain is None:
        raise HTTPException(status_code=404, detail="Position not found")
    return chain


@router.get("/wallets/{wallet_address}/stats")
async def get_wallet_stats(wallet_address: str, session: AsyncSession = Depends(get_db_session)):
    wallet_address = _wallet_or_400(wallet_address)
    return await get_wallet_reposition_stats(session, wallet_address)
