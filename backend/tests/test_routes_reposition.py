import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from api import routes_reposition
from conftest import BOT_WALLET, LINKED_WALLET, seed_position, seed_user
from interfaces.pool_client import DlmmClientError
from models.reposition import NotificationChannel, NotificationType, RepositionPolicyUpdate, Urgency
from services.notifications import enqueue_notification
from services.reconciliation import ReconciliationService
from utils.validation import CreditPurchaseParams, SubscriptionActivationParams

PAYMENT_SIG = "3" * 64


@pytest.mark.asyncio
async def test_settings_roundtrip_and_validation(session_factory):
    async with session_factory() as session:
        await seed_user(session)

        current = await routes_reposition.get_settings("user-1", session)
        assert current["urgency_threshold"] == "medium"

        updated = await routes_reposition.put_settings(
            "user-1",
            RepositionPolicyUpdate(urgency_threshold=Urgency.HIGH, allowed_strategies=["curve", "spot"]),
            session,
        )
        assert updated["urgency_threshold"] == "high"
        assert updated["allowed_strategies"] == ["curve", "spot"]
        assert updated["max_gas_cost_sol"] == 0.01

        with pytest.raises(HTTPException) as excinfo:
            await routes_reposition.put_settings(
                "user-1", RepositionPolicyUpdate(urgency_threshold=Urgency.NONE), session
            )
        assert excinfo.value.status_code == 422

        with pytest.raises(HTTPException) as excinfo:
            await routes_reposition.get_settings("nobody", session)
        assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_credit_purchase_and_summary(session_factory):
    params = CreditPurchaseParams(
        wallet_address=LINKED_WALLET,
        credits_amount=10,
        usdc_amount_paid=10.0,
        payment_tx_signature=PAYMENT_SIG,
    )
    async with session_factory() as session:
        out = await routes_reposition.post_credit_purchase(params, session)
        again = await routes_reposition.post_credit_purchase(params, session)
        summary = await routes_reposition.get_credits(LINKED_WALLET, session)

    assert out["balance_after"] == 10
    assert again["transaction_id"] == out["transaction_id"]
    assert summary["balance"] == 10

    async with session_factory() as session:
        with pytest.raises(HTTPException) as excinfo:
            await routes_reposition.get_credits("not-a-wallet", session)
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_subscription_activation(session_factory):
    params = SubscriptionActivationParams(wallet_address=LINKED_WALLET, payment_tx_signature=PAYMENT_SIG)
    async with session_factory() as session:
        out = await routes_reposition.post_subscription(params, session)
        summary = await routes_reposition.get_credits(LINKED_WALLET, session)

    assert out["status"] == "active"
    assert out["current_period_end"].endswith("Z")
    assert summary["subscription"] is not None


@pytest.mark.asyncio
async def test_notifications_list_and_mark_read(session_factory):
    async with session_factory() as session:
        await seed_user(session)
        await enqueue_notification(
            session,
            "user-1",
            NotificationType.REPOSITION_NEEDED,
            "Position out of range!",
            channels=[NotificationChannel.IN_APP],
        )
        await session.commit()

    async with session_factory() as session:
        listed = await routes_reposition.get_notifications("user-1", False, 50, session)
        [item] = listed["notifications"]
        assert item["type"] == "reposition_needed"
        assert item["is_read"] is False

        assert (await routes_reposition.post_notification_read(item["id"], session))["is_read"] is True
        with pytest.raises(HTTPException) as excinfo:
            await routes_reposition.post_notification_read("missing", session)
        assert excinfo.value.status_code == 404

    async with session_factory() as session:
        unread = await routes_reposition.get_notifications("user-1", True, 50, session)
    assert unread["notifications"] == []


@pytest.mark.asyncio
async def test_chain_and_wallet_stats(session_factory):
    async with session_factory() as session:
        await seed_position(session, "pos-1", user_id=None)
        chain = await routes_reposition.get_chain("pos-1", session)
        stats = await routes_reposition.get_wallet_stats(LINKED_WALLET, session)
        with pytest.raises(HTTPException) as excinfo:
            await routes_reposition.get_chain("missing", session)

    assert chain["length"] == 1
    assert stats["total_executions"] == 0
    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_force_reconcile(session_factory, pool_client, price_feed):
    reconciliation = ReconciliationService(pool_client, price_feed, session_factory=session_factory)
    async with session_factory() as session:
        await seed_position(session, "pos-1", user_id=None)

    out = await routes_reposition.force_reconcile(BOT_WALLET, reconciliation)
    assert out["positions_closed"] == 1

    pool_client.wallet_errors[BOT_WALLET] = DlmmClientError("sidecar down")
    with pytest.raises(HTTPException) as excinfo:
        await routes_reposition.force_reconcile(BOT_WALLET, reconciliation)
    assert excinfo.value.status_code == 502

    with pytest.raises(HTTPException) as excinfo:
        await routes_reposition.force_reconcile("0OIl", reconciliation)
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_force_tick_returns_stats():
    class _Worker:
        async def run_tick(self):
            return SimpleNamespace(to_dict=lambda: {"skipped": True})

    assert await routes_reposition.force_tick(_Worker()) == {"skipped": True}


def test_reconciliation_dependency_prefers_worker_instance():
    shared = object()
    worker = SimpleNamespace(reconciliation=shared)
    assert routes_reposition.get_reconciliation(worker) is shared
