import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import BOT_WALLET, LINKED_WALLET, seed_position, seed_user
from interfaces.pool_client import DlmmClientError
from services.credits import activate_subscription
from services.monitor_state import POSITION_SYNC_SERVICE, read_monitor_state
from services.reconciliation import ReconciliationService
from workers.position_sync_worker import PositionSyncWorker, list_sync_targets

FUNDED_WALLET = "7dHbWXmci3dT8UFYWYZweBLXgycu7Y3iL6trKn1Y7ARj"
SUBSCRIBED_WALLET = "DRpbCBMxVnDK7maPM5tGv6MvB3v1sRMC86PZ8okm21hy"
IDLE_WALLET = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"
SIG = "8" * 64


async def _seed_users(session_factory):
    async with session_factory() as session:
        await seed_user(session, "user-1")
        await seed_user(
            session, "user-2", linked_wallet=FUNDED_WALLET, custody_wallet=None, credits=2.0, is_monitoring=False
        )
        await seed_user(session, "user-3", linked_wallet=SUBSCRIBED_WALLET, custody_wallet=None, is_monitoring=False)
        await seed_user(session, "user-4", linked_wallet=IDLE_WALLET, custody_wallet=None, is_monitoring=False)
        await activate_subscription(session, SUBSCRIBED_WALLET, SIG)


@pytest.mark.asyncio
async def test_sync_targets_cover_monitoring_funded_and_subscribed(session_factory):
    await _seed_users(session_factory)

    async with session_factory() as session:
        targets = await list_sync_targets(session)

    assert sorted(targets) == sorted(
        [
            ("user-1", BOT_WALLET),
            ("user-1", LINKED_WALLET),
            ("user-2", FUNDED_WALLET),
            ("user-3", SUBSCRIBED_WALLET),
        ]
    )


@pytest.mark.asyncio
async def test_run_once_reconciles_each_wallet_and_records_state(session_factory, pool_client, price_feed):
    await _seed_users(session_factory)
    async with session_factory() as session:
        await seed_position(session, "pos-gone")
    pool_client.wallet_errors[FUNDED_WALLET] = DlmmClientError("sidecar down")
    worker = PositionSyncWorker(
        ReconciliationService(pool_client, price_feed, session_factory=session_factory),
        session_factory=session_factory,
    )

    stats = await worker.run_once()

    assert stats.wallets_synced == 3
    assert stats.positions_closed == 1
    assert stats.errors == 1

    async with session_factory() as session:
        state = await read_monitor_state(session, POSITION_SYNC_SERVICE)
    assert state["metadata"]["wallets_synced"] == 3
    assert state["last_success_at"] is not None
