import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from sqlalchemy import func, select

from conftest import BOT_WALLET, POOL, FakePriceFeed, seed_position, seed_user
from interfaces.pool_client import DlmmClientError, OnChainPosition
from models.database import Position
from services.reconciliation import ReconciliationService


def _live(position_id="pos-live", min_bin=100, max_bin=120, x=0.02, y=5.0):
    return OnChainPosition(
        position_id=position_id,
        pool_address=POOL,
        min_bin=min_bin,
        max_bin=max_bin,
        token_x_amount=x,
        token_y_amount=y,
        token_x_fees=0.0001,
        token_y_fees=0.01,
    )


async def _positions(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(Position).order_by(Position.position_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_reconcile_twice_is_idempotent(session_factory, pool_client, price_feed):
    async with session_factory() as session:
        await seed_user(session)
    pool_client.wallet_positions[BOT_WALLET] = [_live()]
    service = ReconciliationService(pool_client, price_feed, session_factory=session_factory)

    first = await service.reconcile_wallet(BOT_WALLET)
    second = await service.reconcile_wallet(BOT_WALLET)

    assert (first.positions_created, first.positions_closed) == (1, 0)
    assert (second.positions_created, second.positions_closed, second.positions_updated) == (0, 0, 1)
    async with session_factory() as session:
        count = (await session.execute(select(func.count(Position.id)))).scalar_one()
    assert count == 1

    [row] = await _positions(session_factory)
    assert row.user_id == "user-1"
    assert row.is_active is True
    assert row.closed_at is None
    assert row.deposit_value_usd == pytest.approx(0.02 * 100000.0 + 5.0 * 150.0)


@pytest.mark.asyncio
async def test_update_refreshes_amounts_and_range(session_factory, pool_client, price_feed):
    async with session_factory() as session:
        await seed_position(session, "pos-live", user_id=None)
    pool_client.wallet_positions[BOT_WALLET] = [_live(min_bin=130, max_bin=150, x=0.5, y=1.0)]
    service = ReconciliationService(pool_client, price_feed, session_factory=session_factory)

    result = await service.reconcile_wallet(BOT_WALLET)

    assert result.positions_created == 0
    [row] = await _positions(session_factory)
    assert (row.min_bin, row.max_bin) == (130, 150)
    assert row.token_x_amount == pytest.approx(0.5)
    assert row.token_y_fees == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_missing_position_is_closed_with_realized_pnl(session_factory, pool_client, price_feed):
    async with session_factory() as session:
        await seed_position(session, "pos-gone", user_id=None, deposit_value_usd=2000.0)
    pool_client.wallet_positions[BOT_WALLET] = []
    service = ReconciliationService(pool_client, price_feed, session_factory=session_factory)

    result = await service.reconcile_wallet(BOT_WALLET)

    assert result.positions_closed == 1
    [row] = await _positions(session_factory)
    assert row.is_active is False
    assert row.closed_at is not None
    assert row.exit_bin == row.entry_bin
    assert row.exit_price == pytest.approx(100000.0)
    # 0.01 zBTC * 100k + 10 SOL * 150 = 2500 against a 2000 deposit
    assert row.pnl_usd == pytest.approx(500.0)
    assert row.pnl_percent == pytest.approx(25.0)


@pytest.mark.asyncio
async def test_close_without_price_leaves_pnl_empty(session_factory, pool_client):
    async with session_factory() as session:
        await seed_position(session, "pos-gone", user_id=None)
    service = ReconciliationService(pool_client, FakePriceFeed({"zBTC": 100000.0}), session_factory=session_factory)

    result = await service.reconcile_wallet(BOT_WALLET)

    assert result.positions_closed == 1
    [row] = await _positions(session_factory)
    assert row.is_active is False
    assert row.pnl_usd is None
    assert row.pnl_percent is None


@pytest.mark.asyncio
async def test_one_bad_position_does_not_abort_the_pass(session_factory, pool_client, price_feed, monkeypatch):
    async with session_factory() as session:
        await seed_position(session, "pos-gone", user_id=None)
    pool_client.wallet_positions[BOT_WALLET] = [_live("pos-bad"), _live("pos-good")]
    service = ReconciliationService(pool_client, price_feed, session_factory=session_factory)

    original = service._upsert

    async def flaky_upsert(session, wallet_address, live, prices, **kwargs):
        if live.position_id == "pos-bad":
            raise ValueError("malformed position account")
        return await original(session, wallet_address, live, prices, **kwargs)

    monkeypatch.setattr(service, "_upsert", flaky_upsert)

    result = await service.reconcile_wallet(BOT_WALLET)

    assert result.errors == 1
    assert result.positions_created == 1
    assert result.positions_closed == 1
    ids = {p.position_id: p.is_active for p in await _positions(session_factory)}
    assert ids == {"pos-good": True, "pos-gone": False}


@pytest.mark.asyncio
async def test_fetch_failure_closes_nothing(session_factory, pool_client, price_feed):
    async with session_factory() as session:
        await seed_position(session, "pos-1", user_id=None)
    pool_client.wallet_errors[BOT_WALLET] = DlmmClientError("sidecar down")
    service = ReconciliationService(pool_client, price_feed, session_factory=session_factory)

    with pytest.raises(DlmmClientError):
        await service.reconcile_wallet(BOT_WALLET)

    [row] = await _positions(session_factory)
    assert row.is_active is True


@pytest.mark.asyncio
async def test_closed_position_seen_again_is_reactivated(session_factory, pool_client, price_feed):
    async with session_factory() as session:
        await seed_position(session, "pos-live", user_id=None)
    service = ReconciliationService(pool_client, price_feed, session_factory=session_factory)

    await service.reconcile_wallet(BOT_WALLET)
    pool_client.wallet_positions[BOT_WALLET] = [_live("pos-live")]
    await service.reconcile_wallet(BOT_WALLET)

    [row] = await _positions(session_factory)
    assert row.is_active is True
    assert row.closed_at is None
    assert row.pnl_usd is None
