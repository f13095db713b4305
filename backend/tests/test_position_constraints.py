import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from conftest import BOT_WALLET, LINKED_WALLET, POOL, seed_position
from models.database import Position
from utils.utcnow import utcnow


@pytest.mark.asyncio
async def test_active_position_with_close_timestamp_is_rejected_on_insert(session_factory):
    async with session_factory() as session:
        session.add(
            Position(
                id="row-bad",
                position_id="pos-bad",
                wallet_address=BOT_WALLET,
                pool_address=POOL,
                linked_wallet_address=LINKED_WALLET,
                min_bin=100,
                max_bin=120,
                is_active=True,
                closed_at=utcnow(),
                created_at=utcnow(),
            )
        )
        with pytest.raises(IntegrityError) as excinfo:
            await session.flush()
        await session.rollback()

    assert "CHECK constraint failed" in str(excinfo.value)


@pytest.mark.asyncio
async def test_closing_requires_both_fields_together(session_factory):
    async with session_factory() as session:
        await seed_position(session, "pos-1")

    async with session_factory() as session:
        position = (await session.execute(select(Position))).scalar_one()
        position.closed_at = utcnow()
        with pytest.raises(IntegrityError):
            await session.commit()
        await session.rollback()

    async with session_factory() as session:
        position = (await session.execute(select(Position))).scalar_one()
        position.is_active = False
        with pytest.raises(IntegrityError):
            await session.commit()
        await session.rollback()

    async with session_factory() as session:
        position = (await session.execute(select(Position))).scalar_one()
        position.is_active = False
        position.closed_at = utcnow()
        await session.commit()

    async with session_factory() as session:
        position = (await session.execute(select(Position))).scalar_one()
    assert position.is_active is False
    assert position.closed_at is not None
