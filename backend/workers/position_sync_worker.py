"""Position sync worker: reconciles stored positions with the chain on its own schedule.

Run from backend dir:
  python -m workers.position_sync_worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from sqlalchemy import or_, select

from config import settings
from models.database import AsyncSessionLocal, CreditBalance, Subscription, User, Wallet, init_database
from services.monitor_state import POSITION_SYNC_SERVICE, record_tick
from services.reconciliation import ReconciliationService
from utils.logger import short_address
from utils.utcnow import utcnow

logger = logging.getLogger("position_sync_worker")


@dataclass
class SyncStats:
    wallets_synced: int = 0
    positions_updated: int = 0
    positions_created: int = 0
    positions_closed: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


async def list_sync_targets(session) -> list[tuple[str, str]]:
    """(user_id, wallet_address) pairs worth syncing, one entry per wallet.

    A user qualifies with monitoring switched on, a positive credit balance
    on their linked or custody wallet, or an active subscription.
    """
    now = utcnow()
    funded = select(CreditBalance.wallet_address).where(CreditBalance.balance > 0)
    subscribed = select(Subscription.wallet_address).where(
        Subscription.status == "active",
        Subscription.current_period_end > now,
    )
    result = await session.execute(
        select(User, Wallet)
        .join(Wallet, Wallet.user_id == User.id, isouter=True)
        .where(
            or_(
                User.is_monitoring == True,  # noqa: E712
                User.linked_wallet_address.in_(funded),
                User.linked_wallet_address.in_(subscribed),
                Wallet.public_key.in_(funded),
                Wallet.public_key.in_(subscribed),
            )
        )
        .order_by(User.created_at.asc())
    )

    targets: list[tuple[str, str]] = []
    seen: set[str] = set()
    for user, wallet in result.all():
        for address in (wallet.public_key if wallet is not None else None, user.linked_wallet_address):
            if address and address not in seen:
                seen.add(address)
                targets.append((user.id, address))
    return targets


class PositionSyncWorker:
    def __init__(
        self,
        reconciliation: ReconciliationService,
        *,
        session_factory: Callable = AsyncSessionLocal,
    ):
        self.reconciliation = reconciliation
        self._session_factory = session_factory

    async def run_once(self) -> SyncStats:
        started = time.monotonic()
        stats = SyncStats()
        tick_error: Optional[str] = None
        try:
            async with self._session_factory() as session:
                targets = await list_sync_targets(session)
            for user_id, wallet_address in targets:
                try:
                    result = await self.reconciliation.reconcile_wallet(wallet_address, user_id=user_id)
                except Exception:
                    stats.errors += 1
                    logger.exception("Position sync failed for wallet %s", short_address(wallet_address))
                    continue
                stats.wallets_synced += 1
                stats.positions_updated += result.positions_updated
                stats.positions_created += result.positions_created
                stats.positions_closed += result.positions_closed
                stats.errors += result.errors
        except Exception as exc:
            tick_error = str(exc) or type(exc).__name__
            logger.exception("Position sync pass failed")
        stats.duration_seconds = round(time.monotonic() - started, 3)

        try:
            async with self._session_factory() as session:
                await record_tick(
                    session,
                    POSITION_SYNC_SERVICE,
                    positions_scanned=stats.positions_updated,
                    repositions=0,
                    error=tick_error,
                    metadata=stats.to_dict(),
                )
        except Exception:
            logger.exception("Failed to record position sync state")
        return stats


async def _run_loop(worker: PositionSyncWorker, interval_seconds: int) -> None:
    logger.info("Position sync worker started (interval=%ss)", interval_seconds)
    while True:
        stats = await worker.run_once()
        logger.info("Position sync pass complete", extra={"stats": stats.to_dict()})
        await asyncio.sleep(interval_seconds)


async def main() -> None:
    logging.basicConfig(
        level=getattr(logging, os.environ.get("LOG_LEVEL", settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    await init_database()
    logger.info("Database initialized")
    if not settings.POSITION_SYNC_ENABLED:
        logger.info("Position sync disabled by POSITION_SYNC_ENABLED=false")
        return

    from services.dlmm_client import DlmmHttpClient
    from services.price_feed import get_price_feed

    pool_client = DlmmHttpClient()
    worker = PositionSyncWorker(ReconciliationService(pool_client, get_price_feed()))
    try:
        await _run_loop(worker, max(30, settings.POSITION_SYNC_INTERVAL_SECONDS))
    except asyncio.CancelledError:
        logger.info("Position sync worker shutting down")
    finally:
        await pool_client.close()


if __name__ == "__main__":
    asyncio.run(main())
