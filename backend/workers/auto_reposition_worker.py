"""Auto-reposition worker: periodic scan of every user with auto-repositioning on.

Run from backend dir:
  python -m workers.auto_reposition_worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from sqlalchemy import or_, select

from config import settings
from interfaces.pool_client import PoolClient, PositionNotFoundError
from models.database import AsyncSessionLocal, Position, PositionMonitoringLog, init_database
from models.reposition import (
    ActionTaken,
    DecisionAction,
    HealthAnalysis,
    HealthStatus,
    NotificationChannel,
    RepositionPolicy,
    SkipReason,
)
from services.credits import get_balance, has_active_subscription
from services.monitor_state import (
    AUTO_REPOSITION_SERVICE,
    mark_running,
    record_metrics,
    record_tick,
    try_acquire_tick,
)
from services.notifications import channels_for
from services.position_health import analyze_position_health
from services.reconciliation import ReconciliationService
from services.reposition_executor import ExecutionOutcome, ExecutionTarget, RepositionExecutor
from services.reposition_policy import can_auto_sign, decide_reposition
from services.reposition_settings import list_auto_reposition_users
from utils.logger import short_address

logger = logging.getLogger("auto_reposition_worker")


class TickState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class TickGuard:
    """Owned by one scheduler instance. A tick that finds it RUNNING is dropped."""

    def __init__(self) -> None:
        self._state = TickState.IDLE

    @property
    def state(self) -> TickState:
        return self._state

    def try_acquire(self) -> bool:
        if self._state == TickState.RUNNING:
            return False
        self._state = TickState.RUNNING
        return True

    def release(self) -> None:
        self._state = TickState.IDLE


@dataclass
class TickStats:
    users_processed: int = 0
    positions_scanned: int = 0
    repositions_executed: int = 0
    notifications_created: int = 0
    stale_closed: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _UserContext:
    """Plain snapshot of one eligible user, detached from any session."""

    user_id: str
    policy: RepositionPolicy
    channels: list[NotificationChannel]
    custody_wallet: Optional[str] = None
    linked_wallet: Optional[str] = None
    encrypted_secret: Optional[str] = None
    auto_sign: bool = False
    wallets: list[str] = field(default_factory=list)

    @property
    def billing_wallet(self) -> Optional[str]:
        return self.linked_wallet or self.custody_wallet


@dataclass
class _PositionSnapshot:
    position_id: str
    pool_address: str
    wallet_address: str


class AutoRepositionWorker:
    def __init__(
        self,
        pool_client: PoolClient,
        executor: RepositionExecutor,
        reconciliation: Optional[ReconciliationService] = None,
        *,
        session_factory: Callable = AsyncSessionLocal,
        guard: Optional[TickGuard] = None,
        reconcile_before_analysis: Optional[bool] = None,
    ):
        self.pool_client = pool_client
        self.executor = executor
        self.reconciliation = reconciliation
        self._session_factory = session_factory
        self.guard = guard or TickGuard()
        self._reconcile = (
            settings.RECONCILE_BEFORE_ANALYSIS if reconcile_before_analysis is None else reconcile_before_analysis
        )

    async def run_tick(self) -> TickStats:
        """One full pass over eligible users. Never raises.

        The in-process guard drops overlapping ticks of this instance; the
        ``monitor_state`` lease drops ticks started by any other process,
        such as the admin API next to the scheduler.
        """
        if not self.guard.try_acquire():
            logger.info("Auto-reposition tick skipped, previous tick still running")
            return TickStats(skipped=True)

        try:
            async with self._session_factory() as session:
                leased = await try_acquire_tick(session, AUTO_REPOSITION_SERVICE)
        except Exception:
            self.guard.release()
            logger.exception("Could not claim the auto-reposition tick lease")
            return TickStats(skipped=True, errors=1)
        if not leased:
            self.guard.release()
            logger.info("Auto-reposition tick skipped, another process is running one")
            return TickStats(skipped=True)

        started = time.monotonic()
        stats = TickStats()
        tick_error: Optional[str] = None
        try:
            try:
                await self.executor.recover_pending_intents()
            except Exception:
                stats.errors += 1
                logger.exception("Pending intent recovery failed")

            for ctx in await self._load_users(stats):
                stats.users_processed += 1
                try:
                    await self._process_user(ctx, stats)
                except Exception:
                    stats.errors += 1
                    logger.exception("Auto-reposition failed for user %s", ctx.user_id)
        except Exception as exc:
            tick_error = str(exc) or type(exc).__name__
            logger.exception("Auto-reposition tick failed")
        finally:
            stats.duration_seconds = round(time.monotonic() - started, 3)
            try:
                await self._record(stats, tick_error)
            except Exception:
                logger.exception("Failed to record auto-reposition monitor state")
                await self._release_lease()
            self.guard.release()
        return stats

    async def _release_lease(self) -> None:
        try:
            async with self._session_factory() as session:
                await mark_running(session, AUTO_REPOSITION_SERVICE, running=False)
        except Exception:
            logger.exception("Failed to release the auto-reposition tick lease")

    async def _load_users(self, stats: TickStats) -> list[_UserContext]:
        contexts: list[_UserContext] = []
        async with self._session_factory() as session:
            for settings_row, user, wallet in await list_auto_reposition_users(session):
                try:
                    policy = RepositionPolicy.from_row(settings_row)
                except Exception:
                    stats.errors += 1
                    logger.exception("Unreadable reposition settings for user %s", user.id)
                    continue
                ctx = _UserContext(
                    user_id=user.id,
                    policy=policy,
                    channels=channels_for(policy, user),
                    custody_wallet=wallet.public_key if wallet is not None else None,
                    linked_wallet=user.linked_wallet_address,
                    encrypted_secret=wallet.encrypted_secret if wallet is not None else None,
                    auto_sign=can_auto_sign(wallet),
                )
                ctx.wallets = [w for w in dict.fromkeys([ctx.custody_wallet, ctx.linked_wallet]) if w]
                contexts.append(ctx)
        return contexts

    async def _process_user(self, ctx: _UserContext, stats: TickStats) -> None:
        if self._reconcile and self.reconciliation is not None:
            for wallet_address in ctx.wallets:
                try:
                    result = await self.reconciliation.reconcile_wallet(wallet_address, user_id=ctx.user_id)
                    stats.errors += result.errors
                except Exception:
                    stats.errors += 1
                    logger.exception("Reconciliation failed for wallet %s", short_address(wallet_address))

        for snapshot in await self._active_positions(ctx):
            stats.positions_scanned += 1
            await self._process_position(ctx, snapshot, stats)

    async def _active_positions(self, ctx: _UserContext) -> list[_PositionSnapshot]:
        clauses = [Position.user_id == ctx.user_id]
        if ctx.wallets:
            clauses.append(Position.wallet_address.in_(ctx.wallets))
        async with self._session_factory() as session:
            result = await session.execute(
                select(Position)
                .where(
                    or_(*clauses),
                    Position.is_active == True,  # noqa: E712
                    Position.closed_at.is_(None),
                )
                .order_by(Position.created_at.asc())
            )
            return [
                _PositionSnapshot(
                    position_id=p.position_id,
                    pool_address=p.pool_address,
                    wallet_address=p.wallet_address,
                )
                for p in result.scalars().all()
            ]

    async def _process_position(self, ctx: _UserContext, snapshot: _PositionSnapshot, stats: TickStats) -> None:
        target = ExecutionTarget(
            position_id=snapshot.position_id,
            pool_address=snapshot.pool_address,
            wallet_address=snapshot.wallet_address,
            billing_wallet_address=ctx.billing_wallet or snapshot.wallet_address,
            user_id=ctx.user_id,
            encrypted_secret=ctx.encrypted_secret,
            policy=ctx.policy,
            channels=ctx.channels,
        )
        entry = {
            "health_status": HealthStatus.UNKNOWN,
            "urgency": None,
            "distance_from_range": None,
            "active_bin": None,
            "action_taken": ActionTaken.ERROR,
            "skip_reason": None,
            "notification_sent": False,
        }
        try:
            await self._analyze_and_route(ctx, target, entry, stats)
        except Exception:
            stats.errors += 1
            logger.exception("Failed to process position %s", short_address(snapshot.position_id))

        try:
            await self._write_log(target, entry)
        except Exception:
            logger.exception("Failed to write monitoring log for %s", short_address(snapshot.position_id))

    async def _analyze_and_route(
        self, ctx: _UserContext, target: ExecutionTarget, entry: dict, stats: TickStats
    ) -> None:
        pending = await self.executor.pending_intent_signature(target.position_id)
        if pending is not None:
            logger.info(
                "Position %s has an unconfirmed correction %s, not acting again",
                short_address(target.position_id),
                short_address(pending),
            )
            entry.update(
                action_taken=ActionTaken.PENDING_CONFIRMATION,
                skip_reason=SkipReason.AWAITING_CONFIRMATION.value,
            )
            return

        analysis: Optional[HealthAnalysis] = None
        try:
            position_range = await self.pool_client.get_position_range(target.position_id, target.pool_address)
            active = await self.pool_client.get_active_bin(target.pool_address)
            analysis = analyze_position_health(
                position_range.min_bin,
                position_range.max_bin,
                active.bin_id,
                estimated_fee_sol=settings.ESTIMATED_REPOSITION_FEE_SOL,
            )
            entry.update(
                health_status=analysis.status,
                urgency=analysis.urgency.value,
                distance_from_range=analysis.distance_from_range,
                active_bin=analysis.active_bin,
            )

            async with self._session_factory() as session:
                balance = await get_balance(session, target.billing_wallet_address)
                subscribed = await has_active_subscription(session, target.billing_wallet_address)

            decision = decide_reposition(
                analysis,
                ctx.policy,
                credit_balance=balance,
                has_active_subscription=subscribed,
                auto_sign_available=ctx.auto_sign,
            )

            if decision.action == DecisionAction.SKIP:
                entry["skip_reason"] = decision.skip_reason.value if decision.skip_reason else None
                entry["action_taken"] = (
                    ActionTaken.MONITORED if decision.skip_reason == SkipReason.POSITION_HEALTHY else ActionTaken.SKIPPED
                )
                return

            if decision.action == DecisionAction.INSUFFICIENT_CREDITS:
                entry["skip_reason"] = SkipReason.INSUFFICIENT_CREDITS.value
                outcome = await self.executor.notify_insufficient_credits(target, analysis)
            elif decision.action == DecisionAction.NOTIFY:
                outcome = await self.executor.notify_only(target, analysis, decision)
            else:
                outcome = await self.executor.execute_auto(target, analysis, decision)
            self._apply_outcome(outcome, entry, stats)
        except PositionNotFoundError as exc:
            exit_bin = analysis.active_bin if analysis is not None else None
            count = await self.executor.close_stale_position(target, exit_bin=exit_bin, reason=str(exc))
            stats.stale_closed += 1
            stats.notifications_created += count
            entry.update(
                health_status=HealthStatus.CLOSED,
                action_taken=ActionTaken.AUTO_CLOSED_STALE,
                notification_sent=count > 0,
            )

    @staticmethod
    def _apply_outcome(outcome: ExecutionOutcome, entry: dict, stats: TickStats) -> None:
        entry["action_taken"] = outcome.action
        entry["notification_sent"] = outcome.notifications > 0
        stats.notifications_created += outcome.notifications
        if outcome.action == ActionTaken.AUTO_REPOSITIONED:
            stats.repositions_executed += 1

    async def _write_log(self, target: ExecutionTarget, entry: dict) -> None:
        async with self._session_factory() as session:
            session.add(
                PositionMonitoringLog(
                    id=str(uuid.uuid4()),
                    position_id=target.position_id,
                    wallet_address=target.wallet_address,
                    user_id=target.user_id,
                    health_status=HealthStatus(entry["health_status"]).value,
                    urgency=entry["urgency"],
                    distance_from_range=entry["distance_from_range"],
                    active_bin=entry["active_bin"],
                    action_taken=ActionTaken(entry["action_taken"]).value,
                    skip_reason=entry["skip_reason"],
                    notification_sent=bool(entry["notification_sent"]),
                )
            )
            await session.commit()

    async def _record(self, stats: TickStats, tick_error: Optional[str]) -> None:
        samples = {
            "scan_duration": stats.duration_seconds,
            "positions_checked": stats.positions_scanned,
        }
        if stats.repositions_executed > 0:
            samples["repositions_executed"] = stats.repositions_executed
        async with self._session_factory() as session:
            await record_tick(
                session,
                AUTO_REPOSITION_SERVICE,
                positions_scanned=stats.positions_scanned,
                repositions=stats.repositions_executed,
                error=tick_error,
                metadata=stats.to_dict(),
            )
            await record_metrics(session, samples, metadata={"service_type": AUTO_REPOSITION_SERVICE})


_worker: Optional[AutoRepositionWorker] = None


def build_worker() -> AutoRepositionWorker:
    from services.dlmm_client import DlmmHttpClient
    from services.price_feed import get_price_feed
    from services.solana_executor import SolanaRpcSubmitter

    pool_client = DlmmHttpClient()
    price_feed = get_price_feed()
    executor = RepositionExecutor(pool_client, SolanaRpcSubmitter(), price_feed)
    return AutoRepositionWorker(
        pool_client,
        executor,
        ReconciliationService(pool_client, price_feed),
    )


def get_auto_reposition_worker() -> AutoRepositionWorker:
    """Process-wide worker instance shared by the loop and the admin API."""
    global _worker
    if _worker is None:
        _worker = build_worker()
    return _worker


async def _run_loop(worker: AutoRepositionWorker, interval_seconds: int) -> None:
    logger.info("Auto-reposition worker started (interval=%ss)", interval_seconds)
    while True:
        stats = await worker.run_tick()
        if not stats.skipped:
            logger.info("Auto-reposition tick complete", extra={"stats": stats.to_dict()})
        await asyncio.sleep(interval_seconds)


async def main() -> None:
    logging.basicConfig(
        level=getattr(logging, os.environ.get("LOG_LEVEL", settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    await init_database()
    logger.info("Database initialized")
    if not settings.AUTO_REPOSITION_ENABLED:
        logger.info("Auto-reposition disabled by AUTO_REPOSITION_ENABLED=false")
        return
    try:
        await _run_loop(get_auto_reposition_worker(), max(60, settings.AUTO_REPOSITION_INTERVAL_MINUTES * 60))
    except asyncio.CancelledError:
        logger.info("Auto-reposition worker shutting down")


if __name__ == "__main__":
    asyncio.run(main())
