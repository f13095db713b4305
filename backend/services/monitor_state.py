"""Worker heartbeat rows and per-tick metric samples."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import MonitoringMetric, MonitorState
from utils.utcnow import to_iso, utcnow

AUTO_REPOSITION_SERVICE = "auto_reposition_monitor"
POSITION_SYNC_SERVICE = "position_sync"


async def _get_or_create(session: AsyncSession, service_type: str) -> MonitorState:
    result = await session.execute(select(MonitorState).where(MonitorState.service_type == service_type))
    row = result.scalar_one_or_none()
    if row is not None:
        return row
    session.add(
        MonitorState(
            service_type=service_type,
            is_running=False,
            positions_monitored=0,
            repositions_triggered=0,
            error_count=0,
            metadata_json={},
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        # Another process created the row first.
        await session.rollback()
    result = await session.execute(
        select(MonitorState)
        .where(MonitorState.service_type == service_type)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def try_acquire_tick(
    session: AsyncSession,
    service_type: str,
    *,
    lease_timeout: Optional[timedelta] = None,
) -> bool:
    """Claim the running flag with a conditional UPDATE.

    Exactly one caller across processes wins; a flag older than
    ``lease_timeout`` is treated as abandoned and can be taken over.
    """
    if lease_timeout is None:
        lease_timeout = timedelta(minutes=settings.TICK_LEASE_TIMEOUT_MINUTES)
    await _get_or_create(session, service_type)
    now = utcnow()
    result = await session.execute(
        update(MonitorState)
        .where(
            MonitorState.service_type == service_type,
            or_(
                MonitorState.is_running == False,  # noqa: E712
                MonitorState.last_run_at.is_(None),
                MonitorState.last_run_at < now - lease_timeout,
            ),
        )
        .values(is_running=True, last_run_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def mark_running(session: AsyncSession, service_type: str, running: bool = True) -> None:
    row = await _get_or_create(session, service_type)
    row.is_running = running
    if running:
        row.last_run_at = utcnow()
    await session.commit()


async def record_tick(
    session: AsyncSession,
    service_type: str,
    *,
    positions_scanned: int,
    repositions: int,
    error: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> MonitorState:
    """Fold one finished tick into the cumulative counters.

    Counters always include partial progress. ``last_success_at`` only moves
    when the tick finished without an unhandled error.
    """
    now = utcnow()
    row = await _get_or_create(session, service_type)
    row.is_running = False
    row.last_run_at = now
    row.positions_monitored = int(row.positions_monitored or 0) + int(positions_scanned)
    row.repositions_triggered = int(row.repositions_triggered or 0) + int(repositions)
    if error:
        row.error_count = int(row.error_count or 0) + 1
        row.last_error = error
    else:
        row.last_success_at = now
    row.metadata_json = dict(metadata or {})
    row.updated_at = now
    await session.commit()
    return row


async def record_metrics(
    session: AsyncSession,
    samples: dict[str, float],
    *,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    now = utcnow()
    for metric_type, value in samples.items():
        session.add(
            MonitoringMetric(
                id=str(uuid.uuid4()),
                metric_type=metric_type,
                metric_value=float(value),
                metadata_json=dict(metadata or {}),
                recorded_at=now,
            )
        )
    await session.commit()


async def read_monitor_state(session: AsyncSession, service_type: str) -> dict[str, Any]:
    result = await session.execute(select(MonitorState).where(MonitorState.service_type == service_type))
    row = result.scalar_one_or_none()
    if row is None:
        return {
            "service_type": service_type,
            "is_running": False,
            "last_run_at": None,
            "last_success_at": None,
            "positions_monitored": 0,
            "repositions_triggered": 0,
            "error_count": 0,
            "last_error": None,
            "metadata": {},
        }
    return {
        "service_type": row.service_type,
        "is_running": bool(row.is_running),
        "last_run_at": to_iso(row.last_run_at),
        "last_success_at": to_iso(row.last_success_at),
        "positions_monitored": int(row.positions_monitored or 0),
        "repositions_triggered": int(row.repositions_triggered or 0),
        "error_count": int(row.error_count or 0),
        "last_error": row.last_error,
        "metadata": row.metadata_json or {},
    }
