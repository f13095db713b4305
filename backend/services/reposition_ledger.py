"""Read-side views over positions and executions for audit and reporting."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import Position, RepositionExecution
from utils.utcnow import to_iso

# Guards against a corrupted link cycle.
MAX_CHAIN_LENGTH = 500


def _position_dict(position: Position) -> dict[str, Any]:
    return {
        "position_id": position.position_id,
        "pool_address": position.pool_address,
        "wallet_address": position.wallet_address,
        "previous_position_id": position.previous_position_id,
        "min_bin": position.min_bin,
        "max_bin": position.max_bin,
        "entry_bin": position.entry_bin,
        "exit_bin": position.exit_bin,
        "is_active": bool(position.is_active),
        "created_at": to_iso(position.created_at),
        "closed_at": to_iso(position.closed_at),
        "deposit_value_usd": position.deposit_value_usd,
        "pnl_usd": position.pnl_usd,
        "pnl_percent": position.pnl_percent,
    }


def _execution_dict(row: RepositionExecution) -> dict[str, Any]:
    return {
        "id": row.id,
        "position_address": row.position_address,
        "new_position_address": row.new_position_address,
        "success": bool(row.success),
        "gas_cost_sol": row.gas_cost_sol,
        "fees_collected_usd": row.fees_collected_usd,
        "error": row.error,
        "transaction_signature": row.transaction_signature,
        "execution_reason": row.execution_reason,
        "execution_mode": row.execution_mode,
        "strategy": row.strategy,
        "created_at": to_iso(row.created_at),
    }


async def _position(session: AsyncSession, position_id: str) -> Optional[Position]:
    result = await session.execute(select(Position).where(Position.position_id == position_id))
    return result.scalar_one_or_none()


async def get_position_chain(session: AsyncSession, position_id: str) -> Optional[dict[str, Any]]:
    """Reconstruct the full reposition chain that ``position_id`` belongs to.

    Walks ``previous_position_id`` back to the origin, then forward to the
    newest position. Returns None when the position is unknown.
    """
    start = await _position(session, position_id)
    if start is None:
        return None

    backwards: list[Position] = [start]
    seen = {start.position_id}
    current = start
    while current.previous_position_id and len(seen) < MAX_CHAIN_LENGTH:
        previous = await _position(session, current.previous_position_id)
        if previous is None or previous.position_id in seen:
            break
        backwards.append(previous)
        seen.add(previous.position_id)
        current = previous

    chain = list(reversed(backwards))
    current = start
    while len(seen) < MAX_CHAIN_LENGTH:
        result = await session.execute(
            select(Position)
            .where(Position.previous_position_id == current.position_id)
            .order_by(Position.created_at.asc())
            .limit(1)
        )
        following = result.scalar_one_or_none()
        if following is None or following.position_id in seen:
            break
        chain.append(following)
        seen.add(following.position_id)
        current = following

    addresses = [p.position_id for p in chain]
    exec_result = await session.execute(
        select(RepositionExecution)
        .where(RepositionExecution.position_address.in_(addresses))
        .order_by(RepositionExecution.created_at.asc())
    )
    executions = list(exec_result.scalars().all())
    realized = [p.pnl_usd for p in chain if p.pnl_usd is not None]

    return {
        "position_id": position_id,
        "origin_position_id": chain[0].position_id,
        "current_position_id": chain[-1].position_id,
        "length": len(chain),
        "positions": [_position_dict(p) for p in chain],
        "executions": [_execution_dict(e) for e in executions],
        "total_realized_pnl_usd": sum(realized) if realized else None,
        "total_gas_cost_sol": sum(float(e.gas_cost_sol or 0.0) for e in executions if e.success),
    }


async def get_wallet_reposition_stats(session: AsyncSession, wallet_address: str) -> dict[str, Any]:
    """Aggregate execution outcomes for a wallet."""
    result = await session.execute(
        select(
            func.count(RepositionExecution.id),
            func.coalesce(func.sum(RepositionExecution.gas_cost_sol), 0),
            func.coalesce(func.sum(RepositionExecution.fees_collected_usd), 0),
            func.max(RepositionExecution.created_at),
        ).where(RepositionExecution.wallet_address == wallet_address)
    )
    total, gas_total, fees_total, last_at = result.one()
    success_result = await session.execute(
        select(func.count(RepositionExecution.id)).where(
            RepositionExecution.wallet_address == wallet_address,
            RepositionExecution.success == True,  # noqa: E712
        )
    )
    successful = int(success_result.scalar_one() or 0)
    total = int(total or 0)

    return {
        "wallet_address": wallet_address,
        "total_executions": total,
        "successful": successful,
        "failed": total - successful,
        "success_rate": (successful / total) if total else 0.0,
        "total_gas_cost_sol": float(gas_total or 0.0),
        "total_fees_collected_usd": float(fees_total or 0.0),
        "last_execution_at": to_iso(last_at),
    }
