"""Per-user reposition policy rows."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import RepositionSettings, User, Wallet
from models.reposition import RepositionPolicy, RepositionPolicyUpdate
from utils.utcnow import to_iso, utcnow


async def get_settings_row(session: AsyncSession, user_id: str) -> Optional[RepositionSettings]:
    result = await session.execute(
        select(RepositionSettings).where(RepositionSettings.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_settings(session: AsyncSession, user_id: str) -> RepositionSettings:
    row = await get_settings_row(session, user_id)
    if row is None:
        defaults = RepositionPolicy()
        row = RepositionSettings(
            user_id=user_id,
            auto_reposition_enabled=defaults.auto_reposition_enabled,
            urgency_threshold=defaults.urgency_threshold.value,
            max_gas_cost_sol=defaults.max_gas_cost_sol,
            min_fees_to_collect_usd=defaults.min_fees_to_collect_usd,
            allowed_strategies=[s.value for s in defaults.allowed_strategies],
            telegram_notifications=defaults.telegram_notifications,
            in_app_notifications=defaults.in_app_notifications,
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
    return row


async def update_settings(
    session: AsyncSession, user_id: str, changes: RepositionPolicyUpdate
) -> RepositionSettings:
    row = await get_or_create_settings(session, user_id)
    current = RepositionPolicy.from_row(row)
    merged = RepositionPolicy.model_validate(
        {**current.model_dump(), **changes.model_dump(exclude_unset=True, exclude_none=True)}
    )
    row.auto_reposition_enabled = merged.auto_reposition_enabled
    row.urgency_threshold = merged.urgency_threshold.value
    row.max_gas_cost_sol = merged.max_gas_cost_sol
    row.min_fees_to_collect_usd = merged.min_fees_to_collect_usd
    row.allowed_strategies = [s.value for s in merged.allowed_strategies]
    row.telegram_notifications = merged.telegram_notifications
    row.in_app_notifications = merged.in_app_notifications
    row.updated_at = utcnow()
    await session.commit()
    return row


async def list_auto_reposition_users(
    session: AsyncSession,
) -> list[tuple[RepositionSettings, User, Optional[Wallet]]]:
    """Users with auto-repositioning enabled, with their custody wallet if any."""
    result = await session.execute(
        select(RepositionSettings, User, Wallet)
        .join(User, User.id == RepositionSettings.user_id)
        .join(Wallet, Wallet.user_id == User.id, isouter=True)
        .where(RepositionSettings.auto_reposition_enabled == True)  # noqa: E712
        .order_by(User.created_at.asc())
    )
    return [(settings_row, user, wallet) for settings_row, user, wallet in result.all()]


def serialize_settings(row: RepositionSettings) -> dict[str, Any]:
    policy = RepositionPolicy.from_row(row)
    return {
        "user_id": row.user_id,
        **policy.model_dump(mode="json"),
        "created_at": to_iso(row.created_at),
        "updated_at": to_iso(row.updated_at),
    }
