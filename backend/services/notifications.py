"""Durable notification queue.

One ``pending_notifications`` row per (message, channel). In-app rows are
read by the client and acknowledged; messaging-bot rows are drained by
``services.notifier.TelegramNotifier``.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import PendingNotification, User
from models.reposition import NotificationChannel, NotificationType, RepositionPolicy
from utils.logger import get_logger
from utils.utcnow import to_iso, utcnow

logger = get_logger("notifications")


def channels_for(policy: RepositionPolicy, user: Optional[User]) -> list[NotificationChannel]:
    """Delivery channels the user opted into. Always at least one."""
    channels: list[NotificationChannel] = []
    if policy.in_app_notifications:
        channels.append(NotificationChannel.IN_APP)
    if policy.telegram_notifications and user is not None and user.telegram_id:
        channels.append(NotificationChannel.MESSAGING_BOT)
    return channels or [NotificationChannel.IN_APP]


async def enqueue_notification(
    session: AsyncSession,
    user_id: str,
    notification_type: NotificationType,
    message: str,
    *,
    metadata: Optional[dict[str, Any]] = None,
    channels: Optional[Iterable[NotificationChannel]] = None,
) -> list[PendingNotification]:
    """Add one row per channel. The caller commits."""
    rows: list[PendingNotification] = []
    for channel in channels or [NotificationChannel.IN_APP]:
        row = PendingNotification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            channel=NotificationChannel(channel).value,
            notification_type=NotificationType(notification_type).value,
            message=message,
            metadata_json=dict(metadata or {}),
            is_read=False,
            is_sent=False,
            created_at=utcnow(),
        )
        session.add(row)
        rows.append(row)
    await session.flush()
    return rows


async def list_notifications(
    session: AsyncSession,
    user_id: str,
    *,
    unread_only: bool = False,
    channel: Optional[NotificationChannel] = NotificationChannel.IN_APP,
    limit: int = 50,
) -> list[PendingNotification]:
    query = select(PendingNotification).where(PendingNotification.user_id == user_id)
    if channel is not None:
        query = query.where(PendingNotification.channel == NotificationChannel(channel).value)
    if unread_only:
        query = query.where(PendingNotification.is_read == False)  # noqa: E712
    query = query.order_by(PendingNotification.created_at.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def mark_read(session: AsyncSession, notification_id: str) -> bool:
    result = await session.execute(
        update(PendingNotification)
        .where(PendingNotification.id == notification_id)
        .values(is_read=True, read_at=utcnow())
    )
    await session.commit()
    return result.rowcount == 1


async def fetch_unsent(
    session: AsyncSession,
    channel: NotificationChannel = NotificationChannel.MESSAGING_BOT,
    limit: int = 50,
) -> list[tuple[PendingNotification, Optional[str]]]:
    """Unsent rows for a channel, oldest first, with the recipient's telegram id."""
    result = await session.execute(
        select(PendingNotification, User.telegram_id)
        .join(User, User.id == PendingNotification.user_id, isouter=True)
        .where(
            PendingNotification.channel == NotificationChannel(channel).value,
            PendingNotification.is_sent == False,  # noqa: E712
        )
        .order_by(PendingNotification.created_at.asc())
        .limit(limit)
    )
    return [(row, telegram_id) for row, telegram_id in result.all()]


async def mark_sent(session: AsyncSession, notification_id: str) -> None:
    await session.execute(
        update(PendingNotification)
        .where(PendingNotification.id == notification_id)
        .values(is_sent=True, sent_at=utcnow())
    )
    await session.commit()


def serialize_notification(row: PendingNotification) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "channel": row.channel,
        "type": row.notification_type,
        "message": row.message,
        "metadata": row.metadata_json or {},
        "is_read": bool(row.is_read),
        "is_sent": bool(row.is_sent),
        "created_at": to_iso(row.created_at),
        "read_at": to_iso(row.read_at),
    }
