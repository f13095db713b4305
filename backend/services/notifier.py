"""Telegram dispatcher for queued messaging-bot notifications."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable, Optional

import httpx

from config import settings
from models.database import AsyncSessionLocal
from models.reposition import NotificationChannel
from services import notifications
from utils.logger import get_logger

logger = get_logger("notifier")

TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_MESSAGES_PER_MINUTE = 20
MAX_MESSAGE_LENGTH = 3900
DRAIN_BATCH_SIZE = 50


def _truncate(text: str) -> str:
    body = (text or "").strip()
    if len(body) <= MAX_MESSAGE_LENGTH:
        return body
    return body[: MAX_MESSAGE_LENGTH - 3] + "..."


class TelegramNotifier:
    """Drains unsent ``messaging_bot`` notifications to each user's Telegram chat."""

    def __init__(
        self,
        *,
        bot_token: Optional[str] = None,
        session_factory: Callable = AsyncSessionLocal,
        http_client: Optional[httpx.AsyncClient] = None,
        poll_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bot_token = bot_token if bot_token is not None else settings.TELEGRAM_BOT_TOKEN
        self._session_factory = session_factory
        self._http_client = http_client
        self._poll_seconds = poll_seconds or settings.NOTIFIER_POLL_SECONDS
        self._clock = clock
        self._send_timestamps: deque[float] = deque()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def enabled(self) -> bool:
        return bool(self._bot_token)

    async def start(self) -> None:
        if self._running:
            logger.warning("Notifier already started")
            return
        if not self.enabled:
            logger.info("Telegram bot token not configured -- notifier stays dormant")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Telegram notifier started")

    def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
        logger.info("Telegram notifier stopped")

    async def shutdown(self) -> None:
        self.stop()
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.drain_once()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                logger.error("Notifier drain failed", error=str(exc))
            await asyncio.sleep(self._poll_seconds)

    def _can_send_now(self) -> bool:
        now = self._clock()
        while self._send_timestamps and self._send_timestamps[0] < now - 60:
            self._send_timestamps.popleft()
        return len(self._send_timestamps) < MAX_MESSAGES_PER_MINUTE

    def _record_send(self) -> None:
        self._send_timestamps.append(self._clock())

    async def drain_once(self) -> int:
        """Send as many pending rows as the rate limit allows. Returns messages sent."""
        if not self.enabled:
            return 0

        sent = 0
        async with self._session_factory() as session:
            pending = await notifications.fetch_unsent(
                session, NotificationChannel.MESSAGING_BOT, limit=DRAIN_BATCH_SIZE
            )
            for row, telegram_id in pending:
                if not telegram_id:
                    logger.warning("Dropping bot notification for user without chat id", user_id=row.user_id)
                    await notifications.mark_sent(session, row.id)
                    continue
                if not self._can_send_now():
                    logger.debug("Telegram rate limit reached, deferring", pending=len(pending) - sent)
                    break
                if await self._send_telegram(telegram_id, row.message):
                    self._record_send()
                    await notifications.mark_sent(session, row.id)
                    sent += 1
        return sent

    async def _send_telegram(self, chat_id: str, text: str) -> bool:
        if not self._http_client:
            self._http_client = httpx.AsyncClient(timeout=15.0)

        url = f"{TELEGRAM_API_BASE}/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": _truncate(text),
            "disable_web_page_preview": True,
        }

        try:
            resp = await self._http_client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Telegram API request failed", error=str(exc))
            return False

        if resp.status_code == 200:
            return True
        if resp.status_code == 429:
            try:
                retry_after = resp.json().get("parameters", {}).get("retry_after", 5)
            except ValueError:
                retry_after = 5
            logger.warning("Telegram rate limited", retry_after=retry_after)
            # Fill the window so the next drain waits.
            now = self._clock()
            self._send_timestamps.extend([now] * MAX_MESSAGES_PER_MINUTE)
            return False

        logger.warning("Telegram API error", status=resp.status_code, body=resp.text[:300])
        return False


notifier = TelegramNotifier()
