"""Align stored positions with the wallet's authoritative on-chain position set."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from interfaces.pool_client import OnChainPosition, PoolClient
from models.database import AsyncSessionLocal, Position, User, Wallet
from services.price_feed import PriceFeed, PriceQuote, ZERO_QUOTE
from utils.logger import reconciliation_logger as logger
from utils.logger import short_address
from utils.utcnow import utcnow


@dataclass
class ReconciliationResult:
    wallet_address: str
    positions_updated: int = 0
    positions_created: int = 0
    positions_closed: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _price(prices: dict[str, PriceQuote], symbol: Optional[str]) -> float:
    return float(prices.get(symbol or "", ZERO_QUOTE).price or 0.0)


def close_position(
    position: Position,
    prices: dict[str, PriceQuote],
    *,
    exit_bin: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """Mark ``position`` closed and record exit valuation and realized PnL.

    ``is_active`` and ``closed_at`` always change together. PnL is left empty
    when a price needed for it is unavailable rather than booking a bogus loss.
    """
    now = now or utcnow()
    x_amount = float(position.token_x_amount or 0.0)
    y_amount = float(position.token_y_amount or 0.0)
    x_price = _price(prices, position.token_x_symbol)
    y_price = _price(prices, position.token_y_symbol)

    position.is_active = False
    position.closed_at = now
    position.last_checked_at = now
    position.exit_bin = exit_bin if exit_bin is not None else position.entry_bin
    position.exit_price = x_price or None
    position.token_x_returned = x_amount
    position.token_y_returned = y_amount

    missing_price = (x_amount > 0 and x_price <= 0) or (y_amount > 0 and y_price <= 0)
    if missing_price:
        position.pnl_usd = None
        position.pnl_percent = None
        logger.warning(
            "Closing position without PnL, price unavailable",
            position=short_address(position.position_id),
        )
        return

    exit_value = x_amount * x_price + y_amount * y_price
    if position.deposit_value_usd is not None:
        entry_value = float(position.deposit_value_usd)
    else:
        entry_value = x_amount * float(position.entry_price or x_price) + y_amount * float(
            position.deposit_token_y_price or y_price
        )
    pnl = exit_value - entry_value
    position.pnl_usd = pnl
    position.pnl_percent = (pnl / entry_value * 100.0) if entry_value > 0 else 0.0


def _apply_on_chain_fields(position: Position, live: OnChainPosition, now: datetime) -> None:
    position.pool_address = live.pool_address
    position.min_bin = live.min_bin
    position.max_bin = live.max_bin
    position.token_x_symbol = live.token_x_symbol
    position.token_y_symbol = live.token_y_symbol
    position.token_x_amount = live.token_x_amount
    position.token_y_amount = live.token_y_amount
    position.token_x_fees = live.token_x_fees
    position.token_y_fees = live.token_y_fees
    position.last_checked_at = now


class ReconciliationService:
    """Upserts live positions, closes stale ones. One wallet per call."""

    def __init__(
        self,
        pool_client: PoolClient,
        price_feed: PriceFeed,
        *,
        session_factory: Callable = AsyncSessionLocal,
    ):
        self.pool_client = pool_client
        self.price_feed = price_feed
        self._session_factory = session_factory

    async def _resolve_user(self, session: AsyncSession, wallet_address: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
        """(user_id, linked_wallet_address, wallet source) for a wallet, if any user owns it."""
        result = await session.execute(
            select(User, Wallet)
            .join(Wallet, Wallet.user_id == User.id, isouter=True)
            .where(or_(Wallet.public_key == wallet_address, User.linked_wallet_address == wallet_address))
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None, None, None
        user, wallet = row
        return user.id, user.linked_wallet_address, (wallet.source if wallet is not None else None)

    async def _upsert(
        self,
        session: AsyncSession,
        wallet_address: str,
        live: OnChainPosition,
        prices: dict[str, PriceQuote],
        *,
        user_id: Optional[str],
        linked_wallet_address: Optional[str],
        source: Optional[str],
    ) -> bool:
        """Returns True when a new row was created."""
        now = utcnow()
        result = await session.execute(select(Position).where(Position.position_id == live.position_id))
        position = result.scalar_one_or_none()

        if position is None:
            x_price = _price(prices, live.token_x_symbol)
            y_price = _price(prices, live.token_y_symbol)
            deposit_value = live.token_x_amount * x_price + live.token_y_amount * y_price
            position = Position(
                id=str(uuid.uuid4()),
                position_id=live.position_id,
                user_id=user_id,
                wallet_address=wallet_address,
                linked_wallet_address=linked_wallet_address,
                source=source,
                entry_bin=live.min_bin,
                entry_price=x_price or None,
                deposit_value_usd=deposit_value if (x_price > 0 and y_price > 0) else None,
                deposit_token_x_price=x_price or None,
                deposit_token_y_price=y_price or None,
                is_active=True,
                closed_at=None,
                created_at=now,
            )
            _apply_on_chain_fields(position, live, now)
            session.add(position)
            await session.commit()
            return True

        _apply_on_chain_fields(position, live, now)
        position.wallet_address = wallet_address
        position.linked_wallet_address = linked_wallet_address
        if user_id and not position.user_id:
            position.user_id = user_id
        if not position.is_active:
            logger.warning(
                "Closed position observed on-chain again, reactivating",
                position=short_address(live.position_id),
            )
            position.is_active = True
            position.closed_at = None
            position.exit_bin = None
            position.exit_price = None
            position.pnl_usd = None
            position.pnl_percent = None
        await session.commit()
        return False

    @staticmethod
    def _symbols(live: Iterable[OnChainPosition], stored: Iterable[Position]) -> list[str]:
        symbols: list[str] = []
        for item in list(live) + list(stored):
            for symbol in (item.token_x_symbol, item.token_y_symbol):
                if symbol and symbol not in symbols:
                    symbols.append(symbol)
        return symbols

    async def reconcile_wallet(
        self,
        wallet_address: str,
        *,
        user_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """Fetch the on-chain set, upsert each live position, close the rest.

        Failure to fetch the on-chain set propagates (nothing is closed on a
        partial view). Each position is handled in its own session, so a
        failure on one is logged, counted in ``errors`` and skipped.
        """
        outcome = ReconciliationResult(wallet_address=wallet_address)
        live_positions = await self.pool_client.get_wallet_positions(wallet_address)
        live_ids = {p.position_id for p in live_positions}

        async with self._session_factory() as session:
            owner_id, linked_wallet, source = await self._resolve_user(session, wallet_address)
            stored_result = await session.execute(
                select(Position).where(
                    Position.wallet_address == wallet_address,
                    Position.is_active == True,  # noqa: E712
                )
            )
            stale = [p for p in stored_result.scalars().all() if p.position_id not in live_ids]
        user_id = user_id or owner_id

        prices = await self.price_feed.get_prices(self._symbols(live_positions, stale))

        for live in live_positions:
            try:
                async with self._session_factory() as session:
                    created = await self._upsert(
                        session,
                        wallet_address,
                        live,
                        prices,
                        user_id=user_id,
                        linked_wallet_address=linked_wallet,
                        source=source,
                    )
                outcome.positions_updated += 1
                if created:
                    outcome.positions_created += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                outcome.errors += 1
                logger.exception(
                    "Failed to upsert position",
                    wallet=short_address(wallet_address),
                    position=short_address(live.position_id),
                )

        for position_id in [p.position_id for p in stale]:
            try:
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(Position).where(Position.position_id == position_id)
                    )
                    position = result.scalar_one_or_none()
                    if position is None or not position.is_active:
                        continue
                    close_position(position, prices)
                    await session.commit()
                    pnl_usd = position.pnl_usd
                outcome.positions_closed += 1
                logger.info(
                    "Position no longer on-chain, closed",
                    wallet=short_address(wallet_address),
                    position=short_address(position_id),
                    pnl_usd=pnl_usd,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                outcome.errors += 1
                logger.exception(
                    "Failed to close stale position",
                    wallet=short_address(wallet_address),
                    position=short_address(position_id),
                )

        logger.info(
            "Wallet reconciled",
            wallet=short_address(wallet_address),
            updated=outcome.positions_updated,
            created=outcome.positions_created,
            closed=outcome.positions_closed,
            errors=outcome.errors,
        )
        return outcome
