"""Shared fixtures for auto-reposition tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import itertools
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from interfaces.pool_client import (
    ActiveBin,
    OnChainPosition,
    PositionNotFoundError,
    PositionRange,
    PreparedReposition,
)
from models.database import Base, CreditBalance, Position, RepositionSettings, User, Wallet
from services.price_feed import PriceQuote, ZERO_QUOTE
from services.solana_executor import SignedTransaction, TxOutcome, TxResult
from utils.utcnow import utcnow

BOT_WALLET = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
LINKED_WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
POOL = "5rCf1DM8LjKTw4YqhnoLcngyZYeNnQqztScTogYHAS6"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    db_path = tmp_path / "reposition_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield factory
    await engine.dispose()


async def seed_user(
    session: AsyncSession,
    user_id: str = "user-1",
    *,
    telegram_id: Optional[str] = "1001",
    linked_wallet: Optional[str] = LINKED_WALLET,
    custody_wallet: Optional[str] = BOT_WALLET,
    custody_source: str = "telegram",
    encrypted_secret: Optional[str] = "enc:v1:token",
    auto_reposition: bool = True,
    urgency_threshold: str = "medium",
    max_gas_cost_sol: float = 0.01,
    credits: Optional[float] = None,
    telegram_notifications: bool = False,
    is_monitoring: bool = True,
) -> User:
    user = User(
        id=user_id,
        telegram_id=telegram_id,
        username=user_id,
        linked_wallet_address=linked_wallet,
        is_monitoring=is_monitoring,
        created_at=utcnow(),
    )
    session.add(user)
    if custody_wallet:
        session.add(
            Wallet(
                id=f"wallet-{user_id}",
                user_id=user_id,
                public_key=custody_wallet,
                encrypted_secret=encrypted_secret,
                source=custody_source,
            )
        )
    session.add(
        RepositionSettings(
            user_id=user_id,
            auto_reposition_enabled=auto_reposition,
            urgency_threshold=urgency_threshold,
            max_gas_cost_sol=max_gas_cost_sol,
            min_fees_to_collect_usd=1.0,
            allowed_strategies=["spot"],
            telegram_notifications=telegram_notifications,
            in_app_notifications=True,
        )
    )
    if credits is not None:
        session.add(
            CreditBalance(
                wallet_address=linked_wallet or custody_wallet,
                balance=credits,
                total_purchased=credits,
                total_used=0.0,
            )
        )
    await session.commit()
    return user


async def seed_position(
    session: AsyncSession,
    position_id: str = "pos-1",
    *,
    user_id: Optional[str] = "user-1",
    wallet_address: str = BOT_WALLET,
    min_bin: int = 100,
    max_bin: int = 120,
    token_x_amount: float = 0.01,
    token_y_amount: float = 10.0,
    deposit_value_usd: Optional[float] = 2000.0,
) -> Position:
    position = Position(
        id=f"row-{position_id}",
        position_id=position_id,
        user_id=user_id,
        wallet_address=wallet_address,
        pool_address=POOL,
        linked_wallet_address=LINKED_WALLET,
        token_x_symbol="zBTC",
        token_y_symbol="SOL",
        token_x_amount=token_x_amount,
        token_y_amount=token_y_amount,
        min_bin=min_bin,
        max_bin=max_bin,
        entry_bin=min_bin,
        entry_price=100000.0,
        deposit_value_usd=deposit_value_usd,
        is_active=True,
        closed_at=None,
        created_at=utcnow(),
    )
    session.add(position)
    await session.commit()
    return position


# ---------------------------------------------------------------------------
# Fakes for the network collaborators
# ---------------------------------------------------------------------------


class FakePoolClient:
    """In-memory DLMM client. ``ranges`` keyed by position id, ``active_bins`` by pool."""

    def __init__(self):
        self.ranges: dict[str, tuple[int, int]] = {}
        self.active_bins: dict[str, int] = {}
        self.wallet_positions: dict[str, list[OnChainPosition]] = {}
        self.wallet_errors: dict[str, Exception] = {}
        self.prepared: Optional[PreparedReposition] = None
        self.build_error: Optional[Exception] = None
        self.build_calls: list[dict] = []

    async def get_active_bin(self, pool_address: str) -> ActiveBin:
        return ActiveBin(pool_address=pool_address, bin_id=self.active_bins[pool_address])

    async def get_position_range(self, position_id: str, pool_address: Optional[str] = None) -> PositionRange:
        if position_id not in self.ranges:
            raise PositionNotFoundError(position_id)
        low, high = self.ranges[position_id]
        return PositionRange(position_id=position_id, pool_address=pool_address or POOL, min_bin=low, max_bin=high)

    async def get_wallet_positions(self, wallet_address: str) -> list[OnChainPosition]:
        if wallet_address in self.wallet_errors:
            raise self.wallet_errors[wallet_address]
        return list(self.wallet_positions.get(wallet_address, []))

    async def build_reposition_transaction(self, **kwargs) -> PreparedReposition:
        self.build_calls.append(kwargs)
        if self.build_error is not None:
            raise self.build_error
        return self.prepared or PreparedReposition(
            transaction="dW5zaWduZWQ=",
            estimated_fee_sol=0.0005,
            new_position_address="pos-new",
            strategy=kwargs["strategy"],
            min_bin=121,
            max_bin=189,
            fees_collected_usd=3.5,
        )


class FakePriceFeed:
    def __init__(self, prices: Optional[dict[str, float]] = None):
        self.prices = dict(prices if prices is not None else {"zBTC": 100000.0, "SOL": 150.0})

    async def get_prices(self, symbols):
        return {
            s: (PriceQuote(price=self.prices[s], change_24h=0.0, source="test") if s in self.prices else ZERO_QUOTE)
            for s in symbols
        }


class FakeSubmitter:
    def __init__(self, outcome: TxOutcome = TxOutcome.CONFIRMED, error: Optional[str] = None):
        self.outcome = outcome
        self.error = error
        self.status_outcome: Optional[TxOutcome] = None
        self.sent: list[SignedTransaction] = []

    async def send_and_confirm(self, signed: SignedTransaction) -> TxResult:
        self.sent.append(signed)
        return TxResult(outcome=self.outcome, signature=signed.signature, error_message=self.error)

    async def get_signature_outcome(self, signature: str) -> TxResult:
        return TxResult(outcome=self.status_outcome or self.outcome, signature=signature, error_message=self.error)


_signature_counter = itertools.count(1)


def fake_signer(transaction_b64: str, encrypted_secret: Optional[str]) -> SignedTransaction:
    return SignedTransaction(raw=b"signed", signature=f"sig-{next(_signature_counter)}")


@pytest.fixture
def pool_client():
    return FakePoolClient()


@pytest.fixture
def price_feed():
    return FakePriceFeed()


@pytest.fixture
def submitter():
    return FakeSubmitter()
