"""DLMM pool client contract.

All bin/price math and transaction building lives behind this narrow protocol
so the analyzer, decision engine and worker can run against fakes in tests.
"""

from __future__ import annotations

from typing import Optional, Protocol

from pydantic import BaseModel

_MISSING_POSITION_MARKERS = (
    "position not found",
    "already closed",
    "unknown position account",
    "account does not exist",
)


class DlmmClientError(Exception):
    """Transient or unclassified failure talking to the DLMM service."""


class PositionNotFoundError(DlmmClientError):
    """The position no longer exists on-chain (closed externally)."""

    def __init__(self, position_id: str, message: Optional[str] = None):
        self.position_id = position_id
        super().__init__(message or f"Position not found or already closed: {position_id}")


def is_missing_position_message(message: Optional[str]) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in _MISSING_POSITION_MARKERS)


class ActiveBin(BaseModel):
    pool_address: str
    bin_id: int
    price: Optional[float] = None


class PositionRange(BaseModel):
    position_id: str
    pool_address: str
    min_bin: int
    max_bin: int


class OnChainPosition(BaseModel):
    """One position as currently held on-chain, amounts in UI units."""

    position_id: str
    pool_address: str
    min_bin: int
    max_bin: int
    token_x_symbol: str = "zBTC"
    token_y_symbol: str = "SOL"
    token_x_amount: float = 0.0
    token_y_amount: float = 0.0
    token_x_fees: float = 0.0
    token_y_fees: float = 0.0


class PreparedReposition(BaseModel):
    """Unsigned correction transaction returned by the builder."""

    transaction: str  # base64 serialized, unsigned
    estimated_fee_sol: float = 0.0
    new_position_address: Optional[str] = None
    strategy: str
    min_bin: Optional[int] = None
    max_bin: Optional[int] = None
    fees_collected_usd: Optional[float] = None


class PoolClient(Protocol):
    """Subset of the DLMM SDK that repositioning depends on."""

    async def get_active_bin(self, pool_address: str) -> ActiveBin:
        """Return the bin the pool price currently sits in."""

    async def get_position_range(
        self, position_id: str, pool_address: Optional[str] = None
    ) -> PositionRange:
        """Return the bin range a position covers. Raises PositionNotFoundError."""

    async def get_wallet_positions(self, wallet_address: str) -> list[OnChainPosition]:
        """Return every position the wallet currently holds on-chain."""

    async def build_reposition_transaction(
        self,
        *,
        position_id: str,
        pool_address: str,
        wallet_address: str,
        strategy: str,
        bin_range_width: int,
        slippage_bps: int,
        max_fee_sol: float,
    ) -> PreparedReposition:
        """Build an unsigned close-and-reopen transaction centred on the active bin."""
