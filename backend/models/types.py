"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator

# Token amounts need 9 decimals (lamports); USD values and credits need far less.
_SCALE = 12
_QUANTUM = Decimal(1).scaleb(-_SCALE)


class PreciseFloat(TypeDecorator):
    """Store token amounts, prices and credit balances as NUMERIC.

    Values go in and come out as ``float`` so service code stays simple, but
    the database sees fixed-scale decimals. Ledger sums therefore compare
    exactly against the balance row.
    """

    impl = Numeric(28, _SCALE, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        try:
            number = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid numeric value: {value!r}") from exc
        if not number.is_finite():
            raise ValueError(f"Non-finite numeric value: {value!r}")
        return number.quantize(_QUANTUM)

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)
