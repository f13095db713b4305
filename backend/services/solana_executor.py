"""Sign, submit and confirm Solana transactions built by the DLMM service.

Signing is split from submission on purpose: the signature is known as soon
as the transaction is signed, which lets the caller persist a write-ahead
intent keyed by that signature before anything reaches the network.

Outcome classification distinguishes "definitely failed" from "we don't
know". A confirmation timeout is never reported as a failure.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

import httpx

from config import settings
from utils.logger import get_logger, short_address

logger = get_logger("solana_executor")

_CONFIRMED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)


class KeyMaterialError(Exception):
    """Stored wallet secret is missing, undecryptable or not a valid keypair."""


class TransactionSigningError(Exception):
    """The prepared transaction could not be deserialized or signed."""


class TxOutcome(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"  # definitely did not land (preflight rejection or on-chain error)
    TIMEOUT_UNKNOWN = "timeout_unknown"  # may or may not have landed


class TxFailureReason(Enum):
    BLOCKHASH_EXPIRED = "blockhash_expired"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    POSITION_CLOSED = "position_closed"
    SIMULATION_FAILED = "simulation_failed"
    PROGRAM_ERROR = "program_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


def classify_error(error_msg: str) -> TxFailureReason:
    text = (error_msg or "").lower()
    if "blockhash" in text:
        return TxFailureReason.BLOCKHASH_EXPIRED
    if "insufficient" in text or "not enough" in text:
        return TxFailureReason.INSUFFICIENT_FUNDS
    if "slippage" in text or "exceeds desired" in text:
        return TxFailureReason.SLIPPAGE_EXCEEDED
    if "position not found" in text or "already closed" in text or "accountnotinitialized" in text:
        return TxFailureReason.POSITION_CLOSED
    if "simulation" in text:
        return TxFailureReason.SIMULATION_FAILED
    if "program" in text or "instructionerror" in text:
        return TxFailureReason.PROGRAM_ERROR
    if "timeout" in text or "timed out" in text:
        return TxFailureReason.TIMEOUT
    if "connection" in text or "network" in text:
        return TxFailureReason.NETWORK_ERROR
    return TxFailureReason.UNKNOWN


@dataclass
class TxResult:
    outcome: TxOutcome
    signature: Optional[str] = None
    failure_reason: Optional[TxFailureReason] = None
    error_message: Optional[str] = None
    slot: Optional[int] = None

    @property
    def is_success(self) -> bool:
        return self.outcome == TxOutcome.CONFIRMED

    @property
    def is_definitive_failure(self) -> bool:
        return self.outcome == TxOutcome.FAILED


@dataclass(frozen=True)
class SignedTransaction:
    raw: bytes
    signature: str


def load_keypair(secret: str) -> Keypair:
    """Parse key material stored as a JSON byte array or a base58 string."""
    text = (secret or "").strip()
    if not text:
        raise KeyMaterialError("Empty key material")
    try:
        if text.startswith("["):
            values = json.loads(text)
            return Keypair.from_bytes(bytes(values))
        return Keypair.from_base58_string(text)
    except Exception as exc:
        raise KeyMaterialError(f"Invalid key material: {type(exc).__name__}") from exc


def sign_transaction(transaction_b64: str, keypair: Keypair) -> SignedTransaction:
    """Add ``keypair``'s signature to a base64 serialized transaction.

    Legacy and v0 messages both deserialize as ``VersionedTransaction``; the
    signer slot is the keypair's index among the required signers.
    """
    try:
        raw = base64.b64decode(transaction_b64, validate=True)
        tx = VersionedTransaction.from_bytes(raw)
    except Exception as exc:
        raise TransactionSigningError(f"Could not deserialize transaction: {exc}") from exc

    message = tx.message
    required = message.header.num_required_signatures
    signers = list(message.account_keys[:required])
    pubkey = keypair.pubkey()
    if pubkey not in signers:
        raise TransactionSigningError(
            f"Wallet {short_address(str(pubkey))} is not a required signer of the transaction"
        )

    signatures = list(tx.signatures)
    signatures[signers.index(pubkey)] = keypair.sign_message(to_bytes_versioned(message))
    signed = VersionedTransaction.populate(message, signatures)
    return SignedTransaction(raw=bytes(signed), signature=str(signatures[0]))


class TransactionSubmitter(Protocol):
    async def send_and_confirm(self, signed: SignedTransaction) -> TxResult:
        """Submit and wait for confirmed status or a definitive failure."""

    async def get_signature_outcome(self, signature: str) -> TxResult:
        """One-shot status lookup for a previously submitted signature."""


class SolanaRpcSubmitter:
    """``TransactionSubmitter`` over a Solana JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        confirm_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        client: Optional[AsyncClient] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.rpc_url = rpc_url or settings.SOLANA_RPC_URL
        self.confirm_timeout = confirm_timeout or settings.TX_CONFIRM_TIMEOUT_SECONDS
        self.poll_interval = poll_interval or settings.TX_CONFIRM_POLL_SECONDS
        self._client = client
        self._clock = clock

    def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed)
        return self._client

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _status(self, signature: str) -> Optional[TxResult]:
        """Return a terminal TxResult, or None while the signature is unknown/pending."""
        resp = await self._get_client().get_signature_statuses(
            [Signature.from_string(signature)], search_transaction_history=True
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return None
        if status.err is not None:
            error_msg = str(status.err)
            return TxResult(
                outcome=TxOutcome.FAILED,
                signature=signature,
                failure_reason=classify_error(error_msg),
                error_message=error_msg,
                slot=status.slot,
            )
        if status.confirmation_status in _CONFIRMED_STATUSES:
            return TxResult(outcome=TxOutcome.CONFIRMED, signature=signature, slot=status.slot)
        return None

    async def send_and_confirm(self, signed: SignedTransaction) -> TxResult:
        signature = signed.signature
        try:
            await self._get_client().send_raw_transaction(
                signed.raw,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            )
        except RPCException as exc:
            # Preflight rejection: the node refused the transaction outright.
            error_msg = str(exc)
            logger.warning("Transaction rejected by RPC", signature=short_address(signature), error=error_msg)
            return TxResult(
                outcome=TxOutcome.FAILED,
                signature=signature,
                failure_reason=classify_error(error_msg),
                error_message=error_msg,
            )
        except (SolanaRpcException, httpx.HTTPError, OSError) as exc:
            # The request may still have reached a leader; fall through to polling.
            logger.warning(
                "Transaction send errored, polling signature",
                signature=short_address(signature),
                error=str(exc),
            )

        logger.info("Transaction submitted", signature=short_address(signature))
        deadline = self._now() + self.confirm_timeout
        while True:
            try:
                result = await self._status(signature)
            except (SolanaRpcException, httpx.HTTPError, OSError, RPCException) as exc:
                logger.warning("Signature status lookup failed", signature=short_address(signature), error=str(exc))
                result = None
            if result is not None:
                return result
            if self._now() >= deadline:
                logger.warning("Confirmation timed out", signature=short_address(signature))
                return TxResult(
                    outcome=TxOutcome.TIMEOUT_UNKNOWN,
                    signature=signature,
                    failure_reason=TxFailureReason.TIMEOUT,
                    error_message=f"confirmation timeout after {self.confirm_timeout:.0f}s",
                )
            await asyncio.sleep(self.poll_interval)

    async def get_signature_outcome(self, signature: str) -> TxResult:
        try:
            result = await self._status(signature)
        except (SolanaRpcException, httpx.HTTPError, OSError, RPCException) as exc:
            logger.warning("Signature status lookup failed", signature=short_address(signature), error=str(exc))
            result = None
        return result or TxResult(outcome=TxOutcome.TIMEOUT_UNKNOWN, signature=signature)
