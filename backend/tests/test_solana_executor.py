import base64
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from services.solana_executor import (
    KeyMaterialError,
    SignedTransaction,
    SolanaRpcSubmitter,
    TransactionSigningError,
    TxFailureReason,
    TxOutcome,
    classify_error,
    load_keypair,
    sign_transaction,
)

SIG = str(Signature.default())


def _unsigned_transfer(payer: Keypair) -> str:
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    tx = VersionedTransaction.populate(message, [Signature.default()])
    return base64.b64encode(bytes(tx)).decode()


@pytest.mark.parametrize(
    "message,reason",
    [
        ("Blockhash not found", TxFailureReason.BLOCKHASH_EXPIRED),
        ("Attempt to debit an account but found no record of a prior credit; insufficient lamports", TxFailureReason.INSUFFICIENT_FUNDS),
        ("Slippage tolerance exceeded", TxFailureReason.SLIPPAGE_EXCEEDED),
        ("Position already closed", TxFailureReason.POSITION_CLOSED),
        ("InstructionError(0, Custom(6001))", TxFailureReason.PROGRAM_ERROR),
        ("request timed out", TxFailureReason.TIMEOUT),
        ("something odd", TxFailureReason.UNKNOWN),
    ],
)
def test_classify_error(message, reason):
    assert classify_error(message) == reason


def test_load_keypair_accepts_json_bytes_and_base58():
    kp = Keypair()
    assert load_keypair(json.dumps(list(bytes(kp)))).pubkey() == kp.pubkey()
    assert load_keypair(str(kp)).pubkey() == kp.pubkey()


@pytest.mark.parametrize("secret", ["", "   ", "not-a-key", "[1, 2, 3]"])
def test_load_keypair_rejects_bad_material(secret):
    with pytest.raises(KeyMaterialError):
        load_keypair(secret)


def test_sign_transaction_fills_the_payer_slot():
    payer = Keypair()
    signed = sign_transaction(_unsigned_transfer(payer), payer)

    tx = VersionedTransaction.from_bytes(signed.raw)
    assert signed.signature != SIG
    assert str(tx.signatures[0]) == signed.signature


def test_sign_transaction_rejects_non_signer_and_garbage():
    payer = Keypair()
    with pytest.raises(TransactionSigningError):
        sign_transaction(_unsigned_transfer(payer), Keypair())
    with pytest.raises(TransactionSigningError):
        sign_transaction("not base64 at all!", payer)


class _FakeRpc:
    def __init__(self, statuses=None, send_error=None):
        self.statuses = list(statuses or [])
        self.send_error = send_error
        self.sent = []

    async def send_raw_transaction(self, raw, opts=None):
        self.sent.append(raw)
        if self.send_error is not None:
            raise self.send_error
        return SimpleNamespace(value=Signature.default())

    async def get_signature_statuses(self, signatures, search_transaction_history=False):
        status = self.statuses.pop(0) if self.statuses else None
        return SimpleNamespace(value=[status])


def _status(confirmation=None, err=None):
    return SimpleNamespace(confirmation_status=confirmation, err=err, slot=42)


def _submitter(rpc, clock):
    return SolanaRpcSubmitter(
        "http://rpc.invalid", confirm_timeout=5.0, poll_interval=0.001, client=rpc, clock=clock
    )


class _StepClock:
    def __init__(self, step=1.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.mark.asyncio
async def test_confirmed_after_polling():
    rpc = _FakeRpc([None, _status(TransactionConfirmationStatus.Processed), _status(TransactionConfirmationStatus.Confirmed)])
    result = await _submitter(rpc, _StepClock()).send_and_confirm(SignedTransaction(raw=b"tx", signature=SIG))

    assert result.outcome == TxOutcome.CONFIRMED
    assert result.slot == 42
    assert rpc.sent == [b"tx"]


@pytest.mark.asyncio
async def test_preflight_rejection_is_a_definitive_failure():
    rpc = _FakeRpc(send_error=RPCException("Transaction simulation failed: slippage exceeded"))
    result = await _submitter(rpc, _StepClock()).send_and_confirm(SignedTransaction(raw=b"tx", signature=SIG))

    assert result.is_definitive_failure
    assert result.failure_reason == TxFailureReason.SLIPPAGE_EXCEEDED


@pytest.mark.asyncio
async def test_on_chain_error_is_a_failure():
    rpc = _FakeRpc([_status(TransactionConfirmationStatus.Confirmed, err="InstructionError(0, Custom(1))")])
    result = await _submitter(rpc, _StepClock()).send_and_confirm(SignedTransaction(raw=b"tx", signature=SIG))

    assert result.outcome == TxOutcome.FAILED
    assert result.failure_reason == TxFailureReason.PROGRAM_ERROR


@pytest.mark.asyncio
async def test_confirmation_timeout_is_unknown_not_failed():
    rpc = _FakeRpc()
    result = await _submitter(rpc, _StepClock(step=2.0)).send_and_confirm(SignedTransaction(raw=b"tx", signature=SIG))

    assert result.outcome == TxOutcome.TIMEOUT_UNKNOWN
    assert not result.is_definitive_failure


@pytest.mark.asyncio
async def test_signature_lookup_of_unknown_signature():
    result = await _submitter(_FakeRpc(), _StepClock()).get_signature_outcome(SIG)
    assert result.outcome == TxOutcome.TIMEOUT_UNKNOWN
