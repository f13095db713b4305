"""Execution pathway for out-of-range positions.

Auto-execute builds the correction transaction through the DLMM client,
signs it with the custody key, records a write-ahead intent keyed by the
transaction signature and only then submits. Credits are charged strictly
after the network reports the transaction as confirmed, in the same commit
as the ExecutionRecord and the intent settlement. Intents left ``submitted``
(confirmation timeout or a crash) are resolved by ``recover_pending_intents``
at the start of the next tick.

Notify-only and insufficient-credit paths never touch the network or credits.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from interfaces.pool_client import PoolClient, PositionNotFoundError, PreparedReposition, is_missing_position_message
from models.database import AsyncSessionLocal, Position, RepositionExecution, RepositionIntent, User
from models.reposition import (
    AccessMode,
    ActionTaken,
    ExecutionMode,
    HealthAnalysis,
    IntentStatus,
    NotificationChannel,
    NotificationType,
    RepositionDecision,
    RepositionPolicy,
)
from services.credits import InsufficientCreditsError, charge_usage
from services.notifications import channels_for, enqueue_notification
from services.price_feed import PriceFeed, PriceQuote
from services.reconciliation import close_position
from services.reposition_policy import CREDITS_PER_REPOSITION
from services.reposition_settings import get_settings_row
from services.solana_executor import (
    KeyMaterialError,
    SignedTransaction,
    TransactionSigningError,
    TransactionSubmitter,
    TxFailureReason,
    TxOutcome,
    TxResult,
    load_keypair,
    sign_transaction,
)
from utils.logger import execution_logger as logger
from utils.logger import short_address
from utils.secrets import SecretDecryptionError, decrypt_wallet_secret
from utils.utcnow import utcnow

INSUFFICIENT_CREDITS_MESSAGE = "Auto-reposition paused: Insufficient credits. Please purchase credits to resume."
USAGE_DESCRIPTION = "Auto-reposition execution"


def sign_with_custody_key(transaction_b64: str, encrypted_secret: Optional[str]) -> SignedTransaction:
    """Decrypt the stored key on demand and sign. The plaintext never leaves this call."""
    secret = decrypt_wallet_secret(encrypted_secret)
    return sign_transaction(transaction_b64, load_keypair(secret))


@dataclass
class ExecutionTarget:
    """One analysed position and the wallet context needed to act on it."""

    position_id: str
    pool_address: str
    wallet_address: str  # on-chain owner and signer
    billing_wallet_address: str
    user_id: Optional[str] = None
    encrypted_secret: Optional[str] = None
    policy: RepositionPolicy = field(default_factory=RepositionPolicy)
    channels: list[NotificationChannel] = field(default_factory=lambda: [NotificationChannel.IN_APP])


@dataclass
class ExecutionOutcome:
    action: ActionTaken
    success: bool = False
    signature: Optional[str] = None
    new_position_id: Optional[str] = None
    error: Optional[str] = None
    notifications: int = 0


class RepositionExecutor:
    def __init__(
        self,
        pool_client: PoolClient,
        submitter: TransactionSubmitter,
        price_feed: PriceFeed,
        *,
        session_factory: Callable = AsyncSessionLocal,
        signer: Callable[[str, Optional[str]], SignedTransaction] = sign_with_custody_key,
        intent_expiry: timedelta = timedelta(minutes=settings.INTENT_EXPIRY_MINUTES),
    ):
        self.pool_client = pool_client
        self.submitter = submitter
        self.price_feed = price_feed
        self._session_factory = session_factory
        self._signer = signer
        self._intent_expiry = intent_expiry

    # ------------------------------------------------------------------
    # Notify-only paths
    # ------------------------------------------------------------------

    async def notify_only(
        self, target: ExecutionTarget, analysis: HealthAnalysis, decision: RepositionDecision
    ) -> ExecutionOutcome:
        strategy = (decision.strategy or target.policy.preferred_strategy).value
        message = (
            f"Position out of range! Urgency: {analysis.urgency.value}. "
            f"Estimated gas: {analysis.estimated_fee_sol} SOL."
        )
        metadata = {
            **self._analysis_metadata(target, analysis),
            "recommended_strategy": strategy,
            "min_fees_to_collect_usd": target.policy.min_fees_to_collect_usd,
        }
        count = await self._notify(target, NotificationType.REPOSITION_NEEDED, message, metadata)
        return ExecutionOutcome(action=ActionTaken.NOTIFIED, notifications=count)

    async def notify_insufficient_credits(
        self, target: ExecutionTarget, analysis: HealthAnalysis
    ) -> ExecutionOutcome:
        metadata = {
            **self._analysis_metadata(target, analysis),
            "recommended_strategy": target.policy.preferred_strategy.value,
            "billing_wallet": target.billing_wallet_address,
        }
        count = await self._notify(
            target, NotificationType.INSUFFICIENT_CREDITS, INSUFFICIENT_CREDITS_MESSAGE, metadata
        )
        return ExecutionOutcome(action=ActionTaken.INSUFFICIENT_CREDITS, notifications=count)

    # ------------------------------------------------------------------
    # Auto-execute
    # ------------------------------------------------------------------

    async def execute_auto(
        self, target: ExecutionTarget, analysis: HealthAnalysis, decision: RepositionDecision
    ) -> ExecutionOutcome:
        """Run the full build, sign, submit, confirm, charge sequence for one position.

        Raises PositionNotFoundError when the builder or the network reports
        the position as gone, so the caller can self-heal the stored row.
        Every other failure is recorded and returned.
        """
        strategy = (decision.strategy or target.policy.preferred_strategy).value
        access_mode = decision.access_mode if decision.access_mode != AccessMode.NONE else AccessMode.CREDITS
        log = logger.with_context(
            position=short_address(target.position_id),
            wallet=short_address(target.wallet_address),
        )

        try:
            prepared = await self.pool_client.build_reposition_transaction(
                position_id=target.position_id,
                pool_address=target.pool_address,
                wallet_address=target.wallet_address,
                strategy=strategy,
                bin_range_width=settings.DEFAULT_BIN_RANGE_WIDTH,
                slippage_bps=settings.DEFAULT_SLIPPAGE_BPS,
                max_fee_sol=target.policy.max_gas_cost_sol,
            )
        except PositionNotFoundError:
            raise
        except Exception as exc:
            log.warning("Reposition transaction build failed", error=str(exc))
            return await self._record_failure(
                target, analysis, strategy, f"Failed to build reposition transaction: {exc}"
            )

        if prepared.estimated_fee_sol > target.policy.max_gas_cost_sol:
            return await self._record_failure(
                target,
                analysis,
                strategy,
                f"Estimated fee {prepared.estimated_fee_sol} SOL exceeds budget "
                f"{target.policy.max_gas_cost_sol} SOL",
            )

        try:
            signed = self._signer(prepared.transaction, target.encrypted_secret)
        except (SecretDecryptionError, KeyMaterialError, TransactionSigningError) as exc:
            log.warning("Could not sign reposition transaction", error=str(exc))
            return await self._record_failure(target, analysis, strategy, f"Failed to sign transaction: {exc}")

        await self._write_intent(target, analysis, prepared, strategy, access_mode, signed.signature)
        log.info("Submitting reposition transaction", signature=signed.signature, strategy=strategy)

        try:
            result = await self.submitter.send_and_confirm(signed)
        except Exception as exc:
            log.exception("Submission raised, leaving intent for recovery", signature=signed.signature)
            result = TxResult(
                outcome=TxOutcome.TIMEOUT_UNKNOWN,
                signature=signed.signature,
                failure_reason=TxFailureReason.UNKNOWN,
                error_message=str(exc),
            )

        if result.outcome == TxOutcome.CONFIRMED:
            async with self._session_factory() as session:
                intent = await self._get_intent(session, signed.signature)
                outcome = await self._settle(session, intent, target.channels)
                await session.commit()
            log.info("Reposition confirmed", signature=signed.signature, billed=outcome.success)
            return outcome

        if result.outcome == TxOutcome.FAILED:
            error = result.error_message or "Transaction failed"
            stale = result.failure_reason == TxFailureReason.POSITION_CLOSED or is_missing_position_message(error)
            async with self._session_factory() as session:
                intent = await self._get_intent(session, signed.signature)
                count = await self._fail_intent(session, intent, error, target.channels, notify=not stale)
                await session.commit()
            log.warning("Reposition transaction failed", signature=signed.signature, error=error)
            if stale:
                raise PositionNotFoundError(target.position_id, error)
            return ExecutionOutcome(
                action=ActionTaken.REPOSITION_FAILED,
                signature=signed.signature,
                error=error,
                notifications=count,
            )

        log.warning(
            "Reposition confirmation timed out, outcome unknown",
            signature=signed.signature,
            error=result.error_message,
        )
        return ExecutionOutcome(action=ActionTaken.PENDING_CONFIRMATION, signature=signed.signature)

    # ------------------------------------------------------------------
    # Stale self-healing
    # ------------------------------------------------------------------

    async def close_stale_position(
        self, target: ExecutionTarget, *, exit_bin: Optional[int] = None, reason: str = ""
    ) -> int:
        """Mark a position that no longer exists on-chain as closed. Returns notifications queued."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Position).where(Position.position_id == target.position_id)
            )
            position = result.scalar_one_or_none()
            if position is None or not position.is_active:
                return 0
            prices = await self._prices_for(position)
            close_position(position, prices, exit_bin=exit_bin)
            count = 0
            if target.user_id:
                rows = await enqueue_notification(
                    session,
                    target.user_id,
                    NotificationType.POSITION_CLOSED,
                    f"Position {short_address(target.position_id)} is no longer on-chain and was marked closed.",
                    metadata={
                        "position_id": target.position_id,
                        "pool_address": target.pool_address,
                        "reason": reason,
                        "pnl_usd": position.pnl_usd,
                    },
                    channels=target.channels,
                )
                count = len(rows)
            await session.commit()
        logger.info("Auto-closed stale position", position=short_address(target.position_id), reason=reason)
        return count

    # ------------------------------------------------------------------
    # Write-ahead intent recovery
    # ------------------------------------------------------------------

    async def recover_pending_intents(self) -> int:
        """Resolve intents still ``submitted``. Returns how many were settled or failed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RepositionIntent.transaction_signature)
                .where(RepositionIntent.status == IntentStatus.SUBMITTED.value)
                .order_by(RepositionIntent.created_at.asc())
            )
            signatures = list(result.scalars().all())

        resolved = 0
        for signature in signatures:
            try:
                if await self._recover_one(signature):
                    resolved += 1
            except Exception:
                logger.exception("Failed to recover reposition intent", signature=signature)
        if resolved:
            logger.info("Recovered pending reposition intents", resolved=resolved, pending=len(signatures))
        return resolved

    async def pending_intent_signature(self, position_id: str) -> Optional[str]:
        """Signature of a still-``submitted`` correction for this position, if any."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RepositionIntent.transaction_signature)
                .where(
                    RepositionIntent.position_address == position_id,
                    RepositionIntent.status == IntentStatus.SUBMITTED.value,
                )
                .order_by(RepositionIntent.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _recover_one(self, signature: str) -> bool:
        result = await self.submitter.get_signature_outcome(signature)
        async with self._session_factory() as session:
            intent = await self._get_intent(session, signature)
            if intent is None or intent.status != IntentStatus.SUBMITTED.value:
                return False
            channels = await self._channels_for_user(session, intent.user_id)

            if result.outcome == TxOutcome.CONFIRMED:
                await self._settle(session, intent, channels)
            elif result.outcome == TxOutcome.FAILED:
                await self._fail_intent(session, intent, result.error_message or "Transaction failed", channels)
            elif utcnow() - intent.created_at > self._intent_expiry:
                await self._fail_intent(session, intent, "Transaction expired without landing", channels)
            else:
                return False
            await session.commit()
        logger.info("Resolved reposition intent", signature=signature, outcome=result.outcome.value)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _analysis_metadata(target: ExecutionTarget, analysis: HealthAnalysis) -> dict:
        return {
            "position_id": target.position_id,
            "pool_address": target.pool_address,
            "urgency": analysis.urgency.value,
            "estimated_gas_cost": analysis.estimated_fee_sol,
            "distance_from_range": analysis.distance_from_range,
            "active_bin": analysis.active_bin,
            "min_bin": analysis.min_bin,
            "max_bin": analysis.max_bin,
            "reason": analysis.reason,
        }

    async def _notify(
        self,
        target: ExecutionTarget,
        notification_type: NotificationType,
        message: str,
        metadata: dict,
    ) -> int:
        if not target.user_id:
            return 0
        async with self._session_factory() as session:
            rows = await enqueue_notification(
                session, target.user_id, notification_type, message, metadata=metadata, channels=target.channels
            )
            await session.commit()
        return len(rows)

    async def _channels_for_user(self, session: AsyncSession, user_id: Optional[str]) -> list[NotificationChannel]:
        if not user_id:
            return [NotificationChannel.IN_APP]
        user = await session.get(User, user_id)
        settings_row = await get_settings_row(session, user_id)
        return channels_for(RepositionPolicy.from_row(settings_row), user)

    async def _prices_for(self, position: Optional[Position]) -> dict[str, PriceQuote]:
        if position is None:
            return {}
        symbols = [s for s in (position.token_x_symbol, position.token_y_symbol) if s]
        return await self.price_feed.get_prices(symbols)

    @staticmethod
    async def _get_intent(session: AsyncSession, signature: str) -> Optional[RepositionIntent]:
        result = await session.execute(
            select(RepositionIntent).where(RepositionIntent.transaction_signature == signature)
        )
        return result.scalar_one_or_none()

    async def _write_intent(
        self,
        target: ExecutionTarget,
        analysis: HealthAnalysis,
        prepared: PreparedReposition,
        strategy: str,
        access_mode: AccessMode,
        signature: str,
    ) -> None:
        async with self._session_factory() as session:
            session.add(
                RepositionIntent(
                    id=str(uuid.uuid4()),
                    transaction_signature=signature,
                    user_id=target.user_id,
                    wallet_address=target.wallet_address,
                    billing_wallet_address=target.billing_wallet_address,
                    position_address=target.position_id,
                    new_position_address=prepared.new_position_address,
                    strategy=strategy,
                    access_mode=access_mode.value,
                    active_bin=analysis.active_bin,
                    new_min_bin=prepared.min_bin,
                    new_max_bin=prepared.max_bin,
                    fees_collected_usd=prepared.fees_collected_usd,
                    estimated_fee_sol=prepared.estimated_fee_sol,
                    execution_reason=analysis.reason,
                    status=IntentStatus.SUBMITTED.value,
                )
            )
            await session.commit()

    async def _record_failure(
        self,
        target: ExecutionTarget,
        analysis: HealthAnalysis,
        strategy: str,
        error: str,
    ) -> ExecutionOutcome:
        """Failure before anything reached the network. Credits are untouched."""
        async with self._session_factory() as session:
            session.add(
                RepositionExecution(
                    id=str(uuid.uuid4()),
                    user_id=target.user_id,
                    wallet_address=target.billing_wallet_address,
                    position_address=target.position_id,
                    success=False,
                    gas_cost_sol=0.0,
                    error=error,
                    execution_reason=analysis.reason,
                    execution_mode=ExecutionMode.AUTO.value,
                    strategy=strategy,
                )
            )
            count = 0
            if target.user_id:
                rows = await enqueue_notification(
                    session,
                    target.user_id,
                    NotificationType.REPOSITION_FAILED,
                    f"Auto-reposition failed for position {short_address(target.position_id)}: {error}",
                    metadata={"position_id": target.position_id, "error": error, "strategy": strategy},
                    channels=target.channels,
                )
                count = len(rows)
            await session.commit()
        return ExecutionOutcome(action=ActionTaken.REPOSITION_FAILED, error=error, notifications=count)

    async def _fail_intent(
        self,
        session: AsyncSession,
        intent: RepositionIntent,
        error: str,
        channels: list[NotificationChannel],
        *,
        notify: bool = True,
    ) -> int:
        """Mark a submitted intent failed and append the failed ExecutionRecord. Caller commits."""
        now = utcnow()
        intent.status = IntentStatus.FAILED.value
        intent.error = error
        intent.settled_at = now
        intent.updated_at = now
        session.add(
            RepositionExecution(
                id=str(uuid.uuid4()),
                user_id=intent.user_id,
                wallet_address=intent.billing_wallet_address,
                position_address=intent.position_address,
                success=False,
                gas_cost_sol=0.0,
                error=error,
                transaction_signature=intent.transaction_signature,
                execution_reason=intent.execution_reason,
                execution_mode=ExecutionMode.AUTO.value,
                strategy=intent.strategy,
            )
        )
        if not notify or not intent.user_id:
            return 0
        rows = await enqueue_notification(
            session,
            intent.user_id,
            NotificationType.REPOSITION_FAILED,
            f"Auto-reposition failed for position {short_address(intent.position_address)}: {error}",
            metadata={
                "position_id": intent.position_address,
                "error": error,
                "signature": intent.transaction_signature,
            },
            channels=channels,
        )
        return len(rows)

    async def _settle(
        self,
        session: AsyncSession,
        intent: RepositionIntent,
        channels: list[NotificationChannel],
    ) -> ExecutionOutcome:
        """Book a confirmed transaction: charge, record, roll the position chain. Caller commits."""
        now = utcnow()
        result = await session.execute(
            select(Position).where(Position.position_id == intent.position_address)
        )
        old_position = result.scalar_one_or_none()
        prices = await self._prices_for(old_position)

        charge_error = None
        if intent.access_mode == AccessMode.CREDITS.value:
            try:
                await charge_usage(
                    session,
                    intent.billing_wallet_address,
                    amount=CREDITS_PER_REPOSITION,
                    description=USAGE_DESCRIPTION,
                    related_resource_id=intent.position_address,
                    payment_tx_signature=intent.transaction_signature,
                )
            except InsufficientCreditsError as exc:
                charge_error = f"Confirmed on-chain but credit charge rejected: {exc}"
                logger.error(
                    "Credit charge rejected after confirmation",
                    wallet=short_address(intent.billing_wallet_address),
                    signature=intent.transaction_signature,
                )

        new_position_id = await self._roll_position(session, intent, old_position, prices, now)

        session.add(
            RepositionExecution(
                id=str(uuid.uuid4()),
                user_id=intent.user_id,
                wallet_address=intent.billing_wallet_address,
                position_address=intent.position_address,
                new_position_address=new_position_id,
                success=charge_error is None,
                gas_cost_sol=intent.estimated_fee_sol or 0.0,
                fees_collected_usd=intent.fees_collected_usd,
                error=charge_error,
                transaction_signature=intent.transaction_signature,
                execution_reason=intent.execution_reason,
                execution_mode=ExecutionMode.AUTO.value,
                strategy=intent.strategy,
            )
        )
        intent.status = (IntentStatus.SETTLED if charge_error is None else IntentStatus.UNBILLED).value
        intent.error = charge_error
        intent.settled_at = now
        intent.updated_at = now

        count = 0
        if intent.user_id:
            link = settings.SOLSCAN_TX_URL.format(signature=intent.transaction_signature)
            rows = await enqueue_notification(
                session,
                intent.user_id,
                NotificationType.REPOSITION_SUCCESS,
                f"Position auto-repositioned with {intent.strategy} strategy. "
                f"Gas: {intent.estimated_fee_sol or 0.0} SOL. View transaction: {link}",
                metadata={
                    "position_id": intent.position_address,
                    "new_position_id": new_position_id,
                    "signature": intent.transaction_signature,
                    "strategy": intent.strategy,
                    "gas_cost_sol": intent.estimated_fee_sol,
                    "fees_collected_usd": intent.fees_collected_usd,
                },
                channels=channels,
            )
            count = len(rows)

        return ExecutionOutcome(
            action=ActionTaken.AUTO_REPOSITIONED,
            success=charge_error is None,
            signature=intent.transaction_signature,
            new_position_id=new_position_id,
            error=charge_error,
            notifications=count,
        )

    @staticmethod
    async def _roll_position(
        session: AsyncSession,
        intent: RepositionIntent,
        old_position: Optional[Position],
        prices: dict[str, PriceQuote],
        now,
    ) -> Optional[str]:
        """Close the repositioned row and link its successor. Returns the successor id."""
        if old_position is None:
            return intent.new_position_address

        if old_position.is_active:
            close_position(old_position, prices, exit_bin=intent.active_bin, now=now)

        new_id = intent.new_position_address
        if not new_id or new_id == old_position.position_id:
            return new_id

        result = await session.execute(select(Position).where(Position.position_id == new_id))
        existing = result.scalar_one_or_none()
        if existing is not None:
            if not existing.previous_position_id:
                existing.previous_position_id = old_position.position_id
            return new_id

        x_price = float(prices[old_position.token_x_symbol].price) if old_position.token_x_symbol in prices else 0.0
        y_price = float(prices[old_position.token_y_symbol].price) if old_position.token_y_symbol in prices else 0.0
        x_amount = float(old_position.token_x_amount or 0.0)
        y_amount = float(old_position.token_y_amount or 0.0)
        priced = x_price > 0 and y_price > 0
        session.add(
            Position(
                id=str(uuid.uuid4()),
                position_id=new_id,
                user_id=old_position.user_id or intent.user_id,
                wallet_address=intent.wallet_address,
                pool_address=old_position.pool_address,
                linked_wallet_address=old_position.linked_wallet_address,
                source=old_position.source,
                token_x_symbol=old_position.token_x_symbol,
                token_y_symbol=old_position.token_y_symbol,
                token_x_amount=x_amount,
                token_y_amount=y_amount,
                min_bin=intent.new_min_bin,
                max_bin=intent.new_max_bin,
                entry_bin=intent.new_min_bin if intent.new_min_bin is not None else intent.active_bin,
                entry_price=x_price or None,
                deposit_value_usd=(x_amount * x_price + y_amount * y_price) if priced else None,
                deposit_token_x_price=x_price or None,
                deposit_token_y_price=y_price or None,
                previous_position_id=old_position.position_id,
                is_active=True,
                closed_at=None,
                created_at=now,
                last_checked_at=now,
            )
        )
        return new_id
