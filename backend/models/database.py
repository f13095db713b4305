from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    CheckConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from pathlib import Path
import logging
import os

from config import settings
from models.types import PreciseFloat as Float
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== USERS & WALLETS ====================


class User(Base):
    """A person reachable through the bot and/or the website."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    telegram_id = Column(String, nullable=True, unique=True)
    username = Column(String, nullable=True)
    # Website wallet linked to this account (cross-channel correlation)
    linked_wallet_address = Column(String, nullable=True, index=True)
    is_monitoring = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Wallet(Base):
    """Custody wallet. ``encrypted_secret`` only exists for bot-created wallets."""

    __tablename__ = "wallets"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True)
    public_key = Column(String, nullable=False, index=True)
    encrypted_secret = Column(Text, nullable=True)
    source = Column(String, nullable=False, default="website")  # telegram, website
    created_at = Column(DateTime, default=utcnow)


# ==================== POSITIONS ====================


class Position(Base):
    """Locally persisted view of an on-chain DLMM liquidity position."""

    __tablename__ = "positions"

    id = Column(String, primary_key=True)
    position_id = Column(String, nullable=False, unique=True)  # on-chain address
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    wallet_address = Column(String, nullable=False)
    pool_address = Column(String, nullable=False)
    linked_wallet_address = Column(String, nullable=True)
    source = Column(String, nullable=True)

    token_x_symbol = Column(String, nullable=False, default="zBTC")
    token_y_symbol = Column(String, nullable=False, default="SOL")
    token_x_amount = Column(Float, nullable=False, default=0.0)
    token_y_amount = Column(Float, nullable=False, default=0.0)
    token_x_fees = Column(Float, nullable=False, default=0.0)
    token_y_fees = Column(Float, nullable=False, default=0.0)

    min_bin = Column(Integer, nullable=True)
    max_bin = Column(Integer, nullable=True)
    entry_bin = Column(Integer, nullable=True)
    exit_bin = Column(Integer, nullable=True)
    entry_price = Column(Float, nullable=True)  # token X USD price when first observed
    exit_price = Column(Float, nullable=True)

    # Deposit-time valuation snapshot
    deposit_value_usd = Column(Float, nullable=True)
    deposit_token_x_price = Column(Float, nullable=True)
    deposit_token_y_price = Column(Float, nullable=True)

    token_x_returned = Column(Float, nullable=True)
    token_y_returned = Column(Float, nullable=True)
    pnl_usd = Column(Float, nullable=True)
    pnl_percent = Column(Float, nullable=True)

    previous_position_id = Column(String, nullable=True, index=True)

    is_active = Column(Boolean, nullable=False, default=True)
    closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    last_checked_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(is_active AND closed_at IS NULL) OR (NOT is_active AND closed_at IS NOT NULL)",
            name="positions_closed_consistency",
        ),
        Index("idx_positions_user_active", "user_id", "is_active"),
        Index("idx_positions_wallet_active", "wallet_address", "is_active"),
    )


class RepositionSettings(Base):
    """Per-user auto-reposition policy."""

    __tablename__ = "reposition_settings"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    auto_reposition_enabled = Column(Boolean, nullable=False, default=False)
    urgency_threshold = Column(String, nullable=False, default="medium")
    max_gas_cost_sol = Column(Float, nullable=False, default=0.01)
    min_fees_to_collect_usd = Column(Float, nullable=False, default=1.0)
    allowed_strategies = Column(JSON, nullable=False, default=lambda: ["spot"])
    telegram_notifications = Column(Boolean, nullable=False, default=True)
    in_app_notifications = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ==================== CREDITS & SUBSCRIPTIONS ====================


class CreditBalance(Base):
    """Authoritative running balance for a wallet."""

    __tablename__ = "credit_balances"

    wallet_address = Column(String, primary_key=True)
    balance = Column(Float, nullable=False, default=0.0)
    total_purchased = Column(Float, nullable=False, default=0.0)
    total_used = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (CheckConstraint("balance >= 0", name="credit_balance_non_negative"),)


class CreditTransaction(Base):
    """Append-only credit ledger row. ``amount`` is signed (usage is negative)."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True)
    wallet_address = Column(String, nullable=False)
    transaction_type = Column(String, nullable=False)  # purchase, usage, refund
    amount = Column(Float, nullable=False)
    balance_before = Column(Float, nullable=False)
    balance_after = Column(Float, nullable=False)
    usdc_amount_paid = Column(Float, nullable=True)
    payment_tx_signature = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    related_resource_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_credit_tx_wallet_created", "wallet_address", "created_at"),)


class Subscription(Base):
    """Unlimited-usage subscription. Active while status=active and period not expired."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True)
    wallet_address = Column(String, nullable=False, unique=True)
    tier = Column(String, nullable=False, default="premium")
    status = Column(String, nullable=False, default="active")  # active, cancelled, expired
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    payment_tx_signature = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ==================== NOTIFICATIONS ====================


class PendingNotification(Base):
    """Queued message for one delivery channel."""

    __tablename__ = "pending_notifications"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    channel = Column(String, nullable=False, default="in_app")  # in_app, messaging_bot
    notification_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    metadata_json = Column(JSON, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    is_sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
        Index("idx_notifications_channel_sent", "channel", "is_sent"),
    )


# ==================== MONITORING & EXECUTION LOG ====================


class PositionMonitoringLog(Base):
    """Write-once scan record, one per position per tick."""

    __tablename__ = "position_monitoring_log"

    id = Column(String, primary_key=True)
    position_id = Column(String, nullable=False)
    wallet_address = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    health_status = Column(String, nullable=False)
    urgency = Column(String, nullable=True)
    distance_from_range = Column(Integer, nullable=True)
    active_bin = Column(Integer, nullable=True)
    action_taken = Column(String, nullable=False)
    skip_reason = Column(String, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_monitoring_log_position_created", "position_id", "created_at"),)


class RepositionExecution(Base):
    """Append-only outcome of an attempted auto-execution."""

    __tablename__ = "reposition_executions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True)
    wallet_address = Column(String, nullable=False)
    position_address = Column(String, nullable=False)
    new_position_address = Column(String, nullable=True)
    success = Column(Boolean, nullable=False)
    gas_cost_sol = Column(Float, nullable=True)
    fees_collected_usd = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    transaction_signature = Column(String, nullable=True)
    execution_reason = Column(Text, nullable=True)
    execution_mode = Column(String, nullable=False, default="auto")
    strategy = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_executions_wallet_created", "wallet_address", "created_at"),
        Index("idx_executions_position", "position_address"),
    )


class RepositionIntent(Base):
    """Write-ahead marker persisted after signing and before submission.

    ``status`` moves submitted -> settled | unbilled | failed. A row still ``submitted``
    after a crash or confirmation timeout is resolved by the next tick.
    """

    __tablename__ = "reposition_intents"

    id = Column(String, primary_key=True)
    transaction_signature = Column(String, nullable=False, unique=True)
    user_id = Column(String, nullable=True)
    wallet_address = Column(String, nullable=False)
    billing_wallet_address = Column(String, nullable=False)
    position_address = Column(String, nullable=False)
    new_position_address = Column(String, nullable=True)
    strategy = Column(String, nullable=True)
    access_mode = Column(String, nullable=False, default="credits")  # credits, subscription
    active_bin = Column(Integer, nullable=True)
    new_min_bin = Column(Integer, nullable=True)
    new_max_bin = Column(Integer, nullable=True)
    fees_collected_usd = Column(Float, nullable=True)
    estimated_fee_sol = Column(Float, nullable=True)
    execution_reason = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="submitted")
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    settled_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_intents_status", "status"),)


class MonitorState(Base):
    """Process-wide heartbeat row per worker type."""

    __tablename__ = "monitor_state"

    service_type = Column(String, primary_key=True)
    is_running = Column(Boolean, nullable=False, default=False)
    last_run_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    positions_monitored = Column(Integer, nullable=False, default=0)
    repositions_triggered = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    metadata_json = Column(JSON, default=dict)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class MonitoringMetric(Base):
    """Time-series metric sample written once per worker tick."""

    __tablename__ = "monitoring_metrics"

    id = Column(String, primary_key=True)
    metric_type = Column(String, nullable=False)
    metric_value = Column(Float, nullable=False)
    metadata_json = Column(JSON, default=dict)
    recorded_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_metrics_type_recorded", "metric_type", "recorded_at"),)


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent access between the API and worker processes."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades across the API and worker processes for SQLite."""
    if "sqlite" not in settings.DATABASE_URL:
        yield
        return

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    lock_file = None
    try:
        lock_file = lock_path.open("a", encoding="utf-8")
    except OSError:
        logger.warning("Cannot open migration lock file, proceeding without lock")
        yield
        return

    try:
        if os.name == "posix":
            import fcntl

            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            return

        # Non-POSIX platforms: continue without an OS-level file lock.
        yield
    finally:
        lock_file.close()


async def init_database():
    """Create the SQLite directory if needed and apply Alembic migrations."""
    db_path = settings.sqlite_path()
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session
