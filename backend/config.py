import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "reposition.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)

# zBTC-SOL is the pool most wallets provide liquidity to.
DEFAULT_TRACKED_TOKENS: dict[str, str] = {
    "zBTC": "zBTCug3er3tLyffELcvDNrKkCymbPWysGcWihESYfLg",
    "SOL": "So11111111111111111111111111111111111111112",
}


class Settings(BaseSettings):
    # Solana RPC
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    TX_CONFIRM_TIMEOUT_SECONDS: float = 60.0  # Give up polling after this, outcome stays unknown
    TX_CONFIRM_POLL_SECONDS: float = 1.0
    SOLSCAN_TX_URL: str = "https://solscan.io/tx/{signature}"

    # DLMM sidecar (wraps the Meteora DLMM SDK: bins, positions, tx building)
    DLMM_SERVICE_URL: str = "http://127.0.0.1:8787"
    DLMM_REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Price feeds
    BIRDEYE_API_KEY: Optional[str] = None
    BIRDEYE_API_URL: str = "https://public-api.birdeye.so"
    JUPITER_PRICE_URL: str = "https://lite-api.jup.ag/price/v3"
    PRICE_CACHE_TTL_SECONDS: float = 30.0
    TRACKED_TOKENS: dict[str, str] = dict(DEFAULT_TRACKED_TOKENS)

    # Auto-reposition worker
    AUTO_REPOSITION_ENABLED: bool = True
    AUTO_REPOSITION_INTERVAL_MINUTES: int = 10
    RECONCILE_BEFORE_ANALYSIS: bool = True  # Refresh a wallet's positions before analysing them
    TICK_LEASE_TIMEOUT_MINUTES: int = 30  # A running flag older than this belongs to a dead process

    # Background position sync worker
    POSITION_SYNC_ENABLED: bool = False
    POSITION_SYNC_INTERVAL_SECONDS: int = 300

    # Health analysis
    REPOSITION_BUFFER_BINS: int = 2
    URGENCY_MEDIUM_DISTANCE_BINS: int = 4
    URGENCY_HIGH_DISTANCE_BINS: int = 5

    # Reposition transaction building
    ESTIMATED_REPOSITION_FEE_SOL: float = 0.0005
    DEFAULT_SLIPPAGE_BPS: int = 100  # 1%
    DEFAULT_BIN_RANGE_WIDTH: int = 69
    INTENT_EXPIRY_MINUTES: int = 15  # Unresolved submitted intents older than this are failed

    # Notifications
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    NOTIFIER_POLL_SECONDS: float = 5.0

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    CORS_ORIGINS: list[str] = ["*"]

    @field_validator(
        "SOLANA_RPC_URL",
        "DLMM_SERVICE_URL",
        "BIRDEYE_API_URL",
        "JUPITER_PRICE_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            return f"{prefix}{absolute}"

        return text

    @field_validator("REPOSITION_BUFFER_BINS")
    @classmethod
    def _non_negative_buffer(cls, value: int) -> int:
        if value < 0:
            raise ValueError("REPOSITION_BUFFER_BINS must be >= 0")
        return value

    @model_validator(mode="after")
    def _order_urgency_thresholds(self) -> "Settings":
        # high >= medium >= 1 keeps urgency monotonic in distance
        medium = max(1, int(self.URGENCY_MEDIUM_DISTANCE_BINS))
        high = max(medium, int(self.URGENCY_HIGH_DISTANCE_BINS))
        if (medium, high) != (self.URGENCY_MEDIUM_DISTANCE_BINS, self.URGENCY_HIGH_DISTANCE_BINS):
            _LOGGER.warning(
                "Urgency thresholds adjusted to keep high >= medium >= 1 (medium=%s, high=%s)",
                medium,
                high,
            )
        object.__setattr__(self, "URGENCY_MEDIUM_DISTANCE_BINS", medium)
        object.__setattr__(self, "URGENCY_HIGH_DISTANCE_BINS", high)
        return self

    def sqlite_path(self) -> Optional[Path]:
        """Filesystem path of the SQLite database, or None for other backends."""
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if self.DATABASE_URL.startswith(prefix):
                path_part = self.DATABASE_URL[len(prefix) :]
                if not path_part or path_part == ":memory:":
                    return None
                return Path(path_part)
        return None

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
