from .logger import setup_logging, get_logger, short_address, api_logger, execution_logger, reconciliation_logger
from .retry import RetryConfig, retry_async
from .validation import validate_solana_address, CreditPurchaseParams, SubscriptionActivationParams

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "short_address",
    "api_logger",
    "execution_logger",
    "reconciliation_logger",

    # Retry
    "RetryConfig",
    "retry_async",

    # Validation
    "validate_solana_address",
    "CreditPurchaseParams",
    "SubscriptionActivationParams",
]
