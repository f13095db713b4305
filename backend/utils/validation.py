import re
from typing import Optional
from pydantic import BaseModel, field_validator, Field


# Solana public keys are base58 (no 0, O, I, l) and 32-44 characters long
SOLANA_ADDRESS_REGEX = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def validate_solana_address(address: str) -> str:
    """Validate Solana public key format"""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not SOLANA_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Solana address format: {address}")

    return address


class CreditPurchaseParams(BaseModel):
    """Credit purchase recorded after the payment was verified upstream"""
    wallet_address: str
    credits_amount: float = Field(gt=0.0, le=100000.0)
    usdc_amount_paid: float = Field(gt=0.0)
    payment_tx_signature: str = Field(min_length=32, max_length=128)

    @field_validator("wallet_address")
    @classmethod
    def validate_wallet(cls, v: str) -> str:
        return validate_solana_address(v)


class SubscriptionActivationParams(BaseModel):
    """Subscription activation recorded after the payment was verified upstream"""
    wallet_address: str
    payment_tx_signature: str = Field(min_length=32, max_length=128)
    tier: str = "premium"
    period_days: int = Field(default=30, ge=1, le=366)
    payment_proof: Optional[str] = None

    @field_validator("wallet_address")
    @classmethod
    def validate_wallet(cls, v: str) -> str:
        return validate_solana_address(v)
