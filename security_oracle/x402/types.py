"""
Type definitions for the Solana x402 payment scheme.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

X402_VERSION = 1
SCHEME_EXACT = "exact"
NETWORK_SOLANA = "solana"
ASSET_SOL = "SOL"


class PaymentClaim(BaseModel):
    """Caller-supplied proof of payment, decoded from the X-PAYMENT header."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    scheme: str
    network: str
    amount: int = Field(ge=0)
    payer: str
    recipient: str
    signature: str = Field(min_length=1)
    resource: str


@dataclass(frozen=True)
class VerificationRecord:
    """A verified signature, honored for one resource until expires_at."""
    signature: str
    resource: str
    expires_at: float


@dataclass(frozen=True)
class ChainTransfer:
    """Normalized answer from the chain lookup collaborator."""
    confirmed: bool
    amount: int = 0
    recipient: Optional[str] = None


@dataclass(frozen=True)
class GateConfig:
    """Per-mount payment requirements."""
    required_amount_lamports: int
    resource_path: str
    description: str = ""
    method: str = "GET"


class ResourceDescriptor(BaseModel):
    """One entry of the `accepts` list in 402 responses and discovery."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    scheme: str = SCHEME_EXACT
    network: str = NETWORK_SOLANA
    max_amount_required: str
    resource: str
    description: str
    mime_type: str = "application/json"
    pay_to: str
    max_timeout_seconds: int = 300
    asset: str = ASSET_SOL
    output_schema: Optional[Dict[str, Any]] = None
    extra: Optional[Dict[str, Any]] = None
