# security_oracle/services/records.py
"""
Normalized records shared by the data layer and the risk engine.

Every upstream adapter produces ExploitRecords in exactly this shape, and
every explorer adapter produces TokenApprovals; nothing downstream sees a
provider-specific payload.
"""
from datetime import datetime, timezone
from typing import Dict, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Severity = Literal["critical", "high", "medium", "low"]
RiskLevel = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
FlagType = Literal["unlimited", "stale", "exploited_protocol", "suspicious_spender"]


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """Parse ISO-8601 strings or unix seconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, (int, float)):
        moment = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with a Z suffix and millisecond precision."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class ExploitRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocol: str
    chain: str
    severity: Severity
    loss_usd: float = Field(ge=0)
    timestamp: str
    description: str = ""
    attack_vector: str = "unknown"

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_timestamp(cls, value):
        return format_timestamp(parse_timestamp(value))

    @property
    def occurred_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        """Stable key used to deduplicate records reported by several sources."""
        return (self.protocol.lower(), self.chain.lower(), self.timestamp, self.description)


class TokenApproval(BaseModel):
    model_config = ConfigDict(frozen=True)

    token_address: str
    token_symbol: str = "UNKNOWN"
    spender_address: str
    allowance: str
    is_unlimited: bool
    last_updated: str

    @field_validator("last_updated", mode="before")
    @classmethod
    def _normalize_timestamp(cls, value):
        return format_timestamp(parse_timestamp(value))

    @property
    def key(self) -> str:
        return f"{self.token_address}-{self.spender_address}"


class RiskFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FlagType
    severity: Severity
    description: str


class RiskFactors(BaseModel):
    exploit_frequency: int
    total_loss: int
    recency: int
    severity_distribution: Dict[str, int]


class RiskScore(BaseModel):
    protocol: str
    score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    recent_exploits: int
    total_loss_usd: float
    recommendation: str
    factors: RiskFactors
