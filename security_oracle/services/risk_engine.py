# security_oracle/services/risk_engine.py
"""
Risk assessment over exploit history and token approvals.

calculate_risk_score() is a pure function of its inputs (and "now"), so
the same exploit set always yields the same score. RiskDetector flags
token approvals and needs the data service only to look up the exploit
history of known spender protocols.
"""
import logging
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set

from security_oracle.services.records import (
    ExploitRecord,
    RiskFactors,
    RiskFlag,
    RiskScore,
    TokenApproval,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(days=30)
EXPLOIT_FREQUENCY_CEILING = 10
TOTAL_LOSS_CEILING_USD = 10_000_000
EXPLOIT_HISTORY_WINDOW = timedelta(days=90)
STALE_AFTER_DAYS = 180

WEIGHT_FREQUENCY = 0.4
WEIGHT_LOSS = 0.3
WEIGHT_RECENCY = 0.3

# (minimum score, level, recommendation), checked top down
RISK_LEVELS = (
    (75, "CRITICAL", "AVOID - High exploit risk detected"),
    (50, "HIGH", "CAUTION - Significant security concerns"),
    (25, "MEDIUM", "MONITOR - Some historical issues"),
    (0, "LOW", "ACCEPTABLE - Low risk profile"),
)

SEVERITY_ORDER = ("critical", "high", "medium", "low")

# Well-known Ethereum router/proxy contracts and the protocol they belong to
DEFAULT_ROUTER_PROTOCOLS: Dict[str, str] = {
    "0x7a250d5630b4cf539739df2c5dacb4c659f2488d": "uniswap-v2",
    "0xe592427a0aece92de3edee1f18e0157c05861564": "uniswap-v3",
    "0x68b3465833fb72a70ecdf485e0e4c7bd8665fc45": "uniswap",
    "0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f": "sushiswap",
    "0x1111111254fb6c44bac0bed2854e76f90643097d": "1inch",
    "0xdef1c0ded9bec7f1a1670819833240f027b25eff": "0x",
}


class ExploitHistory(Protocol):
    async def fetch_exploits(self, protocol: Optional[str] = None,
                             chain: Optional[str] = None) -> List[ExploitRecord]: ...


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _now(now: Optional[datetime]) -> datetime:
    return now.astimezone(timezone.utc) if now else datetime.now(timezone.utc)


def classify_score(score: float):
    """Map a score onto (risk_level, recommendation)."""
    for threshold, level, recommendation in RISK_LEVELS:
        if score >= threshold:
            return level, recommendation
    return RISK_LEVELS[-1][1], RISK_LEVELS[-1][2]


def calculate_risk_score(
    exploits: Sequence[ExploitRecord],
    protocol: str,
    now: Optional[datetime] = None
) -> RiskScore:
    """
    Score a protocol from its exploit history.

    score = 0.4 * frequency + 0.3 * loss + 0.3 * recency, where
    - frequency: exploits in the last 30 days, 10 or more scores 100
    - loss: total loss across all records, $10M or more scores 100
    - recency: latest exploit < 7 days old scores 100, < 30 days 50, else 0

    Component scores are combined unrounded; only the reported components
    and the final score are rounded.
    """
    current = _now(now)
    recent = [e for e in exploits if e.occurred_at > current - RECENT_WINDOW]
    total_loss = sum(e.loss_usd or 0 for e in exploits)
    severity_distribution = dict(Counter(e.severity for e in exploits))

    exploit_frequency_score = min(len(recent) / EXPLOIT_FREQUENCY_CEILING * 100, 100)
    total_loss_score = min(total_loss / TOTAL_LOSS_CEILING_USD * 100, 100)

    if exploits:
        latest = max(e.occurred_at for e in exploits)
        days_since_latest = (current - latest).total_seconds() / 86400
    else:
        days_since_latest = math.inf

    if days_since_latest < 7:
        recency_score = 100
    elif days_since_latest < 30:
        recency_score = 50
    else:
        recency_score = 0

    raw_score = (
        exploit_frequency_score * WEIGHT_FREQUENCY
        + total_loss_score * WEIGHT_LOSS
        + recency_score * WEIGHT_RECENCY
    )
    risk_level, recommendation = classify_score(raw_score)

    return RiskScore(
        protocol=protocol,
        score=max(0, min(100, round_half_up(raw_score))),
        risk_level=risk_level,
        recent_exploits=len(recent),
        total_loss_usd=round_half_up(total_loss),
        recommendation=recommendation,
        factors=RiskFactors(
            exploit_frequency=round_half_up(exploit_frequency_score),
            total_loss=round_half_up(total_loss_score),
            recency=round_half_up(recency_score),
            severity_distribution=severity_distribution,
        ),
    )


class RiskDetector:
    """
    Flags risky token approvals.

    Rules, all evaluated for every approval:
    - unlimited (high): the allowance is unlimited
    - stale (medium): not updated for more than stale_after_days
    - exploited_protocol: the spender is a known router whose protocol has
      exploit history (critical/high severity in 90 days -> critical, any
      exploit in 90 days -> high, older history only -> medium)
    - suspicious_spender (critical): the spender is on the deny list
    """

    def __init__(
        self,
        exploit_history: ExploitHistory,
        router_protocols: Optional[Mapping[str, str]] = None,
        suspicious_spenders: Optional[Iterable[str]] = None,
        stale_after_days: int = STALE_AFTER_DAYS,
    ):
        self.exploit_history = exploit_history
        source = DEFAULT_ROUTER_PROTOCOLS if router_protocols is None else router_protocols
        self.router_protocols = {address.lower(): name for address, name in source.items()}
        self.suspicious_spenders: Set[str] = {a.lower() for a in (suspicious_spenders or ())}
        self.stale_after_days = stale_after_days

    def add_suspicious_spender(self, address: str) -> None:
        self.suspicious_spenders.add(address.lower())

    async def detect_risks(
        self,
        approvals: Sequence[TokenApproval],
        now: Optional[datetime] = None
    ) -> Dict[str, List[RiskFlag]]:
        """
        Flags per approval, keyed "tokenAddress-spenderAddress".

        Approvals that trigger no rule are left out of the mapping.
        """
        current = _now(now)
        history_flags: Dict[str, Optional[RiskFlag]] = {}
        risk_map: Dict[str, List[RiskFlag]] = {}

        for approval in approvals:
            flags: List[RiskFlag] = []

            if approval.is_unlimited:
                flags.append(RiskFlag(
                    type="unlimited",
                    severity="high",
                    description=(
                        f"Unlimited approval granted to {approval.spender_address}. "
                        "This allows the spender to drain all tokens."
                    ),
                ))

            days_since_update = (current - parse_timestamp(approval.last_updated)).total_seconds() / 86400
            if days_since_update > self.stale_after_days:
                flags.append(RiskFlag(
                    type="stale",
                    severity="medium",
                    description=(
                        f"Approval is {round_half_up(days_since_update)} days old. "
                        "Consider revoking unused approvals."
                    ),
                ))

            protocol = self.router_protocols.get(approval.spender_address.lower())
            if protocol:
                if protocol not in history_flags:
                    history_flags[protocol] = await self._check_protocol_history(protocol, current)
                if history_flags[protocol] is not None:
                    flags.append(history_flags[protocol])

            if approval.spender_address.lower() in self.suspicious_spenders:
                flags.append(RiskFlag(
                    type="suspicious_spender",
                    severity="critical",
                    description="Spender address is flagged as suspicious or malicious. Revoke immediately.",
                ))

            if flags:
                risk_map[approval.key] = flags

        logger.info(
            f"Risk detection completed: {len(risk_map)} of {len(approvals)} approvals flagged"
        )
        return risk_map

    async def _check_protocol_history(self, protocol: str, current: datetime) -> Optional[RiskFlag]:
        try:
            exploits = await self.exploit_history.fetch_exploits(protocol, None)
        except Exception as e:
            logger.error(f"Failed to check exploit history for {protocol}: {e}", exc_info=True)
            return None

        if not exploits:
            return None

        recent = [e for e in exploits if e.occurred_at > current - EXPLOIT_HISTORY_WINDOW]
        severe = [e for e in recent if e.severity in ("critical", "high")]

        if severe:
            return RiskFlag(
                type="exploited_protocol",
                severity="critical",
                description=(
                    f"Protocol {protocol} has had {len(severe)} critical/high severity exploit(s) "
                    "in the last 90 days. Exercise extreme caution."
                ),
            )
        if recent:
            return RiskFlag(
                type="exploited_protocol",
                severity="high",
                description=(
                    f"Protocol {protocol} has had {len(recent)} exploit(s) in the last 90 days. "
                    "Review before interaction."
                ),
            )
        return RiskFlag(
            type="exploited_protocol",
            severity="medium",
            description=(
                f"Protocol {protocol} has historical exploit records. "
                f"Total incidents: {len(exploits)}."
            ),
        )


def summarize_approval_risks(
    approvals: Sequence[TokenApproval],
    risk_map: Mapping[str, Sequence[RiskFlag]]
) -> Dict:
    """Counts used in the approval-audit response."""
    flags = [flag for flag_list in risk_map.values() for flag in flag_list]
    by_severity = Counter(flag.severity for flag in flags)
    by_type = Counter(flag.type for flag in flags)

    overall = "LOW"
    for severity in SEVERITY_ORDER:
        if by_severity.get(severity):
            overall = severity.upper()
            break

    return {
        "total_approvals": len(approvals),
        "risky_approvals": len(risk_map),
        "unlimited_approvals": sum(1 for a in approvals if a.is_unlimited),
        "stale_approvals": by_type.get("stale", 0),
        "critical_flags": by_severity.get("critical", 0),
        "high_flags": by_severity.get("high", 0),
        "medium_flags": by_severity.get("medium", 0),
        "low_flags": by_severity.get("low", 0),
        "overall_risk": overall,
    }
