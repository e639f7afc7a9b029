# security_oracle/api/models/approval.py
from typing import List

from pydantic import BaseModel, Field

from security_oracle.services.records import RiskFlag


class AuditedApproval(BaseModel):
    """A token approval together with the flags raised against it."""
    chain_id: int
    token_address: str
    token_symbol: str
    spender_address: str
    allowance: str
    is_unlimited: bool
    last_updated: str
    risk_flags: List[RiskFlag] = Field(default_factory=list)


class RiskSummary(BaseModel):
    total_approvals: int
    risky_approvals: int
    unlimited_approvals: int
    stale_approvals: int
    critical_flags: int
    high_flags: int
    medium_flags: int
    low_flags: int
    overall_risk: str


class ApprovalAuditResponse(BaseModel):
    """
    Response model for the /approval-audit endpoint.
    """
    success: bool = True
    wallet: str
    chains: List[int]
    approvals: List[AuditedApproval]
    risk_summary: RiskSummary
    failed_chains: List[int] = Field(default_factory=list)
    timestamp: str
