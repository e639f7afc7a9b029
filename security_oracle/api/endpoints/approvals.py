# security_oracle/api/endpoints/approvals.py
from datetime import datetime, timezone
from typing import Any
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from security_oracle.api.deps import get_approval_auditor
from security_oracle.api.models.approval import ApprovalAuditResponse
from security_oracle.services.approvals import ApprovalAuditor
from security_oracle.services.records import format_timestamp

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_CHAINS = 10


@router.api_route(
    "/approval-audit",
    methods=["GET", "POST"],
    response_model=ApprovalAuditResponse,
    summary="Wallet Token Approval Audit"
)
async def approval_audit(
    wallet: str = Query(..., pattern=r"^0x[a-fA-F0-9]{40}$", description="Wallet address to audit"),
    chains: str = Query("1", pattern=r"^\d+(,\d+)*$", description="Comma-separated chain IDs (e.g., 1,137,56)"),
    auditor: ApprovalAuditor = Depends(get_approval_auditor),
) -> Any:
    """
    Lists the wallet's active token approvals and flags risky ones
    (unlimited, stale, exploited spender protocol, suspicious spender).
    """
    chain_ids = list(dict.fromkeys(int(c) for c in chains.split(",")))
    if len(chain_ids) > MAX_CHAINS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {MAX_CHAINS} chains can be audited per request"
        )

    try:
        result = await auditor.audit(wallet, chain_ids)
    except Exception as e:
        logger.error(f"/approval-audit failed for {wallet}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to audit approvals"
        )

    logger.info(
        f"Approval audit for {wallet}: {result['risk_summary']['risky_approvals']} of "
        f"{result['risk_summary']['total_approvals']} approvals flagged"
    )
    return ApprovalAuditResponse(
        timestamp=format_timestamp(datetime.now(timezone.utc)),
        **result,
    )
