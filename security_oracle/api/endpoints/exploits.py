# security_oracle/api/endpoints/exploits.py
from datetime import datetime, timezone
from typing import Any, Optional
import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from security_oracle.api.deps import get_data_service
from security_oracle.api.models.exploit import ExploitListResponse, RiskScoreResponse
from security_oracle.services.data_service import ResilientDataService
from security_oracle.services.records import format_timestamp
from security_oracle.services.risk_engine import calculate_risk_score

router = APIRouter()
logger = logging.getLogger(__name__)

NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9 ._-]{0,63}$"


@router.api_route(
    "/exploits",
    methods=["GET", "POST"],
    response_model=ExploitListResponse,
    summary="Recent DeFi Exploits"
)
async def list_exploits(
    protocol: Optional[str] = Query(None, pattern=NAME_PATTERN, description="Filter by protocol name"),
    chain: Optional[str] = Query(None, pattern=NAME_PATTERN, description="Filter by blockchain"),
    limit: int = Query(50, ge=1, le=500, description="Maximum results"),
    data_service: ResilientDataService = Depends(get_data_service),
) -> Any:
    """
    Returns exploit records merged from every available source, newest first.

    Upstream failures degrade the result (fewer or no records) instead of
    failing the request.
    """
    started = time.monotonic()
    try:
        exploits = await data_service.fetch_exploits(protocol, chain)
        limited = exploits[:limit]
    except Exception as e:
        logger.error(f"/exploits request failed (protocol={protocol}, chain={chain}): {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch exploits"
        )

    logger.info(f"GET /exploits -> {len(limited)} records in {round((time.monotonic() - started) * 1000)}ms")
    return ExploitListResponse(
        count=len(limited),
        exploits=limited,
        timestamp=format_timestamp(datetime.now(timezone.utc)),
    )


@router.api_route(
    "/risk-score/{protocol}",
    methods=["GET", "POST"],
    response_model=RiskScoreResponse,
    summary="Protocol Risk Score"
)
async def get_risk_score(
    protocol: str = Path(..., pattern=NAME_PATTERN, description="Protocol name"),
    chain: Optional[str] = Query(None, pattern=NAME_PATTERN, description="Filter by blockchain"),
    data_service: ResilientDataService = Depends(get_data_service),
) -> Any:
    """
    Scores a protocol from its exploit history.

    The score is computed fresh on every call; only the underlying exploit
    fetch is cached.
    """
    try:
        exploits = await data_service.fetch_exploits(protocol, chain)
        risk_score = calculate_risk_score(exploits, protocol)
    except Exception as e:
        logger.error(f"/risk-score request failed for {protocol}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to calculate risk score"
        )

    logger.info(f"Risk score calculated for {protocol}: {risk_score.score} ({risk_score.risk_level})")
    return RiskScoreResponse(
        risk_score=risk_score,
        data_points=len(exploits),
        timestamp=format_timestamp(datetime.now(timezone.utc)),
    )
