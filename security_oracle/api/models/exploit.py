# security_oracle/api/models/exploit.py
from typing import List

from pydantic import BaseModel

from security_oracle.services.records import ExploitRecord, RiskScore


class ExploitListResponse(BaseModel):
    """
    Response model for the /exploits endpoint.
    """
    success: bool = True
    count: int
    exploits: List[ExploitRecord]
    timestamp: str


class RiskScoreResponse(BaseModel):
    """
    Response model for the /risk-score/{protocol} endpoint.
    """
    success: bool = True
    risk_score: RiskScore
    data_points: int
    timestamp: str
