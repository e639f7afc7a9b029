# security_oracle/api/deps.py
from fastapi import Request

from security_oracle.services.approvals import ApprovalAuditor
from security_oracle.services.data_service import ResilientDataService


def get_data_service(request: Request) -> ResilientDataService:
    return request.app.state.data_service


def get_approval_auditor(request: Request) -> ApprovalAuditor:
    return request.app.state.approval_auditor
