# security_oracle/api/endpoints/service.py
from datetime import datetime, timezone
import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from security_oracle.services.records import format_timestamp
from security_oracle.x402.middleware import get_base_url

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", summary="Service Index", tags=["default"])
def read_root(request: Request):
    """Describes the service, its price and its endpoints."""
    settings = request.app.state.settings
    return {
        "name": settings.PROJECT_NAME,
        "description": "Token approval auditing and DeFi security intelligence with x402 payments",
        "version": settings.SERVICE_VERSION,
        "x402": {
            "enabled": True,
            "version": 1,
            "network": "solana",
            "paymentWallet": settings.PAYMENT_WALLET,
            "pricePerRequest": f"{settings.PRICE_PER_REQUEST_SOL} SOL",
        },
        "endpoints": [
            {
                "path": gate.resource_path,
                "method": gate.method,
                "description": gate.description,
                "payment": "x402 required",
            }
            for gate in request.app.state.gate_configs
        ] + [
            {"path": "/health", "method": "GET", "description": "Service health check", "payment": "none"},
        ],
        "documentation": settings.DOCUMENTATION_URL,
    }


@router.api_route("/.well-known/x402", methods=["GET", "POST"], summary="x402 Discovery", tags=["x402"])
def discovery(request: Request) -> JSONResponse:
    """Advertises every priced resource. Always answers 402."""
    settings = request.app.state.settings
    document = request.app.state.descriptors.discovery_document(
        request.app.state.gate_configs,
        get_base_url(request, settings.PUBLIC_BASE_URL),
    )
    return JSONResponse(status_code=402, content=document)


@router.get("/health", summary="Health Check", tags=["default"])
def health(request: Request):
    """Circuit state per exploit source and cache occupancy."""
    state = request.app.state
    sources = state.data_service.health()
    degraded = any(not summary["healthy"] for summary in sources.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "timestamp": format_timestamp(datetime.now(timezone.utc)),
        "uptime_seconds": round(time.monotonic() - state.started_at, 1),
        "version": state.settings.SERVICE_VERSION,
        "data_sources": sources,
        "cache": {
            "exploits": state.data_service.cache_stats(),
            "approvals": state.approval_auditor.cache_stats(),
            "payments": state.verification_cache.stats(),
        },
    }
