# security_oracle/main.py
import logging
import time
from typing import Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from security_oracle.core.config import Settings, settings as app_settings
from security_oracle.api.endpoints import approvals, exploits, service
from security_oracle.api.headers import RequestContextMiddleware
from security_oracle.api.ratelimit import RateLimiter, RateLimitMiddleware
from security_oracle.services.approvals import ApprovalAuditor, ApprovalSource
from security_oracle.services.data_service import ResilientDataService
from security_oracle.services.explorer import EtherscanApprovalClient
from security_oracle.services.risk_engine import RiskDetector
from security_oracle.services.sources import DefiLlamaHacksSource, ExploitFeedSource, SourceFetcher
from security_oracle.x402.audit import PaymentAuditLog
from security_oracle.x402.cache import VerificationCache
from security_oracle.x402.discovery import DescriptorFactory
from security_oracle.x402.middleware import PaymentGate, X402Middleware
from security_oracle.x402.solana import SolanaChainLookup
from security_oracle.x402.types import GateConfig
from security_oracle.x402.verifier import ChainLookup, PaymentVerifier

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_gate_configs(price_lamports: int) -> list:
    """Priced resources; every endpoint shares the same per-request price."""
    return [
        GateConfig(
            required_amount_lamports=price_lamports,
            resource_path="/approval-audit",
            description="Audit wallet token approvals and identify malicious or risky approvals",
        ),
        GateConfig(
            required_amount_lamports=price_lamports,
            resource_path="/exploits",
            description="Real-time DeFi exploit intelligence from multiple sources",
        ),
        GateConfig(
            required_amount_lamports=price_lamports,
            resource_path="/risk-score/{protocol}",
            description="Calculate risk score for DeFi protocols based on exploit history",
        ),
    ]


def build_sources(settings: Settings) -> list:
    sources = [DefiLlamaHacksSource(settings.DEFILLAMA_HACKS_URL, timeout=settings.SOURCE_TIMEOUT_SECONDS)]
    if settings.EXPLOIT_FEED_URL:
        sources.append(ExploitFeedSource(settings.EXPLOIT_FEED_URL, timeout=settings.SOURCE_TIMEOUT_SECONDS))
    return sources


def create_app(
    settings: Optional[Settings] = None,
    chain_lookup: Optional[ChainLookup] = None,
    sources: Optional[Sequence[SourceFetcher]] = None,
    approval_source: Optional[ApprovalSource] = None,
) -> FastAPI:
    """
    Wire the application from settings.

    Collaborators that talk to the outside world (chain lookup, exploit
    sources, approval explorer) can be injected, which is how the tests
    run the full pipeline offline.
    """
    settings = settings or app_settings
    if not settings.PAYMENT_WALLET:
        logger.warning("PAYMENT_WALLET not configured; every payment will be rejected")

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.SERVICE_VERSION)

    data_service = ResilientDataService(
        sources if sources is not None else build_sources(settings),
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
        source_timeout=settings.SOURCE_TIMEOUT_SECONDS,
        deadline_seconds=settings.FETCH_DEADLINE_SECONDS,
        cache_ttl_seconds=settings.EXPLOIT_CACHE_TTL_SECONDS,
    )
    detector = RiskDetector(data_service, suspicious_spenders=settings.suspicious_spenders)
    approval_auditor = ApprovalAuditor(
        approval_source or EtherscanApprovalClient(settings.ETHERSCAN_API_URL, settings.ETHERSCAN_API_KEY),
        detector,
        cache_ttl_seconds=settings.APPROVAL_CACHE_TTL_SECONDS,
    )

    verifier = PaymentVerifier(
        payment_wallet=settings.PAYMENT_WALLET,
        chain_lookup=chain_lookup or SolanaChainLookup(
            settings.SOLANA_RPC_URL,
            recipient=settings.PAYMENT_WALLET,
            timeout=settings.CHAIN_LOOKUP_TIMEOUT_SECONDS,
        ),
        lookup_timeout=settings.CHAIN_LOOKUP_TIMEOUT_SECONDS,
    )
    verification_cache = VerificationCache(ttl_seconds=settings.VERIFICATION_TTL_SECONDS)
    descriptors = DescriptorFactory(
        pay_to=settings.PAYMENT_WALLET,
        provider=settings.PROVIDER_NAME,
        version=settings.SERVICE_VERSION,
        documentation=settings.DOCUMENTATION_URL,
    )
    audit_log = PaymentAuditLog(settings.X402_AUDIT_LOG_PATH)
    gate_configs = build_gate_configs(settings.price_lamports)
    gates = [
        PaymentGate(config, verifier, verification_cache, descriptors, audit_log, settings.PUBLIC_BASE_URL)
        for config in gate_configs
    ]

    app.state.settings = settings
    app.state.data_service = data_service
    app.state.approval_auditor = approval_auditor
    app.state.verification_cache = verification_cache
    app.state.descriptors = descriptors
    app.state.gate_configs = gate_configs
    app.state.started_at = time.monotonic()

    # Last added runs first: request context, then rate limit, then payment
    app.add_middleware(X402Middleware, gates=gates)
    app.add_middleware(RateLimitMiddleware, limiter=RateLimiter(settings.RATE_LIMIT_PER_MINUTE))
    app.add_middleware(RequestContextMiddleware)

    app.include_router(service.router)
    app.include_router(exploits.router, tags=["exploits"])
    app.include_router(approvals.router, tags=["approvals"])

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info(f"Rejected invalid request {request.method} {request.url.path}")
        return JSONResponse(
            status_code=400,
            content={"error": "Bad Request", "detail": jsonable_errors(exc)},
        )

    logger.info(
        f"{settings.PROJECT_NAME} v{settings.SERVICE_VERSION} configured: "
        f"{settings.PRICE_PER_REQUEST_SOL} SOL ({settings.price_lamports} lamports) per request, "
        f"{len(data_service.sources)} exploit source(s)"
    )
    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    """Validation errors reduced to location and message."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


app = create_app(app_settings)
