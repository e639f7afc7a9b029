"""
FastAPI middleware for x402 payment enforcement.

This module provides:
1. PaymentGate: the enforcement point for one priced resource
2. X402Middleware: routes requests for priced paths to their gate

Per request, a gate:
- returns 402 with the resource descriptor if X-PAYMENT is absent or
  cannot be decoded
- lets the request through if the signature was already verified for this
  resource within the verification TTL (no chain lookup)
- otherwise verifies the claim, caches the verification and lets the
  request through; rejects with 402 (pay again) or 503 (retry the same
  payment, the chain could not be consulted)
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from x402.encoding import safe_base64_decode, safe_base64_encode

from security_oracle.core.errors import (
    ClientPaymentError,
    MalformedClaim,
    TransientUpstreamError,
)
from security_oracle.x402.audit import AuditEventType, PaymentAuditLog
from security_oracle.x402.cache import VerificationCache
from security_oracle.x402.discovery import DescriptorFactory
from security_oracle.x402.types import GateConfig, PaymentClaim, ResourceDescriptor, X402_VERSION
from security_oracle.x402.verifier import PaymentVerifier, resource_matches

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
BARE_402_METHODS = ("HEAD", "OPTIONS")


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def get_base_url(request: Request, public_base_url: Optional[str] = None) -> str:
    """Scheme and host used to advertise absolute resource URLs."""
    if public_base_url:
        return public_base_url.rstrip("/")
    scheme = request.headers.get("X-Forwarded-Proto", request.url.scheme)
    host = request.headers.get("Host", request.url.netloc)
    return f"{scheme}://{host}"


def decode_payment_header(header_value: str) -> PaymentClaim:
    """
    Decode the X-PAYMENT header into a PaymentClaim.

    Accepts a flat claim object or an x402 envelope whose "payload" holds
    the claim fields.

    Raises:
        MalformedClaim: If the header is not base64 JSON describing a claim.
    """
    try:
        decoded = safe_base64_decode(header_value)
        if decoded is None:
            raise ValueError("invalid base64")
        payload = json.loads(decoded)
        if not isinstance(payload, dict):
            raise ValueError("payment header is not a JSON object")
        inner = payload.get("payload")
        if isinstance(inner, dict):
            payload = {**{k: v for k, v in payload.items() if k != "payload"}, **inner}
        return PaymentClaim.model_validate(payload)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to decode X-PAYMENT header: {e}")
        raise MalformedClaim("Invalid X-PAYMENT header format") from e


def encode_payment_response(signature: str, cached: bool) -> str:
    """Base64 JSON acknowledgement sent back in X-PAYMENT-RESPONSE."""
    body = json.dumps({"success": True, "signature": signature, "cached": cached})
    return safe_base64_encode(body.encode("utf-8"))


def create_402_response(
    descriptor: ResourceDescriptor,
    error_message: str,
    reason: str
) -> JSONResponse:
    """HTTP 402 carrying the resource descriptor so the caller can pay."""
    return JSONResponse(
        status_code=402,
        content={
            "x402Version": X402_VERSION,
            "error": error_message,
            "reason": reason,
            "accepts": [descriptor.model_dump(by_alias=True, exclude_none=True)],
        },
    )


class PaymentGate:
    """Payment enforcement for a single priced resource."""

    def __init__(
        self,
        config: GateConfig,
        verifier: PaymentVerifier,
        cache: VerificationCache,
        descriptors: DescriptorFactory,
        audit_log: Optional[PaymentAuditLog] = None,
        public_base_url: Optional[str] = None,
    ):
        self.config = config
        self.verifier = verifier
        self.cache = cache
        self.descriptors = descriptors
        self.audit_log = audit_log or PaymentAuditLog()
        self.public_base_url = public_base_url

    @property
    def resource(self) -> str:
        return self.config.resource_path

    def matches(self, path: str) -> bool:
        return resource_matches(path, self.config.resource_path)

    def _payment_required(self, request: Request, client_ip: str, error: ClientPaymentError) -> JSONResponse:
        descriptor = self.descriptors.describe(self.config, get_base_url(request, self.public_base_url))
        self.audit_log.record(
            AuditEventType.PAYMENT_REQUIRED_SENT,
            {
                "resource": self.resource,
                "amount_lamports": self.config.required_amount_lamports,
                "reason": error.reason,
            },
            client_ip=client_ip,
        )
        return create_402_response(descriptor, error.message, error.reason)

    async def authorize(self, request: Request) -> Optional[Response]:
        """
        Decide whether request may proceed.

        Returns:
            None to let the request through, or the 402/503 response to
            send instead.
        """
        client_ip = get_client_ip(request)
        header = request.headers.get(X_PAYMENT_HEADER)
        if not header:
            logger.info(f"x402: No X-PAYMENT header for {self.resource} from {client_ip}")
            return self._payment_required(
                request, client_ip, MalformedClaim("X-PAYMENT header is required")
            )

        try:
            claim = decode_payment_header(header)
        except MalformedClaim as e:
            return self._payment_required(request, client_ip, e)

        if self.cache.get(claim.signature, self.resource) is not None:
            logger.info(f"x402: Cached payment {claim.signature[:12]}... accepted for {self.resource}")
            self.audit_log.record(
                AuditEventType.PAYMENT_CACHE_HIT,
                {"resource": self.resource, "signature": claim.signature},
                client_ip=client_ip,
                wallet_address=claim.payer,
            )
            request.state.payment = {"signature": claim.signature, "cached": True}
            return None

        try:
            await self.verifier.verify(claim, self.config.required_amount_lamports, self.resource)
        except ClientPaymentError as e:
            logger.warning(f"x402: Payment rejected for {self.resource} ({e.reason}): {e.message}")
            self.audit_log.record(
                AuditEventType.PAYMENT_REJECTED,
                {"resource": self.resource, "signature": claim.signature, "reason": e.reason},
                client_ip=client_ip,
                wallet_address=claim.payer,
            )
            return self._payment_required(request, client_ip, e)
        except TransientUpstreamError as e:
            logger.error(f"x402: Could not verify payment for {self.resource}: {e.message}")
            self.audit_log.record(
                AuditEventType.CHAIN_LOOKUP_UNAVAILABLE,
                {"resource": self.resource, "signature": claim.signature},
                client_ip=client_ip,
                wallet_address=claim.payer,
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": "Payment verification temporarily unavailable",
                    "reason": e.reason,
                    "retry": True,
                },
                headers={"Retry-After": "5"},
            )

        self.cache.put(claim.signature, self.resource)
        self.audit_log.record(
            AuditEventType.PAYMENT_VERIFIED,
            {"resource": self.resource, "signature": claim.signature, "amount_lamports": claim.amount},
            client_ip=client_ip,
            wallet_address=claim.payer,
        )
        request.state.payment = {"signature": claim.signature, "cached": False}
        return None


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment middleware for FastAPI.

    Requests whose path matches one of the configured gates must carry a
    valid payment; all other requests pass through unchanged. HEAD and
    OPTIONS on priced paths always receive a bare 402.
    """

    def __init__(self, app: Any, gates: List[PaymentGate]):
        super().__init__(app)
        self.gates = gates

    def gate_for(self, path: str) -> Optional[PaymentGate]:
        for gate in self.gates:
            if gate.matches(path):
                return gate
        return None

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        gate = self.gate_for(request.url.path)
        if gate is None:
            return await call_next(request)

        if request.method in BARE_402_METHODS:
            return Response(status_code=402)

        denial = await gate.authorize(request)
        if denial is not None:
            return denial

        response = await call_next(request)
        payment: Dict[str, Any] = getattr(request.state, "payment", None) or {}
        if payment and 200 <= response.status_code < 300:
            response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(
                payment["signature"], payment["cached"]
            )
        return response
