# tests/test_x402_middleware.py
"""
Unit tests for the x402 payment gate and middleware.
"""
import json
from base64 import b64decode, b64encode
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from security_oracle.core.errors import ChainLookupError, MalformedClaim
from security_oracle.x402.cache import VerificationCache
from security_oracle.x402.discovery import DescriptorFactory
from security_oracle.x402.middleware import (
    PaymentGate,
    X402Middleware,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    decode_payment_header,
    get_base_url,
    get_client_ip,
)
from security_oracle.x402.types import ChainTransfer, GateConfig
from security_oracle.x402.verifier import PaymentVerifier

WALLET = "Wa11etRecipient1111111111111111111111111111"
PRICE = 1_000_000
SIGNATURE = "5sig" + "2" * 60


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SpyChainLookup:
    """Chain lookup collaborator that records every call."""

    def __init__(self, transfer=None, error=None):
        self.transfer = transfer or ChainTransfer(confirmed=True, amount=PRICE, recipient=WALLET)
        self.error = error
        self.calls = []

    def lookup(self, signature):
        self.calls.append(signature)
        if self.error:
            raise self.error
        return self.transfer


def payment_header(**overrides) -> str:
    claim = {
        "scheme": "exact",
        "network": "solana",
        "amount": PRICE,
        "payer": "PayerWallet111",
        "recipient": WALLET,
        "signature": SIGNATURE,
        "resource": "/exploits",
    }
    claim.update(overrides)
    return b64encode(json.dumps(claim).encode()).decode()


def create_test_app(lookup=None, clock=None):
    """Small app with two priced routes and one free route."""
    lookup = lookup or SpyChainLookup()
    cache = VerificationCache(ttl_seconds=3600, clock=clock or FakeClock())
    verifier = PaymentVerifier(WALLET, lookup, lookup_timeout=2.0)
    descriptors = DescriptorFactory(WALLET, "TEST", "1.0.0", "https://docs.example.com")
    gates = [
        PaymentGate(GateConfig(PRICE, "/exploits", "Exploits"), verifier, cache, descriptors),
        PaymentGate(GateConfig(PRICE, "/risk-score/{protocol}", "Risk"), verifier, cache, descriptors),
    ]

    app = FastAPI()

    @app.api_route("/exploits", methods=["GET", "POST"])
    async def exploits():
        return {"exploits": []}

    @app.get("/risk-score/{protocol}")
    async def risk(protocol: str):
        return {"protocol": protocol}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    app.add_middleware(X402Middleware, gates=gates)
    return app, lookup, cache


class TestDecodePaymentHeader:
    """Test X-PAYMENT header decoding."""

    def test_decode_flat_claim(self):
        """Decode a base64 JSON claim."""
        claim = decode_payment_header(payment_header())
        assert claim.scheme == "exact"
        assert claim.network == "solana"
        assert claim.amount == PRICE
        assert claim.signature == SIGNATURE

    def test_decode_envelope(self):
        """Claim fields may be nested under an x402 payload envelope."""
        envelope = {
            "x402Version": 1,
            "scheme": "exact",
            "network": "solana",
            "payload": {
                "amount": "1000000",
                "payer": "PayerWallet111",
                "recipient": WALLET,
                "signature": SIGNATURE,
                "resource": "/exploits",
            },
        }
        claim = decode_payment_header(b64encode(json.dumps(envelope).encode()).decode())
        assert claim.amount == PRICE
        assert claim.recipient == WALLET

    def test_decode_invalid_base64(self):
        """Invalid base64 is a malformed claim."""
        with pytest.raises(MalformedClaim):
            decode_payment_header("not-valid-base64!!!")

    def test_decode_invalid_json(self):
        """Invalid JSON is a malformed claim."""
        with pytest.raises(MalformedClaim):
            decode_payment_header(b64encode(b"not json").decode())

    def test_decode_missing_fields(self):
        """A claim without a signature is malformed."""
        payload = {"scheme": "exact", "network": "solana", "amount": PRICE}
        with pytest.raises(MalformedClaim):
            decode_payment_header(b64encode(json.dumps(payload).encode()).decode())

    def test_decode_non_object(self):
        """A JSON array is not a claim."""
        with pytest.raises(MalformedClaim):
            decode_payment_header(b64encode(b"[1, 2]").decode())

    def test_claim_is_immutable(self):
        """Parsed claims cannot be modified."""
        claim = decode_payment_header(payment_header())
        with pytest.raises(Exception):
            claim.amount = 1


class TestRequestHelpers:
    """Test client IP and base URL extraction."""

    def test_forwarded_for_header(self):
        """Extract IP from X-Forwarded-For header."""
        request = MagicMock(spec=Request)
        request.headers = {"X-Forwarded-For": "203.0.113.50, 70.41.3.18"}
        request.client = None
        assert get_client_ip(request) == "203.0.113.50"

    def test_no_client_info(self):
        """Handle missing client info."""
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = None
        assert get_client_ip(request) == "unknown"

    def test_public_base_url_wins(self):
        """A configured public base URL is used as-is."""
        request = MagicMock(spec=Request)
        assert get_base_url(request, "https://oracle.example.com/") == "https://oracle.example.com"


class TestPaymentGateFlow:
    """Test the middleware end to end with a spy chain lookup."""

    def test_free_endpoint_passes_through(self):
        """Unpriced endpoints need no payment."""
        app, lookup, _ = create_test_app()
        response = TestClient(app).get("/health")
        assert response.status_code == 200
        assert lookup.calls == []

    def test_missing_header_returns_402_with_descriptor(self):
        """No X-PAYMENT header yields 402 and the resource requirements."""
        app, _, _ = create_test_app()
        response = TestClient(app).get("/exploits")

        assert response.status_code == 402
        body = response.json()
        assert body["x402Version"] == 1
        assert body["reason"] == "malformed_claim"
        assert body["error"] == "X-PAYMENT header is required"
        assert len(body["accepts"]) == 1
        descriptor = body["accepts"][0]
        assert descriptor["maxAmountRequired"] == "1000000"
        assert descriptor["payTo"] == WALLET
        assert descriptor["network"] == "solana"
        assert descriptor["asset"] == "SOL"
        assert descriptor["resource"].endswith("/exploits")

    def test_garbage_header_returns_402(self):
        """An undecodable header yields 402 malformed_claim."""
        app, lookup, _ = create_test_app()
        response = TestClient(app).get("/exploits", headers={X_PAYMENT_HEADER: "%%%"})
        assert response.status_code == 402
        assert response.json()["reason"] == "malformed_claim"
        assert lookup.calls == []

    @pytest.mark.parametrize("method", ["HEAD", "OPTIONS"])
    def test_head_and_options_get_bare_402(self, method):
        """HEAD/OPTIONS on priced endpoints return 402 with no body."""
        app, _, _ = create_test_app()
        response = TestClient(app).request(method, "/exploits")
        assert response.status_code == 402
        assert response.content == b""

    def test_valid_payment_proceeds(self):
        """A verified payment reaches the handler."""
        app, lookup, cache = create_test_app()
        response = TestClient(app).get("/exploits", headers={X_PAYMENT_HEADER: payment_header()})

        assert response.status_code == 200
        assert response.json() == {"exploits": []}
        assert lookup.calls == [SIGNATURE]
        assert cache.get(SIGNATURE, "/exploits") is not None

        ack = json.loads(b64decode(response.headers[X_PAYMENT_RESPONSE_HEADER]))
        assert ack == {"success": True, "signature": SIGNATURE, "cached": False}

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"scheme": "upto"}, "unsupported_scheme"),
            ({"network": "base"}, "unsupported_scheme"),
            ({"resource": "/approval-audit"}, "resource_mismatch"),
            ({"amount": PRICE - 1}, "insufficient_amount"),
            ({"recipient": "SomeoneElse111"}, "wrong_recipient"),
        ],
    )
    def test_each_failed_check_reports_its_reason(self, overrides, reason):
        """Every single-check violation yields 402 naming that check."""
        app, _, _ = create_test_app()
        response = TestClient(app).get("/exploits", headers={X_PAYMENT_HEADER: payment_header(**overrides)})

        assert response.status_code == 402
        assert response.json()["reason"] == reason
        assert len(response.json()["accepts"]) == 1

    def test_unconfirmed_signature_returns_402(self):
        """An unknown transaction is a payment defect."""
        app, _, _ = create_test_app(lookup=SpyChainLookup(ChainTransfer(confirmed=False)))
        response = TestClient(app).get("/exploits", headers={X_PAYMENT_HEADER: payment_header()})
        assert response.status_code == 402
        assert response.json()["reason"] == "unconfirmed_or_unknown_signature"

    def test_chain_outage_returns_503(self):
        """Chain lookup failure means retry the same payment, not pay again."""
        app, _, cache = create_test_app(lookup=SpyChainLookup(error=ChainLookupError("down")))
        response = TestClient(app).get("/exploits", headers={X_PAYMENT_HEADER: payment_header()})

        assert response.status_code == 503
        assert response.json()["reason"] == "chain_lookup_unavailable"
        assert response.json()["retry"] is True
        assert cache.get(SIGNATURE, "/exploits") is None

    def test_repeat_within_ttl_skips_chain_lookup(self):
        """The same signature is honored from cache for one hour."""
        clock = FakeClock()
        app, lookup, _ = create_test_app(clock=clock)
        client = TestClient(app)
        headers = {X_PAYMENT_HEADER: payment_header()}

        assert client.get("/exploits", headers=headers).status_code == 200
        clock.advance(3000)
        second = client.get("/exploits", headers=headers)

        assert second.status_code == 200
        assert len(lookup.calls) == 1
        ack = json.loads(b64decode(second.headers[X_PAYMENT_RESPONSE_HEADER]))
        assert ack["cached"] is True

    def test_repeat_after_ttl_requires_fresh_lookup(self):
        """An expired verification triggers a new chain lookup."""
        clock = FakeClock()
        app, lookup, _ = create_test_app(clock=clock)
        client = TestClient(app)
        headers = {X_PAYMENT_HEADER: payment_header()}

        client.get("/exploits", headers=headers)
        clock.advance(3601)
        response = client.get("/exploits", headers=headers)

        assert response.status_code == 200
        assert len(lookup.calls) == 2

    def test_cached_signature_not_valid_for_other_resource(self):
        """A signature verified for /exploits does not unlock /risk-score."""
        app, lookup, _ = create_test_app()
        client = TestClient(app)
        client.get("/exploits", headers={X_PAYMENT_HEADER: payment_header()})

        response = client.get("/risk-score/aave", headers={X_PAYMENT_HEADER: payment_header()})

        assert response.status_code == 402
        assert response.json()["reason"] == "resource_mismatch"
        assert len(lookup.calls) == 1

    def test_path_parameter_resource(self):
        """A claim for the template pays for any concrete protocol."""
        app, _, _ = create_test_app()
        header = payment_header(resource="https://oracle.example.com/risk-score/{protocol}")
        response = TestClient(app).get("/risk-score/curve", headers={X_PAYMENT_HEADER: header})

        assert response.status_code == 200
        assert response.json() == {"protocol": "curve"}
