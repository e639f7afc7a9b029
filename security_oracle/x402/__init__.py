"""
x402 Payment Protocol Integration Module.

This module implements the Solana flavour of the x402 payment protocol,
enabling pay-per-request access to the oracle's security data.

Key components:
- types: PaymentClaim, VerificationRecord and resource descriptors
- verifier: ordered validation of payment claims, including chain lookup
- solana: Solana JSON-RPC client used for the chain lookup
- cache: process-wide verification cache (one signature, one resource, 1h)
- middleware: PaymentGate and the FastAPI middleware mounting the gates
- discovery: descriptors for 402 responses and /.well-known/x402
- audit: JSON lines audit log of payment decisions

Components take their configuration as constructor arguments; the wiring
from environment settings lives in security_oracle.main.
"""

__version__ = "0.1.0"
