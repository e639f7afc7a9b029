# security_oracle/core/errors.py
"""
Error taxonomy shared by the payment gate and the data layer.

ClientPaymentError subclasses map to HTTP 402 (the caller can recover by
paying correctly). TransientUpstreamError subclasses map to HTTP 503 for
payment verification (the caller should retry the same payment). Data
endpoints never surface upstream errors; the data layer degrades instead.
"""
from typing import Optional


class OracleError(Exception):
    """Base class for all errors raised by the oracle core."""

    status_code: int = 500
    reason: str = "internal_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.reason.replace("_", " "))
        self.message = message or self.reason.replace("_", " ")


class ClientPaymentError(OracleError):
    status_code = 402
    reason = "payment_invalid"


class MalformedClaim(ClientPaymentError):
    reason = "malformed_claim"


class UnsupportedScheme(ClientPaymentError):
    reason = "unsupported_scheme"


class ResourceMismatch(ClientPaymentError):
    reason = "resource_mismatch"


class InsufficientAmount(ClientPaymentError):
    reason = "insufficient_amount"


class WrongRecipient(ClientPaymentError):
    reason = "wrong_recipient"


class UnconfirmedOrUnknownSignature(ClientPaymentError):
    reason = "unconfirmed_or_unknown_signature"


class TransientUpstreamError(OracleError):
    status_code = 503
    reason = "upstream_unavailable"


class ChainLookupUnavailable(TransientUpstreamError):
    reason = "chain_lookup_unavailable"


class ChainLookupError(Exception):
    """Raised by chain clients when the network cannot answer."""
