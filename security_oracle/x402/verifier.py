"""
Payment claim verification for the Solana x402 scheme.

PaymentVerifier decides whether a PaymentClaim is valid proof of payment
for a resource at a given price. Checks run in a fixed order and stop at
the first failure:

1. scheme is "exact" and network is "solana"
2. the claimed resource matches the requested resource
3. the claimed amount covers the price
4. the claimed recipient is the configured payment wallet
5. the signature is a finalized transfer of at least the price to the wallet

The verifier mutates nothing; the only external read is the chain lookup.
"""
import asyncio
import logging
import re
from typing import Optional, Protocol
from urllib.parse import urlparse

from security_oracle.core.errors import (
    ChainLookupError,
    ChainLookupUnavailable,
    InsufficientAmount,
    ResourceMismatch,
    UnconfirmedOrUnknownSignature,
    UnsupportedScheme,
    WrongRecipient,
)
from security_oracle.x402.types import (
    ChainTransfer,
    NETWORK_SOLANA,
    PaymentClaim,
    SCHEME_EXACT,
)

logger = logging.getLogger(__name__)

_PATH_PARAM = re.compile(r"\{[^/{}]+\}")


class ChainLookup(Protocol):
    def lookup(self, signature: str) -> ChainTransfer: ...


def normalize_resource(resource: str) -> str:
    """Reduce a resource (absolute URL or path) to a path without trailing slash."""
    path = urlparse(resource).path if "://" in resource else resource.split("?")[0]
    path = path.rstrip("/")
    return path or "/"


def resource_matches(claimed: str, template: str) -> bool:
    """
    Check a claimed resource against a resource template.

    Path parameters in the template match any single segment, so
    "/risk-score/{protocol}" matches "/risk-score/aave" and the template
    itself.
    """
    pieces = _PATH_PARAM.split(normalize_resource(template))
    pattern = "[^/]+".join(re.escape(piece) for piece in pieces)
    return re.fullmatch(pattern, normalize_resource(claimed)) is not None


class PaymentVerifier:
    """Validates PaymentClaims against price, resource and the chain."""

    def __init__(self, payment_wallet: str, chain_lookup: ChainLookup,
                 lookup_timeout: Optional[float] = 10.0):
        self.payment_wallet = payment_wallet
        self.chain_lookup = chain_lookup
        self.lookup_timeout = lookup_timeout

    async def verify(self, claim: PaymentClaim, required_amount_lamports: int, resource: str) -> None:
        """
        Verify claim as payment for resource.

        Returns normally when the claim is approved.

        Raises:
            ClientPaymentError: A subclass naming the first failed check.
            ChainLookupUnavailable: If the chain could not be consulted.
        """
        if claim.scheme != SCHEME_EXACT or claim.network != NETWORK_SOLANA:
            raise UnsupportedScheme(
                f"Unsupported payment scheme/network: {claim.scheme}/{claim.network}"
            )

        if not resource_matches(claim.resource, resource):
            raise ResourceMismatch(
                f"Payment is for {claim.resource}, not {resource}"
            )

        if claim.amount < required_amount_lamports:
            raise InsufficientAmount(
                f"Payment of {claim.amount} lamports is below the required {required_amount_lamports}"
            )

        if claim.recipient != self.payment_wallet:
            raise WrongRecipient(f"Payment recipient {claim.recipient} is not the payment wallet")

        transfer = await self._lookup(claim.signature)

        if not transfer.confirmed:
            raise UnconfirmedOrUnknownSignature(
                f"Transaction {claim.signature} is not a finalized transaction"
            )
        if transfer.recipient != self.payment_wallet or transfer.amount < required_amount_lamports:
            raise UnconfirmedOrUnknownSignature(
                f"Transaction {claim.signature} did not transfer {required_amount_lamports} lamports to the payment wallet"
            )

        logger.info(f"x402: Verified {transfer.amount} lamports from {claim.payer} for {resource}")

    async def _lookup(self, signature: str) -> ChainTransfer:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.chain_lookup.lookup, signature),
                timeout=self.lookup_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"x402: Chain lookup timed out for {signature[:12]}...")
            raise ChainLookupUnavailable("Chain lookup timed out") from e
        except ChainLookupError as e:
            logger.warning(f"x402: Chain lookup failed for {signature[:12]}...: {e}")
            raise ChainLookupUnavailable(f"Chain lookup unavailable: {e}") from e
