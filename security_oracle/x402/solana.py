"""
Solana JSON-RPC client used to confirm x402 payment signatures.

Only the piece the payment verifier needs is implemented: given a
transaction signature, report whether it is a finalized, successful
transaction and how many lamports it moved to the payment wallet.
"""
import logging
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException

from security_oracle.core.errors import ChainLookupError
from security_oracle.x402.types import ChainTransfer

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM = "system"
# JSON-RPC "invalid params": malformed signature, so nothing to look up
RPC_INVALID_PARAMS = -32602


def _sum_transfers_to(transaction: Dict[str, Any], recipient: str) -> int:
    """Sum System Program transfers to recipient, inner instructions included."""
    message = transaction.get("transaction", {}).get("message", {})
    instructions = list(message.get("instructions") or [])
    for inner in (transaction.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])

    total = 0
    for instruction in instructions:
        if instruction.get("program") != SYSTEM_PROGRAM:
            continue
        parsed = instruction.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info") or {}
        if info.get("destination") == recipient:
            total += int(info.get("lamports", 0))
    return total


class SolanaChainLookup:
    """Looks up finalized transfers by signature over Solana JSON-RPC."""

    def __init__(self, rpc_url: str, recipient: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.recipient = recipient
        self.timeout = timeout
        self._session = session or requests.Session()

    def _rpc(self, method: str, params: list) -> Dict[str, Any]:
        try:
            response = self._session.post(
                self.rpc_url,
                json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except RequestException as e:
            raise ChainLookupError(f"Solana RPC request failed: {e}") from e
        except ValueError as e:
            raise ChainLookupError(f"Solana RPC returned invalid JSON: {e}") from e

    def lookup(self, signature: str) -> ChainTransfer:
        """
        Resolve a signature into a ChainTransfer.

        Returns:
            ChainTransfer with confirmed=False for unknown, failed or
            malformed signatures.

        Raises:
            ChainLookupError: If the RPC node cannot be reached or errors.
        """
        result = self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "finalized",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

        if not isinstance(result, dict):
            raise ChainLookupError(f"Unexpected RPC reply: {type(result).__name__}")

        if "error" in result:
            error = result["error"] or {}
            if isinstance(error, dict) and error.get("code") == RPC_INVALID_PARAMS:
                logger.info(f"Solana RPC rejected signature {signature[:12]}...: {error.get('message')}")
                return ChainTransfer(confirmed=False)
            raise ChainLookupError(f"RPC error: {error}")

        transaction = result.get("result")
        if transaction is None:
            return ChainTransfer(confirmed=False)
        if not isinstance(transaction, dict):
            raise ChainLookupError(f"Unexpected getTransaction result: {type(transaction).__name__}")

        try:
            if (transaction.get("meta") or {}).get("err") is not None:
                logger.info(f"Transaction {signature[:12]}... failed on chain")
                return ChainTransfer(confirmed=False)
            amount = _sum_transfers_to(transaction, self.recipient)
        except (AttributeError, TypeError, ValueError) as e:
            raise ChainLookupError(f"Malformed transaction for {signature[:12]}...: {e}") from e

        return ChainTransfer(
            confirmed=True,
            amount=amount,
            recipient=self.recipient if amount > 0 else None,
        )
