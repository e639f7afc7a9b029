# security_oracle/services/explorer.py
import logging
from typing import Any, Dict, List, Optional

import requests

from security_oracle.services.records import TokenApproval

logger = logging.getLogger(__name__)

# keccak256("Approval(address,address,uint256)")
APPROVAL_TOPIC = "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"
# Allowances this large are only ever set as "infinite" approvals
UNLIMITED_THRESHOLD = 2 ** 255


def pad_address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte log topic."""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class EtherscanApprovalClient:
    """
    Reads ERC-20 approvals granted by a wallet from Etherscan's v2
    multichain API, one chain id at a time.
    """

    def __init__(self, api_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def _get_logs(self, wallet: str, chain_id: int) -> List[Dict[str, Any]]:
        params = {
            "chainid": chain_id,
            "module": "logs",
            "action": "getLogs",
            "fromBlock": 0,
            "toBlock": "latest",
            "topic0": APPROVAL_TOPIC,
            "topic0_1_opr": "and",
            "topic1": pad_address_topic(wallet),
        }
        if self.api_key:
            params["apikey"] = self.api_key

        response = self._session.get(self.api_url, params=params, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()

        result = data.get("result")
        if isinstance(result, list):
            return result
        # Etherscan answers "No records found" with status 0 and an empty result
        if str(data.get("message", "")).lower().startswith("no records"):
            return []
        raise ValueError(f"Explorer error for chain {chain_id}: {data.get('message')} {result}")

    def get_approvals(self, wallet: str, chain_id: int = 1) -> List[TokenApproval]:
        """
        Current non-zero approvals granted by wallet on chain_id.

        Only the latest Approval event per (token, spender) counts; a zero
        allowance means the approval was revoked.

        Raises:
            RequestException: If the explorer cannot be reached.
            ValueError: If the explorer answers with an error.
        """
        latest: Dict[tuple, Dict[str, Any]] = {}
        for log in self._get_logs(wallet, chain_id):
            topics = log.get("topics") or []
            if len(topics) < 3:
                continue
            key = (log["address"].lower(), topic_to_address(topics[2]))
            block = int(log.get("blockNumber", "0x0"), 16)
            if key not in latest or block >= latest[key]["_block"]:
                latest[key] = {**log, "_block": block}

        approvals = []
        for (token, spender), log in latest.items():
            data = log.get("data") or "0x0"
            allowance = int(data, 16) if data != "0x" else 0
            if allowance == 0:
                continue
            approvals.append(TokenApproval(
                token_address=token,
                token_symbol="UNKNOWN",
                spender_address=spender,
                allowance=str(allowance),
                is_unlimited=allowance >= UNLIMITED_THRESHOLD,
                last_updated=int(log.get("timeStamp", "0x0"), 16),
            ))

        logger.info(f"Found {len(approvals)} active approvals for {wallet} on chain {chain_id}")
        return approvals
