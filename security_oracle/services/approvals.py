# security_oracle/services/approvals.py
"""
Wallet approval audit: explorer lookup per chain, then risk detection.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Protocol, Sequence, Tuple

from security_oracle.services.cache import TTLCache
from security_oracle.services.records import TokenApproval
from security_oracle.services.risk_engine import RiskDetector, summarize_approval_risks

logger = logging.getLogger(__name__)


class ApprovalSource(Protocol):
    def get_approvals(self, wallet: str, chain_id: int = 1) -> List[TokenApproval]: ...


class ApprovalAuditor:
    """Fetches a wallet's approvals on several chains and flags the risky ones."""

    def __init__(
        self,
        approval_source: ApprovalSource,
        detector: RiskDetector,
        cache_ttl_seconds: float = 300.0,
        timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.approval_source = approval_source
        self.detector = detector
        self.timeout = timeout
        self.cache: TTLCache[Tuple[List[Tuple[int, TokenApproval]], List[int]]] = TTLCache(
            cache_ttl_seconds, clock=clock
        )

    async def _approvals_for_chain(self, wallet: str, chain_id: int) -> List[TokenApproval]:
        return await asyncio.wait_for(
            asyncio.to_thread(self.approval_source.get_approvals, wallet, chain_id),
            timeout=self.timeout,
        )

    async def _collect(self, wallet: str, chain_ids: Sequence[int]):
        key = f"{wallet.lower()}|{','.join(str(c) for c in chain_ids)}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        results = await asyncio.gather(
            *(self._approvals_for_chain(wallet, chain_id) for chain_id in chain_ids),
            return_exceptions=True,
        )

        collected: List[Tuple[int, TokenApproval]] = []
        failed: List[int] = []
        for chain_id, result in zip(chain_ids, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(f"Approval lookup failed for {wallet} on chain {chain_id}: {result!r}")
                failed.append(chain_id)
                continue
            collected.extend((chain_id, approval) for approval in result)

        # Partial answers are not cached so a failed chain is retried next time
        if not failed:
            self.cache.set(key, (collected, failed))
        return collected, failed

    async def audit(self, wallet: str, chain_ids: Sequence[int]) -> Dict[str, Any]:
        """
        Audit wallet's approvals.

        Returns:
            Dict with approvals (each carrying chain_id and risk_flags),
            risk_summary and the chains that could not be read.
        """
        collected, failed = await self._collect(wallet, chain_ids)
        approvals = [approval for _, approval in collected]
        risk_map = await self.detector.detect_risks(approvals)

        audited = []
        for chain_id, approval in collected:
            entry = approval.model_dump()
            entry["chain_id"] = chain_id
            entry["risk_flags"] = [flag.model_dump() for flag in risk_map.get(approval.key, [])]
            audited.append(entry)

        return {
            "wallet": wallet,
            "chains": list(chain_ids),
            "approvals": audited,
            "risk_summary": summarize_approval_risks(approvals, risk_map),
            "failed_chains": failed,
        }

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()
