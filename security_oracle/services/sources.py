# security_oracle/services/sources.py
"""
Upstream exploit-data adapters.

Each adapter hides one provider behind the same contract:

    fetch(protocol, chain) -> List[ExploitRecord]

Adapters are blocking (requests) and raise on any upstream problem; the
ResilientDataService runs them in worker threads, applies timeouts and
turns failures into circuit-breaker bookkeeping.
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import requests
from pydantic import ValidationError

from security_oracle.services.records import ExploitRecord

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    """Lower-case alphanumeric form used to compare protocol names."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


def severity_for_loss(loss_usd: float) -> str:
    """Bucket a loss amount into a severity when the provider has none."""
    if loss_usd >= 10_000_000:
        return "critical"
    if loss_usd >= 1_000_000:
        return "high"
    if loss_usd >= 100_000:
        return "medium"
    return "low"


def matches_filters(record: ExploitRecord, protocol: Optional[str], chain: Optional[str]) -> bool:
    if protocol:
        wanted = slugify(protocol)
        if wanted and wanted not in slugify(record.protocol):
            return False
    if chain and record.chain.lower() != chain.lower():
        return False
    return True


class SourceFetcher:
    """Base class for exploit-data sources."""

    source_id: str = "unknown"

    def __init__(self, timeout: float = 8.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, protocol: Optional[str] = None, chain: Optional[str] = None) -> List[ExploitRecord]:
        raise NotImplementedError

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self._session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _normalize_all(self, items: Iterable[Dict[str, Any]]) -> List[ExploitRecord]:
        records = []
        for item in items:
            try:
                records.append(self.normalize(item))
            except (ValidationError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"{self.source_id}: skipping malformed exploit record: {e}")
        return records

    def normalize(self, item: Dict[str, Any]) -> ExploitRecord:
        raise NotImplementedError


class DefiLlamaHacksSource(SourceFetcher):
    """DeFiLlama public hacks dataset (https://api.llama.fi/hacks)."""

    source_id = "defillama"

    def __init__(self, url: str = "https://api.llama.fi/hacks", **kwargs):
        super().__init__(**kwargs)
        self.url = url

    def normalize(self, item: Dict[str, Any]) -> ExploitRecord:
        chains = item.get("chain") or ["unknown"]
        chain = chains[0] if isinstance(chains, list) else str(chains)
        loss = float(item.get("amount") or 0)
        technique = item.get("technique") or item.get("classification") or "unknown"
        classification = item.get("classification") or "Exploit"
        return ExploitRecord(
            protocol=item["name"],
            chain=chain,
            severity=severity_for_loss(loss),
            loss_usd=loss,
            timestamp=int(item["date"]),
            description=f"{classification}: {technique}",
            attack_vector=technique,
        )

    def fetch(self, protocol: Optional[str] = None, chain: Optional[str] = None) -> List[ExploitRecord]:
        data = self._get_json(self.url)
        if not isinstance(data, list):
            raise ValueError(f"Unexpected data structure from DeFiLlama: {type(data)}")
        records = self._normalize_all(data)
        return [r for r in records if matches_filters(r, protocol, chain)]


class ExploitFeedSource(SourceFetcher):
    """
    Generic JSON exploit feed already using the ExploitRecord field names.

    The feed may answer with a bare list or wrap it in "exploits"/"data".
    Filters are passed as query parameters and re-applied locally.
    """

    source_id = "exploit-feed"

    def __init__(self, url: str, source_id: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.url = url
        if source_id:
            self.source_id = source_id

    def normalize(self, item: Dict[str, Any]) -> ExploitRecord:
        loss = float(item.get("loss_usd") or 0)
        severity = str(item.get("severity") or severity_for_loss(loss)).lower()
        return ExploitRecord(
            protocol=item["protocol"],
            chain=item.get("chain") or "unknown",
            severity=severity,
            loss_usd=loss,
            timestamp=item["timestamp"],
            description=item.get("description") or "",
            attack_vector=item.get("attack_vector") or "unknown",
        )

    def fetch(self, protocol: Optional[str] = None, chain: Optional[str] = None) -> List[ExploitRecord]:
        params = {k: v for k, v in (("protocol", protocol), ("chain", chain)) if v}
        data = self._get_json(self.url, params=params or None)
        if isinstance(data, dict):
            data = data.get("exploits", data.get("data"))
        if not isinstance(data, list):
            raise ValueError(f"Unexpected data structure from {self.source_id}: {type(data)}")
        records = self._normalize_all(data)
        return [r for r in records if matches_filters(r, protocol, chain)]
