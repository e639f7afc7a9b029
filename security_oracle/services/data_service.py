# security_oracle/services/data_service.py
"""
Resilient exploit-data fetching across several upstream sources.

fetch_exploits() queries every source whose circuit allows it, all at
once, each with its own timeout. Whatever answers is merged, deduplicated
and sorted newest first. A failing source counts as "no records this
round", and so does one still running at the overall deadline. The caller
never sees an exception.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from security_oracle.services.cache import TTLCache
from security_oracle.services.circuit import CircuitBreaker
from security_oracle.services.records import ExploitRecord
from security_oracle.services.sources import SourceFetcher

logger = logging.getLogger(__name__)


def merge_records(batches: Iterable[Sequence[ExploitRecord]]) -> List[ExploitRecord]:
    """Deduplicate by record identity and sort newest first."""
    seen = set()
    merged = []
    for batch in batches:
        for record in batch:
            if record.identity in seen:
                continue
            seen.add(record.identity)
            merged.append(record)
    merged.sort(key=lambda r: r.occurred_at, reverse=True)
    return merged


class ResilientDataService:
    """Fan-out/fallback orchestrator over SourceFetchers."""

    def __init__(
        self,
        sources: Sequence[SourceFetcher],
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        source_timeout: float = 8.0,
        deadline_seconds: float = 15.0,
        cache_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sources = list(sources)
        self.source_timeout = min(source_timeout, deadline_seconds)
        self.deadline_seconds = deadline_seconds
        self.breakers: Dict[str, CircuitBreaker] = {
            source.source_id: CircuitBreaker(
                source.source_id,
                failure_threshold=failure_threshold,
                cooldown_seconds=cooldown_seconds,
                clock=clock,
            )
            for source in self.sources
        }
        self.cache: TTLCache[Tuple[ExploitRecord, ...]] = TTLCache(cache_ttl_seconds, clock=clock)

    @staticmethod
    def cache_key(protocol: Optional[str], chain: Optional[str]) -> str:
        return f"{(protocol or '').strip().lower()}|{(chain or '').strip().lower()}"

    async def fetch_exploits(
        self,
        protocol: Optional[str] = None,
        chain: Optional[str] = None
    ) -> List[ExploitRecord]:
        """
        Exploit records for the optional protocol/chain filter.

        Returns:
            Records newest first; an empty list if every source is open or
            failing. Never raises (except on cancellation).
        """
        key = self.cache_key(protocol, chain)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Exploit cache hit for '{key}'")
            return list(cached)

        started = time.monotonic()
        try:
            records, answered = await self._fan_out(protocol, chain)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Exploit fetch failed unexpectedly (protocol={protocol}, chain={chain}): {e}",
                exc_info=True,
            )
            return []

        duration_ms = round((time.monotonic() - started) * 1000)
        if answered:
            self.cache.set(key, tuple(records))
            logger.info(
                f"Fetched {len(records)} exploits from {answered} source(s) "
                f"(protocol={protocol}, chain={chain}) in {duration_ms}ms"
            )
        else:
            logger.error(
                f"No exploit source available (protocol={protocol}, chain={chain}); returning empty result"
            )
        return records

    async def _fan_out(
        self,
        protocol: Optional[str],
        chain: Optional[str]
    ) -> Tuple[List[ExploitRecord], int]:
        admitted = []
        for source in self.sources:
            generation = self.breakers[source.source_id].admit()
            if generation is not None:
                admitted.append((source, generation))
        skipped = len(self.sources) - len(admitted)
        if skipped:
            logger.info(f"Skipping {skipped} source(s) with open circuits")
        if not admitted:
            return [], 0

        deadline_passed = asyncio.Event()
        tasks = [
            asyncio.create_task(self._query(source, generation, deadline_passed, protocol, chain))
            for source, generation in admitted
        ]
        try:
            done, pending = await asyncio.wait(tasks, timeout=self.deadline_seconds)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        if pending:
            logger.warning(f"{len(pending)} exploit source(s) still running at fetch deadline; cancelling")
            deadline_passed.set()
            for task in pending:
                task.cancel()
            await asyncio.wait(pending)

        batches = [task.result() for task in done if task.result() is not None]
        return merge_records(batches), len(batches)

    async def _query(
        self,
        source: SourceFetcher,
        generation: int,
        deadline_passed: asyncio.Event,
        protocol: Optional[str],
        chain: Optional[str]
    ) -> Optional[List[ExploitRecord]]:
        breaker = self.breakers[source.source_id]
        try:
            records = await asyncio.wait_for(
                asyncio.to_thread(source.fetch, protocol, chain),
                timeout=self.source_timeout,
            )
        except asyncio.TimeoutError:
            breaker.record_failure(generation)
            logger.warning(
                f"Source {source.source_id} timed out after {self.source_timeout}s "
                f"(protocol={protocol}, chain={chain})"
            )
            return None
        except asyncio.CancelledError:
            if deadline_passed.is_set():
                breaker.record_failure(generation)
                logger.warning(
                    f"Source {source.source_id} missed the {self.deadline_seconds}s fetch deadline "
                    f"(protocol={protocol}, chain={chain})"
                )
            else:
                breaker.release_trial(generation)
            raise
        except Exception as e:
            breaker.record_failure(generation)
            logger.warning(
                f"Source {source.source_id} failed (protocol={protocol}, chain={chain}): {e}"
            )
            return None

        breaker.record_success(generation)
        return list(records)

    def health(self) -> Dict[str, Dict]:
        """Circuit summary per source."""
        return {source_id: breaker.summary() for source_id, breaker in self.breakers.items()}

    def cache_stats(self) -> Dict:
        return self.cache.stats()
