"""
Process-wide cache of verified payment signatures.

A signature verified on chain is remembered for a fixed TTL (one hour by
default) so that one transaction can pay for repeated calls to the same
resource. The record pins the resource it was verified against; it never
authorizes a different resource.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional

from security_oracle.x402.types import VerificationRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
SWEEP_INTERVAL_SECONDS = 60


class VerificationCache:
    """
    Thread-safe signature -> VerificationRecord map with expiry.

    Writes are last-write-wins upserts, so concurrent verifications of the
    same signature are harmless. Expired records are swept on write, at
    most once per sweep interval.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
    ):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._records: Dict[str, VerificationRecord] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self.hits = 0
        self.misses = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, signature: str, resource: str) -> Optional[VerificationRecord]:
        """
        Return the live record for signature if it was verified for resource.

        Expired records are evicted here, forcing a fresh chain lookup.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(signature)
            if record is not None and record.expires_at <= now:
                del self._records[signature]
                logger.debug(f"Verification for {signature[:12]}... expired")
                record = None

            if record is None or record.resource != resource:
                self.misses += 1
                return None

            self.hits += 1
            return record

    def put(self, signature: str, resource: str) -> VerificationRecord:
        """Insert or refresh the record for signature."""
        now = self._clock()
        record = VerificationRecord(
            signature=signature,
            resource=resource,
            expires_at=now + self._ttl_seconds,
        )
        with self._lock:
            self._records[signature] = record
            if now - self._last_sweep >= self._sweep_interval:
                self._purge_locked(now)
        return record

    def _purge_locked(self, now: float) -> int:
        expired = [sig for sig, rec in self._records.items() if rec.expires_at <= now]
        for sig in expired:
            del self._records[sig]
        self._last_sweep = now
        if expired:
            logger.debug(f"Purged {len(expired)} expired payment verifications")
        return len(expired)

    def purge_expired(self) -> int:
        """Drop every expired record. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def __len__(self) -> int:
        """Stored records, including expired ones not yet swept."""
        with self._lock:
            return len(self._records)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            size = sum(1 for rec in self._records.values() if rec.expires_at > now)
        return {
            "verified_signatures": size,
            "verification_hits": self.hits,
            "verification_misses": self.misses,
        }

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
        self.hits = 0
        self.misses = 0
