# security_oracle/services/circuit.py
"""
Per-source circuit breaker.

State machine:
    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(cooldown elapsed, next request)--> HALF_OPEN (one trial call)
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)--> OPEN, cooldown restarted

While OPEN, and while a HALF_OPEN trial is in flight, callers are refused.
Every transition starts a new generation; outcomes reported for calls
admitted under an earlier generation do not move the state.
"""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitStatus(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitState:
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None


class CircuitBreaker:
    """Thread-safe circuit breaker guarding one upstream source."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState()
        self._trial_in_flight = False
        self._generation = 0
        self._lock = threading.Lock()
        self.total_successes = 0
        self.total_failures = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return CircuitState(
                status=self._state.status,
                consecutive_failures=self._state.consecutive_failures,
                opened_at=self._state.opened_at,
            )

    @property
    def status(self) -> CircuitStatus:
        return self.state.status

    def admit(self) -> Optional[int]:
        """
        Ask permission to call the source.

        Moving OPEN -> HALF_OPEN happens here, and reserves the single
        trial call for the caller that observed the transition.

        Returns:
            The circuit generation the call belongs to, to be handed back
            with its outcome, or None if the call is refused.
        """
        with self._lock:
            if self._state.status == CircuitStatus.CLOSED:
                return self._generation

            if self._state.status == CircuitStatus.OPEN:
                elapsed = self._clock() - (self._state.opened_at or 0.0)
                if elapsed < self.cooldown_seconds:
                    return None
                self._state.status = CircuitStatus.HALF_OPEN
                self._generation += 1
                self._trial_in_flight = True
                logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN, allowing one trial request")
                return self._generation

            # HALF_OPEN
            if self._trial_in_flight:
                return None
            self._trial_in_flight = True
            return self._generation

    def allow_request(self) -> bool:
        return self.admit() is not None

    def _is_stale(self, generation: Optional[int]) -> bool:
        # Outcomes of calls admitted before the last transition are ignored
        return generation is not None and generation != self._generation

    def record_success(self, generation: Optional[int] = None) -> None:
        with self._lock:
            self.total_successes += 1
            if self._is_stale(generation):
                logger.debug(f"Circuit {self.name}: ignoring late success from generation {generation}")
                return
            if self._state.status != CircuitStatus.CLOSED:
                logger.info(f"Circuit {self.name}: {self._state.status.value} -> CLOSED")
                self._generation += 1
            self._state = CircuitState()
            self._trial_in_flight = False

    def record_failure(self, generation: Optional[int] = None) -> None:
        with self._lock:
            self.total_failures += 1
            if self._is_stale(generation):
                logger.debug(f"Circuit {self.name}: ignoring late failure from generation {generation}")
                return
            self._state.consecutive_failures += 1

            if self._state.status == CircuitStatus.HALF_OPEN:
                self._open()
                logger.warning(f"Circuit {self.name}: trial request failed, HALF_OPEN -> OPEN")
            elif (
                self._state.status == CircuitStatus.CLOSED
                and self._state.consecutive_failures >= self.failure_threshold
            ):
                self._open()
                logger.warning(
                    f"Circuit {self.name}: CLOSED -> OPEN after "
                    f"{self._state.consecutive_failures} consecutive failures"
                )

    def release_trial(self, generation: Optional[int] = None) -> None:
        """Give back a HALF_OPEN trial slot whose outcome never arrived."""
        with self._lock:
            if not self._is_stale(generation):
                self._trial_in_flight = False

    def _open(self) -> None:
        self._state.status = CircuitStatus.OPEN
        self._state.opened_at = self._clock()
        self._generation += 1
        self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState()
            self._generation += 1
            self._trial_in_flight = False

    def summary(self) -> Dict[str, Any]:
        """Health snapshot for the /health endpoint."""
        state = self.state
        retry_in = None
        if state.status == CircuitStatus.OPEN and state.opened_at is not None:
            retry_in = max(0.0, round(self.cooldown_seconds - (self._clock() - state.opened_at), 1))
        return {
            "status": state.status.value,
            "healthy": state.status == CircuitStatus.CLOSED,
            "consecutive_failures": state.consecutive_failures,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "retry_in_seconds": retry_in,
        }
