"""Per-source circuit breaker.

A source that keeps failing is short-circuited for ``reset_time_ms``
instead of paying the full retry schedule on every batch. After the reset
time one trial call is let through (half-open): success closes the
circuit, failure opens it again.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from harvester.errors import HarvestError
from harvester.models import ErrorType

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(HarvestError):
    """Raised instead of calling a source whose circuit is open."""

    def __init__(self, key: str, retry_after_s: float):
        self.key = key
        self.retry_after_s = retry_after_s
        super().__init__(f"circuit open for {key}, retry after {retry_after_s:.0f}s")


@dataclass
class _Circuit:
    failures: int = 0
    last_failure_at: float = 0.0
    last_error_type: ErrorType = ErrorType.UNKNOWN
    state: CircuitState = CircuitState.CLOSED
    trial_in_flight: bool = False


class CircuitBreaker:
    """Tracks consecutive failures per key.

    Args:
        failure_threshold: Consecutive failures that open the circuit.
        reset_time_ms: Time an open circuit waits before allowing a trial call.
        clock: Seconds since the epoch; injectable for tests.
    """

    def __init__(self, failure_threshold: int = 5, reset_time_ms: int = 60000,
                 clock: Callable[[], float] = time.time):
        self.failure_threshold = failure_threshold
        self.reset_time_ms = reset_time_ms
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}

    def _circuit(self, key: str) -> _Circuit:
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = self._circuits[key] = _Circuit()
        return circuit

    def _elapsed_ms(self, circuit: _Circuit) -> float:
        return (self._clock() - circuit.last_failure_at) * 1000

    def state(self, key: str) -> CircuitState:
        circuit = self._circuit(key)
        if circuit.state == CircuitState.OPEN and self._elapsed_ms(circuit) >= self.reset_time_ms:
            circuit.state = CircuitState.HALF_OPEN
            circuit.trial_in_flight = False
            logger.info("Circuit for %s half-open after %dms", key, self.reset_time_ms)
        return circuit.state

    def last_error_type(self, key: str) -> ErrorType:
        return self._circuit(key).last_error_type

    def before_call(self, key: str) -> None:
        """Admit a call for ``key`` or raise.

        Raises:
            CircuitOpenError: The circuit is open, or half-open with its
                single trial call already taken.
        """
        state = self.state(key)
        circuit = self._circuits[key]
        if state == CircuitState.CLOSED:
            return
        if state == CircuitState.HALF_OPEN and not circuit.trial_in_flight:
            circuit.trial_in_flight = True
            return
        remaining_ms = max(self.reset_time_ms - self._elapsed_ms(circuit), 0)
        raise CircuitOpenError(key, remaining_ms / 1000)

    def record_success(self, key: str) -> None:
        circuit = self._circuit(key)
        if circuit.state != CircuitState.CLOSED:
            logger.info("Circuit for %s closed", key)
        self._circuits[key] = _Circuit()

    def record_failure(self, key: str, error_type: ErrorType = ErrorType.UNKNOWN) -> None:
        circuit = self._circuit(key)
        circuit.failures += 1
        circuit.last_failure_at = self._clock()
        circuit.last_error_type = error_type
        circuit.trial_in_flight = False
        if circuit.state == CircuitState.HALF_OPEN or circuit.failures >= self.failure_threshold:
            if circuit.state != CircuitState.OPEN:
                logger.warning("Circuit for %s opened after %d failure(s)", key, circuit.failures)
            circuit.state = CircuitState.OPEN

    def seed(self, key: str, failures: int, last_failure_at: float,
             error_type: Optional[ErrorType] = None) -> None:
        """Carry failures over from an earlier run, e.g. an unresolved dead letter."""
        circuit = self._circuit(key)
        circuit.failures = max(circuit.failures, failures)
        if last_failure_at >= circuit.last_failure_at:
            circuit.last_failure_at = last_failure_at
            if error_type is not None:
                circuit.last_error_type = error_type
        if circuit.failures >= self.failure_threshold:
            circuit.state = CircuitState.OPEN
