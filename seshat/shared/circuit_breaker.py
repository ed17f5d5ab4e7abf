"""Circuit breaker guarding calls to the vector database.

The state machine is expressed as pure functions over an immutable
:class:`CircuitBreakerState`, so transitions can be tested with plain values.
:class:`CircuitBreaker` wraps them with a lock and a clock for use by the
store client.

Transitions:

- closed → open once ``failure_count >= threshold``
- open → half_open on the first call after ``timeout`` seconds have passed
  since the last failure
- half_open → closed on the first success
- half_open → open on any failure
- an interrupted trial (``KeyboardInterrupt`` and the like) frees the
  half-open slot without counting as a failure
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
import threading
import time
from typing import Any

from seshat.shared.errors import CircuitOpenError
from seshat.shared.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_TIMEOUT_SECONDS = 60.0


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot of the breaker.

    ``trial_in_flight`` marks the single trial call admitted while half-open.
    """

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float | None = None
    trial_in_flight: bool = False


def on_before_call(
    current: CircuitBreakerState, now: float, timeout: float
) -> tuple[CircuitBreakerState, bool]:
    """Decide whether a call may proceed.

    Returns:
        The next state and whether the call is admitted.
    """
    if current.state == CircuitState.CLOSED:
        return current, True

    if current.state == CircuitState.OPEN:
        elapsed = now - (current.last_failure_time or 0.0)
        if elapsed >= timeout:
            return replace(current, state=CircuitState.HALF_OPEN, trial_in_flight=True), True
        return current, False

    # half_open: only one trial at a time
    if current.trial_in_flight:
        return current, False
    return replace(current, trial_in_flight=True), True


def on_success(current: CircuitBreakerState) -> CircuitBreakerState:
    """A success closes the breaker and clears the failure count."""
    _ = current
    return CircuitBreakerState()


def on_failure(current: CircuitBreakerState, now: float, threshold: int) -> CircuitBreakerState:
    """Record a failed attempt."""
    failures = current.failure_count + 1
    if current.state == CircuitState.HALF_OPEN or failures >= threshold:
        return CircuitBreakerState(state=CircuitState.OPEN, failure_count=failures, last_failure_time=now)
    return replace(current, failure_count=failures, last_failure_time=now)


def on_abandon(current: CircuitBreakerState) -> CircuitBreakerState:
    """An admitted call ended without an outcome; free the half-open trial slot."""
    return replace(current, trial_in_flight=False)


class CircuitBreaker:
    """Thread-safe breaker built on the pure transition functions.

    Args:
        threshold: Consecutive failures that open the circuit.
        timeout: Seconds to wait in the open state before a trial call.
        clock: Monotonic clock returning seconds (injectable for tests).
        name: Name used in log messages.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_FAILURE_THRESHOLD,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "vector-store",
    ):
        if threshold < 1:
            msg = f"threshold must be at least 1, got {threshold}"
            raise ValueError(msg)
        self.threshold = threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state

    def before_call(self, operation: str = "") -> None:
        """Admit a call or fail fast.

        Raises:
            CircuitOpenError: While open and not yet timed out, or while a
                half-open trial is already running.
        """
        with self._lock:
            previous = self._state
            now = self._clock()
            self._state, allowed = on_before_call(previous, now, self.timeout)
            if not allowed:
                retry_after = 0.0
                if previous.last_failure_time is not None:
                    retry_after = max(0.0, self.timeout - (now - previous.last_failure_time))
                raise CircuitOpenError(operation, retry_after=retry_after)
            if previous.state == CircuitState.OPEN and self._state.state == CircuitState.HALF_OPEN:
                logger.info("Circuit breaker %s half-open, admitting trial call", self.name)

    def record_success(self) -> None:
        with self._lock:
            previous = self._state.state
            self._state = on_success(self._state)
        if previous != CircuitState.CLOSED:
            logger.info("Circuit breaker %s closed after successful call", self.name)

    def record_failure(self) -> None:
        with self._lock:
            previous = self._state.state
            self._state = on_failure(self._state, self._clock(), self.threshold)
            failures = self._state.failure_count
            opened = previous != CircuitState.OPEN and self._state.state == CircuitState.OPEN
        if opened:
            logger.warning("Circuit breaker %s opened after %d failures", self.name, failures)

    def abandon_trial(self) -> None:
        """Release an admitted call that was interrupted before it completed."""
        with self._lock:
            self._state = on_abandon(self._state)

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitBreakerState()

    def to_dict(self) -> dict[str, Any]:
        current = self.state
        return {
            "state": current.state.value,
            "failure_count": current.failure_count,
            "last_failure_time": current.last_failure_time,
            "threshold": self.threshold,
            "timeout": self.timeout,
        }
