"""
Circuit breaker for fault tolerance.

A single CircuitBreaker instance tracks many independent circuits keyed by
an opaque string (``user|provider`` for the vault, ``provider`` for the
orchestrator). Circuits are created lazily on first failure and dropped
again on success.
"""

import threading
import time
from enum import Enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..core.exceptions import CircuitOpenError
from ..utils.logger import get_logger


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 3
    cooldown_seconds: float = 30.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CircuitBreakerConfig":
        data = data or {}
        return cls(
            failure_threshold=int(data.get("failure_threshold", 3)),
            cooldown_seconds=float(data.get("cooldown_seconds", 30.0)),
        )


@dataclass
class CircuitStatus:
    """Mutable state of one circuit."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    next_attempt_at: Optional[float] = None
    trial_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at,
            "next_attempt_at": self.next_attempt_at,
            "trial_in_flight": self.trial_in_flight,
        }


class CircuitBreaker:
    """
    Keyed circuit breaker.

    closed -> (failure_threshold consecutive failures) -> open
    open -> (cooldown elapsed) -> half-open, exactly one trial call admitted
    half-open -> success -> closed (counter zeroed)
    half-open -> failure -> open (cooldown restarted)
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, clock: Callable[[], float] = time.monotonic, name: str = "default"):
        """Initialize circuit breaker."""
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._circuits: Dict[str, CircuitStatus] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def before_call(self, key: str):
        """
        Admit or reject a call for ``key``.

        Raises:
            CircuitOpenError: if the circuit is open, or half-open with its
                single trial call already in flight.
        """
        with self._lock:
            circuit = self._circuits.get(key)
            if circuit is None or circuit.state == CircuitState.CLOSED:
                return

            now = self._clock()
            if circuit.state == CircuitState.OPEN:
                if now < circuit.next_attempt_at:
                    raise CircuitOpenError(key, circuit.next_attempt_at - now)
                circuit.state = CircuitState.HALF_OPEN
                circuit.trial_in_flight = False
                self.logger.info(f"Circuit {self.name}:{key} half-open, admitting trial call")

            if circuit.trial_in_flight:
                raise CircuitOpenError(key)
            circuit.trial_in_flight = True

    def record_success(self, key: str):
        """Any success closes the circuit and zeroes its counter."""
        with self._lock:
            circuit = self._circuits.pop(key, None)
        if circuit is not None and circuit.state != CircuitState.CLOSED:
            self.logger.info(f"Circuit {self.name}:{key} closed after successful call")

    def record_failure(self, key: str):
        """Count a failure, opening the circuit when the threshold is reached."""
        with self._lock:
            now = self._clock()
            circuit = self._circuits.setdefault(key, CircuitStatus())
            circuit.failure_count += 1
            circuit.last_failure_at = now

            if circuit.state == CircuitState.HALF_OPEN or circuit.failure_count >= self.config.failure_threshold:
                reopened = circuit.state == CircuitState.HALF_OPEN
                circuit.state = CircuitState.OPEN
                circuit.trial_in_flight = False
                circuit.next_attempt_at = now + self.config.cooldown_seconds
                self.logger.warning(
                    f"Circuit {self.name}:{key} {'re-opened' if reopened else 'opened'} "
                    f"due to {circuit.failure_count} failures"
                )

    def release(self, key: str):
        """Give back a half-open trial slot without recording an outcome."""
        with self._lock:
            circuit = self._circuits.get(key)
            if circuit is not None and circuit.state == CircuitState.HALF_OPEN:
                circuit.trial_in_flight = False

    def reset(self, key: str):
        """Force a circuit back to closed."""
        with self._lock:
            self._circuits.pop(key, None)

    def clear(self):
        """Drop every circuit."""
        with self._lock:
            self._circuits.clear()

    def get_state(self, key: str) -> CircuitState:
        """Effective state, reporting half-open once the cooldown has elapsed."""
        with self._lock:
            circuit = self._circuits.get(key)
            if circuit is None:
                return CircuitState.CLOSED
            if circuit.state == CircuitState.OPEN and self._clock() >= circuit.next_attempt_at:
                return CircuitState.HALF_OPEN
            return circuit.state

    def get_failure_count(self, key: str) -> int:
        with self._lock:
            circuit = self._circuits.get(key)
            return circuit.failure_count if circuit else 0

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Get status of all tracked circuits."""
        with self._lock:
            return {key: circuit.to_dict() for key, circuit in self._circuits.items()}

    async def call(self, key: str, func: Callable, *args, **kwargs):
        """Execute an async function with circuit breaker protection."""
        self.before_call(key)
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure(key)
            raise
        except BaseException:
            self.release(key)
            raise
        self.record_success(key)
        return result
