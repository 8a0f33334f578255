"""Per-origin circuit breaker"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional, TypeVar
from urllib.parse import urlparse

from loguru import logger

from .classifier import classify_error
from .config import (
    CIRCUIT_BREAKER_COOLDOWN,
    CIRCUIT_BREAKER_THRESHOLD,
    HALF_OPEN_MAX_ATTEMPTS,
    HALF_OPEN_SUCCESS_THRESHOLD,
)
from .exceptions import CircuitOpenError, FetchError
from .models import CircuitState, ErrorKind, OriginCircuit

T = TypeVar("T")


def origin_key(url: str) -> str:
    """Hostname of ``url``, or the raw string when it has none"""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return url
    return hostname or url


class CircuitBreaker:
    """
    Circuit breaker keyed by origin, so one failing host cannot starve others.

    Retryable failures trip the circuit after ``failure_threshold``
    consecutive occurrences. After ``cooldown_period`` the next call moves the
    circuit to HALF_OPEN, where a bounded number of probes decide whether it
    closes again. Non-retryable failures and cancellations leave the state
    untouched.
    """

    def __init__(
        self,
        failure_threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        cooldown_period: float = CIRCUIT_BREAKER_COOLDOWN,
        half_open_max_attempts: int = HALF_OPEN_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive retryable failures before opening
            cooldown_period: Seconds an open circuit waits before probing
            half_open_max_attempts: Probes admitted per half-open window
            clock: Monotonic time source in seconds
        """
        self.failure_threshold = failure_threshold
        self.cooldown_period = cooldown_period
        self.half_open_max_attempts = half_open_max_attempts
        self.clock = clock
        self._circuits: Dict[str, OriginCircuit] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        logger.debug(
            f"Circuit breaker initialized: threshold={failure_threshold}, "
            f"cooldown={cooldown_period}s, half_open_max={half_open_max_attempts}"
        )

    def _get_or_create(self, origin: str) -> OriginCircuit:
        circuit = self._circuits.get(origin)
        if circuit is None:
            circuit = OriginCircuit(origin=origin, last_transition_time=self.clock())
            self._circuits[origin] = circuit
            self._locks[origin] = asyncio.Lock()
        return circuit

    def _transition(self, circuit: OriginCircuit, new_state: CircuitState) -> None:
        old_state = circuit.state
        circuit.state = new_state
        circuit.last_transition_time = self.clock()

        circuit.half_open_probes_issued = 0
        circuit.half_open_successes = 0
        if new_state == CircuitState.CLOSED:
            circuit.consecutive_failures = 0

        if old_state == new_state:
            return
        message = (
            f"Circuit '{circuit.origin}': {old_state.value} -> {new_state.value} "
            f"(failures: {circuit.consecutive_failures})"
        )
        if new_state == CircuitState.OPEN:
            logger.error(message)
        elif new_state == CircuitState.CLOSED:
            logger.success(message)
        else:
            logger.info(message)

    def _admit(self, circuit: OriginCircuit, url: str) -> bool:
        """Check-and-transition before a call. Returns True for probe calls."""
        now = self.clock()

        if circuit.state == CircuitState.OPEN:
            elapsed = now - circuit.last_transition_time
            if elapsed < self.cooldown_period:
                remaining = self.cooldown_period - elapsed
                logger.warning(
                    f"Circuit '{circuit.origin}' is OPEN, rejecting request "
                    f"(retry in {remaining:.0f}s)"
                )
                raise CircuitOpenError(
                    f"Circuit breaker is open for {circuit.origin}", url=url
                )
            self._transition(circuit, CircuitState.HALF_OPEN)

        if circuit.state == CircuitState.HALF_OPEN:
            if circuit.half_open_probes_issued >= self.half_open_max_attempts:
                # A window that produced no verdict opens a fresh one
                if now - circuit.last_transition_time >= self.cooldown_period:
                    self._transition(circuit, CircuitState.HALF_OPEN)
                else:
                    logger.warning(
                        f"Circuit '{circuit.origin}' half-open probe limit reached, "
                        "rejecting request"
                    )
                    raise CircuitOpenError(
                        f"Circuit breaker is testing recovery for {circuit.origin}",
                        url=url,
                    )
            circuit.half_open_probes_issued += 1
            return True

        return False

    def _record_success(self, circuit: OriginCircuit, probe: bool) -> None:
        if circuit.state == CircuitState.HALF_OPEN:
            if not probe:
                return
            circuit.half_open_successes += 1
            logger.debug(
                f"Circuit '{circuit.origin}' probe succeeded "
                f"({circuit.half_open_successes}/{HALF_OPEN_SUCCESS_THRESHOLD})"
            )
            if circuit.half_open_successes >= HALF_OPEN_SUCCESS_THRESHOLD:
                self._transition(circuit, CircuitState.CLOSED)
        elif circuit.state == CircuitState.CLOSED:
            circuit.consecutive_failures = max(0, circuit.consecutive_failures - 1)

    def _record_failure(self, circuit: OriginCircuit, error: FetchError, probe: bool) -> None:
        if error.kind == ErrorKind.CANCELLED:
            self._release_probe(circuit, probe)
            return
        if not error.retryable:
            return

        circuit.consecutive_failures += 1

        if circuit.state == CircuitState.HALF_OPEN:
            logger.warning(
                f"Circuit '{circuit.origin}' half-open probe failed ({error.kind.value}), "
                "reopening"
            )
            self._transition(circuit, CircuitState.OPEN)
        elif circuit.state == CircuitState.CLOSED:
            if circuit.consecutive_failures >= self.failure_threshold:
                self._transition(circuit, CircuitState.OPEN)
            else:
                logger.warning(
                    f"Circuit '{circuit.origin}' failure "
                    f"{circuit.consecutive_failures}/{self.failure_threshold} "
                    f"({error.kind.value})"
                )

    @staticmethod
    def _release_probe(circuit: OriginCircuit, probe: bool) -> None:
        if probe and circuit.state == CircuitState.HALF_OPEN:
            circuit.half_open_probes_issued = max(0, circuit.half_open_probes_issued - 1)

    async def execute(self, url: str, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` under the circuit for the origin of ``url``.

        Raises:
            CircuitOpenError: when the circuit rejects the call
            FetchError: the classified failure of ``operation``
        """
        origin = origin_key(url)
        circuit = self._get_or_create(origin)
        lock = self._locks[origin]

        async with lock:
            probe = self._admit(circuit, url)

        try:
            result = await operation()
        except asyncio.CancelledError:
            async with lock:
                self._release_probe(circuit, probe)
            raise
        except Exception as e:
            error = classify_error(e, url)
            async with lock:
                self._record_failure(circuit, error, probe)
            if error is e:
                raise
            raise error from e

        async with lock:
            self._record_success(circuit, probe)
        return result

    def get_state(self, url: str) -> CircuitState:
        """Current state for the origin of ``url`` (CLOSED if never seen)"""
        circuit = self._circuits.get(origin_key(url))
        return circuit.state if circuit else CircuitState.CLOSED

    def reset(self, url: Optional[str] = None) -> None:
        """Forget the circuit for one origin, or for all origins"""
        if url is None:
            self._circuits.clear()
            self._locks.clear()
            logger.info("Reset all circuits")
            return
        origin = origin_key(url)
        self._circuits.pop(origin, None)
        self._locks.pop(origin, None)
        logger.info(f"Reset circuit for {origin}")

    def get_stats(self) -> Dict[str, OriginCircuit]:
        """Snapshot copy of every known circuit"""
        return {
            origin: OriginCircuit(**vars(circuit))
            for origin, circuit in self._circuits.items()
        }
