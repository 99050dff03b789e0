"""
Per-key circuit breaker for unreliable upstream calls.

Guards outbound integrations (exchange APIs, market data vendors) so that a
dependency known to be failing is not hammered with further requests. Each
resilience key (e.g. an exchange slug) gets its own independent circuit,
created lazily on first use.

State Machine:
    CLOSED → (failure_threshold failures inside failure_window) → OPEN
    OPEN → (reset_timeout elapsed, checked on next admission) → HALF_OPEN
    HALF_OPEN → (success_threshold consecutive successes) → CLOSED
    HALF_OPEN → (any failure) → OPEN

Storage:
    State is process-local and in-memory. Each worker process keeps its own
    view of upstream health; nothing is persisted.

Example:
    >>> breaker = get_circuit_breaker()
    >>> breaker.check_circuit("kraken")  # raises CircuitOpenError if open
    >>> try:
    ...     candles = client.fetch_ohlcv("BTC/USD", "1h")
    ... except Exception:
    ...     breaker.record_failure("kraken")
    ...     raise
    >>> breaker.record_success("kraken")

Notes:
    - The breaker holds no reference to what it protects; callers must report
      every guarded call through record_success / record_failure.
    - Failures older than the window are pruned lazily on the next failure.
    - A failure recorded while already OPEN refreshes opened_at, extending
      the cooldown.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from functools import lru_cache

from config.settings import get_settings
from libs.common.exceptions import TradingPlatformError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """
    Circuit states.

    CLOSED: Calls pass through
    OPEN: Calls fail fast until the reset timeout elapses
    HALF_OPEN: Probe calls admitted to test recovery
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerOptions:
    """Thresholds for a single circuit. Durations are in seconds."""

    failure_threshold: int = 5
    failure_window_seconds: float = 60.0
    reset_timeout_seconds: float = 30.0
    success_threshold: int = 2


@dataclass(frozen=True)
class CircuitStats:
    """Point-in-time snapshot of one circuit."""

    circuit_key: str
    state: CircuitState
    failure_count: int
    consecutive_successes: int
    last_failure_time: datetime | None
    opened_at: datetime | None
    seconds_until_half_open: float | None


class CircuitOpenError(TradingPlatformError):
    """
    Raised when a call is attempted against an OPEN circuit.

    Attributes:
        circuit_key: Key of the rejecting circuit
        seconds_until_half_open: Remaining cooldown before a probe is admitted
    """

    def __init__(self, circuit_key: str, seconds_until_half_open: float):
        self.circuit_key = circuit_key
        self.seconds_until_half_open = seconds_until_half_open
        super().__init__(
            f"Circuit breaker '{circuit_key}' is OPEN. "
            f"Retry in {math.ceil(seconds_until_half_open)}s"
        )


@dataclass
class _Circuit:
    options: CircuitBreakerOptions
    state: CircuitState = CircuitState.CLOSED
    failures: list[float] = field(default_factory=list)
    consecutive_successes: int = 0
    last_failure_at: float | None = None
    last_failure_time: datetime | None = None
    opened_at: float | None = None
    opened_at_time: datetime | None = None


class CircuitBreaker:
    """
    Thread-safe registry of per-key circuits.

    Attributes:
        default_options: Options applied to circuits created without configure()

    Example:
        >>> breaker = CircuitBreaker(CircuitBreakerOptions(failure_threshold=2))
        >>> breaker.record_failure("binanceus")
        >>> breaker.record_failure("binanceus")
        >>> breaker.is_open("binanceus")
        True
    """

    def __init__(
        self,
        default_options: CircuitBreakerOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_options = default_options or CircuitBreakerOptions()
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}
        self._lock = threading.Lock()

    def _get_circuit(self, key: str) -> _Circuit:
        # Caller must hold self._lock
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = _Circuit(options=self.default_options)
            self._circuits[key] = circuit
        return circuit

    def configure(self, key: str, options: CircuitBreakerOptions) -> None:
        """Override the thresholds of one circuit."""
        with self._lock:
            self._get_circuit(key).options = replace(options)

    def _admit(self, key: str, circuit: _Circuit, now: float) -> float | None:
        """Apply the OPEN → HALF_OPEN transition; return remaining cooldown when rejected."""
        if circuit.state is not CircuitState.OPEN:
            return None

        elapsed = now - (circuit.opened_at if circuit.opened_at is not None else now)
        if elapsed >= circuit.options.reset_timeout_seconds:
            circuit.state = CircuitState.HALF_OPEN
            circuit.consecutive_successes = 0
            logger.info(
                "Circuit '%s' transitioning to HALF_OPEN after %.1fs",
                key,
                elapsed,
                extra={"circuit_key": key},
            )
            return None
        return circuit.options.reset_timeout_seconds - elapsed

    def check_circuit(self, key: str) -> None:
        """
        Admit or reject a call guarded by ``key``.

        CLOSED and HALF_OPEN admit. OPEN rejects until the reset timeout has
        elapsed; the first check after that moves the circuit to HALF_OPEN
        and admits the call as a probe.

        Raises:
            CircuitOpenError: If the circuit is OPEN and still cooling down
        """
        with self._lock:
            circuit = self._get_circuit(key)
            remaining = self._admit(key, circuit, self._clock())
        if remaining is not None:
            raise CircuitOpenError(key, remaining)

    def is_open(self, key: str) -> bool:
        """Non-raising variant of check_circuit (performs the same transition)."""
        try:
            self.check_circuit(key)
        except CircuitOpenError:
            return True
        return False

    def record_success(self, key: str) -> None:
        """Report a successful guarded call."""
        with self._lock:
            circuit = self._get_circuit(key)
            if circuit.state is not CircuitState.HALF_OPEN:
                return
            circuit.consecutive_successes += 1
            if circuit.consecutive_successes >= circuit.options.success_threshold:
                circuit.state = CircuitState.CLOSED
                circuit.failures = []
                circuit.consecutive_successes = 0
                circuit.opened_at = None
                circuit.opened_at_time = None
                logger.info(
                    "Circuit '%s' CLOSED after successful recovery",
                    key,
                    extra={"circuit_key": key},
                )

    def record_failure(self, key: str) -> None:
        """Report a failed guarded call."""
        with self._lock:
            circuit = self._get_circuit(key)
            now = self._clock()
            window = circuit.options.failure_window_seconds
            circuit.failures = [ts for ts in circuit.failures if now - ts < window]
            circuit.failures.append(now)
            circuit.last_failure_at = now
            circuit.last_failure_time = datetime.now(UTC)

            if circuit.state is CircuitState.CLOSED:
                if len(circuit.failures) >= circuit.options.failure_threshold:
                    self._open(circuit, now)
                    logger.warning(
                        "Circuit '%s' OPENED after %d failures in %.0fs",
                        key,
                        len(circuit.failures),
                        window,
                        extra={"circuit_key": key, "failure_count": len(circuit.failures)},
                    )
            elif circuit.state is CircuitState.HALF_OPEN:
                self._open(circuit, now)
                circuit.consecutive_successes = 0
                logger.warning(
                    "Circuit '%s' re-OPENED after failure during recovery",
                    key,
                    extra={"circuit_key": key},
                )
            else:
                # Still failing while open: extend the cooldown
                self._open(circuit, now)

    def _open(self, circuit: _Circuit, now: float) -> None:
        circuit.state = CircuitState.OPEN
        circuit.opened_at = now
        circuit.opened_at_time = datetime.now(UTC)

    def get_state(self, key: str) -> CircuitState:
        """Current state, after applying any due OPEN → HALF_OPEN transition."""
        with self._lock:
            circuit = self._get_circuit(key)
            self._admit(key, circuit, self._clock())
            return circuit.state

    def get_stats(self, key: str) -> CircuitStats:
        with self._lock:
            return self._stats(key, self._get_circuit(key), self._clock())

    def get_all_stats(self) -> list[CircuitStats]:
        with self._lock:
            now = self._clock()
            return [self._stats(key, circuit, now) for key, circuit in self._circuits.items()]

    def _stats(self, key: str, circuit: _Circuit, now: float) -> CircuitStats:
        window = circuit.options.failure_window_seconds
        recent_failures = [ts for ts in circuit.failures if now - ts < window]

        seconds_until_half_open: float | None = None
        if circuit.state is CircuitState.OPEN and circuit.opened_at is not None:
            elapsed = now - circuit.opened_at
            if elapsed < circuit.options.reset_timeout_seconds:
                seconds_until_half_open = circuit.options.reset_timeout_seconds - elapsed

        return CircuitStats(
            circuit_key=key,
            state=circuit.state,
            failure_count=len(recent_failures),
            consecutive_successes=circuit.consecutive_successes,
            last_failure_time=circuit.last_failure_time,
            opened_at=circuit.opened_at_time,
            seconds_until_half_open=seconds_until_half_open,
        )

    def reset(self, key: str) -> None:
        """Manually force a circuit back to CLOSED, clearing its history."""
        with self._lock:
            circuit = self._get_circuit(key)
            circuit.state = CircuitState.CLOSED
            circuit.failures = []
            circuit.consecutive_successes = 0
            circuit.last_failure_at = None
            circuit.last_failure_time = None
            circuit.opened_at = None
            circuit.opened_at_time = None
        logger.info("Circuit '%s' manually RESET to CLOSED", key, extra={"circuit_key": key})

    def trip(self, key: str) -> None:
        """Manually force a circuit OPEN, starting a fresh cooldown."""
        with self._lock:
            self._open(self._get_circuit(key), self._clock())
        logger.warning("Circuit '%s' manually TRIPPED to OPEN", key, extra={"circuit_key": key})


@lru_cache
def get_circuit_breaker() -> CircuitBreaker:
    """
    Process-wide circuit breaker configured from settings.

    Each worker process builds its own instance on first use.
    """
    settings = get_settings()
    return CircuitBreaker(
        CircuitBreakerOptions(
            failure_threshold=settings.circuit_failure_threshold,
            failure_window_seconds=settings.circuit_failure_window_seconds,
            reset_timeout_seconds=settings.circuit_reset_timeout_seconds,
            success_threshold=settings.circuit_success_threshold,
        )
    )
