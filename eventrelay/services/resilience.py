from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import logging
import random
from threading import Lock
from typing import Any, Awaitable, Callable, TypeVar

from eventrelay.core.clock import Clock, utc_now
from eventrelay.core.concurrency import ShardedMap
from eventrelay.core.config import Settings, get_settings
from eventrelay.core.errors import CircuitOpenError
from eventrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE = {BreakerState.CLOSED: 0.0, BreakerState.HALF_OPEN: 0.5, BreakerState.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    success_threshold: int
    open_seconds: float

    @property
    def open_duration(self) -> timedelta:
        return timedelta(seconds=self.open_seconds)


def default_breaker_config(settings: Settings | None = None) -> CircuitBreakerConfig:
    settings = settings or get_settings()
    return CircuitBreakerConfig(
        failure_threshold=max(1, settings.cb_failure_threshold),
        success_threshold=max(1, settings.cb_success_threshold),
        open_seconds=settings.cb_open_seconds,
    )


@dataclass(frozen=True)
class CircuitInfo:
    # Immutable snapshot handed to ops endpoints and tests.
    name: str
    state: BreakerState
    failure_count: int
    success_count: int
    next_retry_time: datetime | None


class _Circuit:
    # Mutable per-name state; every read and write happens under its own lock.
    __slots__ = ("lock", "state", "failure_count", "success_count", "next_retry_time")

    def __init__(self) -> None:
        self.lock = Lock()
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_retry_time: datetime | None = None

    def info(self, name: str) -> CircuitInfo:
        return CircuitInfo(
            name=name,
            state=self.state,
            failure_count=self.failure_count,
            success_count=self.success_count,
            next_retry_time=self.next_retry_time,
        )


class CircuitBreakerRegistry:
    """Named circuit breakers guarding outbound calls.

    Circuits are created lazily on first use and live for the process lifetime.
    Transitions for one name are serialized by that circuit's lock; the guarded
    operation always runs outside the lock, and circuits with different names
    never share a lock.
    """

    def __init__(
        self,
        *,
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
        on_transition: Callable[[str, BreakerState, BreakerState], None] | None = None,
    ) -> None:
        self._config = config or default_breaker_config()
        self._clock = clock or utc_now
        self._on_transition = on_transition
        self._circuits: ShardedMap[_Circuit] = ShardedMap()

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _circuit(self, name: str) -> _Circuit:
        return self._circuits.get_or_create(name, _Circuit)

    def _transition(self, name: str, circuit: _Circuit, target: BreakerState) -> None:
        # Caller holds circuit.lock.
        previous = circuit.state
        circuit.state = target
        if target == BreakerState.OPEN:
            circuit.next_retry_time = self._clock() + self._config.open_duration
        else:
            circuit.next_retry_time = None
        if target != BreakerState.OPEN:
            circuit.failure_count = 0
            circuit.success_count = 0
        if previous == target:
            return
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", name, previous.value, target.value)
        increment_counter(f"circuit_breaker_transition_total.{name}.{target.value}")
        if target == BreakerState.OPEN:
            increment_counter("circuit_breaker_open_total")
        set_gauge(f"circuit_breaker_state.{name}", _STATE_GAUGE[target])
        if self._on_transition is not None:
            self._on_transition(name, previous, target)

    def _admit(self, name: str) -> tuple[bool, datetime | None]:
        # Decide whether a call may run; move open circuits to half-open once the cooldown elapsed.
        circuit = self._circuit(name)
        with circuit.lock:
            if circuit.state == BreakerState.OPEN:
                retry_at = circuit.next_retry_time
                if retry_at is not None and self._clock() < retry_at:
                    return False, retry_at
                self._transition(name, circuit, BreakerState.HALF_OPEN)
            return True, None

    def record_success(self, name: str) -> None:
        circuit = self._circuit(name)
        with circuit.lock:
            if circuit.state == BreakerState.HALF_OPEN:
                circuit.success_count += 1
                if circuit.success_count >= self._config.success_threshold:
                    self._transition(name, circuit, BreakerState.CLOSED)
            elif circuit.state == BreakerState.CLOSED:
                circuit.failure_count = 0

    def record_failure(self, name: str) -> BreakerState:
        circuit = self._circuit(name)
        with circuit.lock:
            if circuit.state == BreakerState.HALF_OPEN:
                self._transition(name, circuit, BreakerState.OPEN)
            elif circuit.state == BreakerState.CLOSED:
                circuit.failure_count += 1
                if circuit.failure_count >= self._config.failure_threshold:
                    circuit.failure_count = 0
                    self._transition(name, circuit, BreakerState.OPEN)
                else:
                    logger.debug(
                        "circuit_breaker_failure name=%s failures=%s threshold=%s",
                        name,
                        circuit.failure_count,
                        self._config.failure_threshold,
                    )
            return circuit.state

    async def execute(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        allowed, next_retry_time = self._admit(name)
        if not allowed:
            increment_counter(f"circuit_breaker_rejected_total.{name}")
            if fallback is not None:
                logger.info("circuit_breaker_fallback name=%s reason=open", name)
                return await fallback()
            raise CircuitOpenError(name, next_retry_time)
        try:
            result = await operation()
        except Exception:
            state = self.record_failure(name)
            if fallback is not None and state == BreakerState.OPEN:
                logger.info("circuit_breaker_fallback name=%s reason=tripped", name)
                return await fallback()
            raise
        self.record_success(name)
        return result

    def reset(self, name: str) -> CircuitInfo:
        # Force a circuit closed for operational recovery; unknown names are created closed.
        circuit = self._circuit(name)
        with circuit.lock:
            self._transition(name, circuit, BreakerState.CLOSED)
            info = circuit.info(name)
        logger.info("circuit_breaker_reset name=%s", name)
        return info

    def get_info(self, name: str) -> CircuitInfo:
        circuit = self._circuits.get(name)
        if circuit is None:
            return CircuitInfo(name, BreakerState.CLOSED, 0, 0, None)
        with circuit.lock:
            return circuit.info(name)

    def snapshot(self) -> list[CircuitInfo]:
        infos = []
        for name, circuit in self._circuits.items():
            with circuit.lock:
                infos.append(circuit.info(name))
        return sorted(infos, key=lambda info: info.name)
