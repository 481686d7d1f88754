from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
import random
import time
from typing import Any, Awaitable, Callable, TypeVar

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import CallTimeoutError, CircuitOpenError
from notifyhub.services.telemetry import increment_counter, set_gauge


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
    # timeout_ms=None leaves per-attempt timeouts to the wrapped call.
    timeout_ms: int | None
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.delivery_timeout_ms,
        max_attempts=settings.delivery_retries,
        backoff_ms=settings.delivery_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    name: str = "external",
) -> T:
    # Retry helper with jittered exponential backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            if policy.timeout_ms is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            increment_counter(f"external_retries_total.{name}")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.warning(
                "external_call_retry name=%s attempt=%s max_attempts=%s sleep_s=%.3f error=%s",
                name,
                attempt,
                policy.max_attempts,
                sleep_s,
                exc,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE = {CircuitState.CLOSED: 0.0, CircuitState.HALF_OPEN: 0.5, CircuitState.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_s: float = 10.0
    reset_timeout_s: float = 30.0


def default_circuit_breaker_config(settings: Settings | None = None) -> CircuitBreakerConfig:
    # Thresholds live in settings so operators can tune without code changes.
    settings = settings or get_settings()
    return CircuitBreakerConfig(
        failure_threshold=settings.cb_failure_threshold,
        success_threshold=settings.cb_success_threshold,
        timeout_s=settings.delivery_timeout_ms / 1000.0,
        reset_timeout_s=settings.cb_reset_timeout_s,
    )


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    total_requests: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    next_attempt_at: float | None = None


@dataclass(frozen=True)
class CircuitBreakerMetrics:
    name: str
    state: str
    failures: int
    successes: int
    total_requests: int
    total_failures: int
    total_successes: int
    total_rejections: int
    last_failure_at: datetime | None
    last_success_at: datetime | None
    retry_in_s: float | None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("last_failure_at", "last_success_at"):
            value = payload[key]
            payload[key] = value.isoformat() if value is not None else None
        return payload


class CircuitBreaker:
    """Three-state guard around one downstream dependency.

    Closed calls pass through; after ``failure_threshold`` consecutive failures
    the breaker opens and rejects calls until ``reset_timeout_s`` has elapsed.
    The next call then runs as a single half-open probe, and
    ``success_threshold`` consecutive probe successes close the breaker again,
    while any probe failure reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        is_failure: Callable[[Exception], bool] | None = None,
    ) -> None:
        self._name = name
        self._config = config or default_circuit_breaker_config()
        self._time = time_source or time.monotonic
        self._is_failure = is_failure or (lambda _exc: True)
        self._state = CircuitBreakerState()
        self._lock = asyncio.Lock()
        self._probe_in_flight = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _transition(self, target: CircuitState) -> None:
        current = self._state.state
        if current == target:
            return
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.value, target.value)
        increment_counter(f"circuit_breaker_transition_total.{self._name}.{target.value}")
        if target is CircuitState.OPEN:
            increment_counter("circuit_breaker_open_total")
        set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        self._state.state = target

    def _admit(self) -> bool:
        # Must be called with the lock held.
        state = self._state
        if state.state is CircuitState.OPEN:
            if state.next_attempt_at is not None and self._time() < state.next_attempt_at:
                return False
            self._transition(CircuitState.HALF_OPEN)
            state.successes = 0
        if state.state is CircuitState.HALF_OPEN:
            # One probe at a time decides whether the dependency recovered.
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
        return True

    async def _on_success(self) -> None:
        async with self._lock:
            state = self._state
            state.failures = 0
            state.total_successes += 1
            state.last_success_at = datetime.now(timezone.utc)
            if state.state is CircuitState.HALF_OPEN:
                state.successes += 1
                if state.successes >= self._config.success_threshold:
                    self._transition(CircuitState.CLOSED)
                    state.successes = 0
                    state.next_attempt_at = None
            self._probe_in_flight = False

    async def _on_failure(self) -> None:
        async with self._lock:
            state = self._state
            state.failures += 1
            state.successes = 0
            state.total_failures += 1
            state.last_failure_at = datetime.now(timezone.utc)
            if state.state is CircuitState.HALF_OPEN or state.failures >= self._config.failure_threshold:
                self._transition(CircuitState.OPEN)
                state.next_attempt_at = self._time() + self._config.reset_timeout_s
                logger.error(
                    "circuit_breaker_opened name=%s failures=%s retry_in_s=%s",
                    self._name,
                    state.failures,
                    self._config.reset_timeout_s,
                )
            self._probe_in_flight = False

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        async with self._lock:
            self._state.total_requests += 1
            admitted = self._admit()
            if not admitted:
                self._state.total_rejections += 1
        if not admitted:
            increment_counter(f"circuit_breaker_rejected_total.{self._name}")
            if fallback is not None:
                logger.warning("circuit_breaker_fallback name=%s reason=open", self._name)
                return await fallback()
            raise CircuitOpenError(self._name)

        settled = False
        try:
            try:
                result = await asyncio.wait_for(fn(), timeout=self._config.timeout_s)
            except TimeoutError as exc:
                settled = True
                await self._on_failure()
                raise CallTimeoutError(
                    f"{self._name} call exceeded {self._config.timeout_s}s timeout"
                ) from exc
            except Exception as exc:
                settled = True
                if self._is_failure(exc):
                    await self._on_failure()
                else:
                    # The dependency answered, so it counts toward recovery.
                    await self._on_success()
                raise
            settled = True
            await self._on_success()
            return result
        except Exception:
            if fallback is not None:
                logger.warning("circuit_breaker_fallback name=%s reason=failure", self._name)
                return await fallback()
            raise
        finally:
            if not settled:
                # Cancelled mid-call: release the probe slot without judging the dependency.
                self._probe_in_flight = False

    def metrics(self) -> CircuitBreakerMetrics:
        state = self._state
        retry_in_s: float | None = None
        if state.state is CircuitState.OPEN and state.next_attempt_at is not None:
            retry_in_s = max(0.0, state.next_attempt_at - self._time())
        return CircuitBreakerMetrics(
            name=self._name,
            state=state.state.value,
            failures=state.failures,
            successes=state.successes,
            total_requests=state.total_requests,
            total_failures=state.total_failures,
            total_successes=state.total_successes,
            total_rejections=state.total_rejections,
            last_failure_at=state.last_failure_at,
            last_success_at=state.last_success_at,
            retry_in_s=retry_in_s,
        )

    def reset(self) -> None:
        # Operator override: close immediately and forget consecutive counters.
        logger.warning("circuit_breaker_manual_reset name=%s", self._name)
        self._transition(CircuitState.CLOSED)
        self._state.failures = 0
        self._state.successes = 0
        self._state.next_attempt_at = None
        self._probe_in_flight = False
