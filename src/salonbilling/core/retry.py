"""Guarded calls to the payment processor.

A mutating processor call is retried only when it carries an idempotency
key, so that a retried "create subscription" can never bill a salon twice.
Reads may always be retried. Everything else surfaces its first failure.

Repeated outages trip a circuit breaker, after which lifecycle operations
fail fast with 503 until the processor has had time to recover.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from salonbilling.core.exceptions import PaymentProcessorError, ProcessorUnavailableError
from salonbilling.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryConfig:
    """Backoff for keyed or read-only processor calls.

    Attributes:
        max_attempts: Attempts including the first one.
        initial_delay: Seconds before the first retry; doubles after that.
        max_delay: Upper bound on a single wait.
        jitter_max: Random seconds added to each wait.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0
    jitter_max: float = 0.5


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """When the breaker trips and how it probes for recovery.

    Attributes:
        failure_threshold: Consecutive outages that open the circuit.
        recovery_timeout: Seconds the circuit stays open before probing.
        half_open_max_calls: Probe calls let through while half-open.
        success_threshold: Probe successes needed to close again.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 1
    success_threshold: int = 1


PROCESSOR_CIRCUIT = CircuitBreakerConfig()


class CircuitBreakerError(ProcessorUnavailableError):
    """The processor circuit is open; the call was not attempted."""

    def __init__(self, name: str, retry_in: float) -> None:
        self.name = name
        self.retry_in = max(retry_in, 0.0)
        super().__init__(
            f"Circuit '{name}' is open; next probe in {self.retry_in:.1f}s",
            retryable=True,
            details={"breaker": name, "retry_in_seconds": round(self.retry_in, 1)},
        )


def counts_as_outage(exc: BaseException) -> bool:
    """Declines and rejected requests are answers, not outages."""
    return isinstance(exc, PaymentProcessorError) and exc.retryable


class CircuitBreaker:
    """Consecutive-failure breaker around processor calls."""

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._lock = asyncio.Lock()
        self.reset()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._probes_in_flight = 0
        self._opened_at = 0.0

    def _transition(self, state: CircuitState, **log_fields: object) -> None:
        logger.info(
            "circuit_state_changed",
            breaker=self.name,
            old_state=self._state.value,
            new_state=state.value,
            **log_fields,
        )
        self._state = state
        if state is CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif state is CircuitState.HALF_OPEN:
            self._probe_successes = 0
            self._probes_in_flight = 0
        else:
            self._failures = 0

    async def _admit(self) -> None:
        async with self._lock:
            if self._state is CircuitState.OPEN:
                waited = time.monotonic() - self._opened_at
                if waited < self.config.recovery_timeout:
                    raise CircuitBreakerError(self.name, self.config.recovery_timeout - waited)
                self._transition(CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._probes_in_flight >= self.config.half_open_max_calls:
                    raise CircuitBreakerError(self.name, self.config.recovery_timeout)
                self._probes_in_flight += 1

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._probe_successes += 1
                if self._probe_successes >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
            else:
                self._failures = 0

    async def _on_outage(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, reason="probe_failed")
            elif (
                self._state is CircuitState.CLOSED
                and self._failures >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN, failures=self._failures)

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` unless the circuit is open.

        Raises:
            CircuitBreakerError: The circuit is open or out of probe slots.
        """
        await self._admit()
        try:
            result = await func()
        except PaymentProcessorError as exc:
            if counts_as_outage(exc):
                await self._on_outage()
            else:
                await self._on_success()
            raise
        await self._on_success()
        return result


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
    """Process-wide breaker per processor, created on first use."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = _breakers[name] = CircuitBreaker(name, config)
    return breaker


def _should_retry(exc: BaseException) -> bool:
    # An open circuit will not close within one backoff window.
    return counts_as_outage(exc) and not isinstance(exc, CircuitBreakerError)


async def call_processor(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    idempotency_key: str | None,
    read_only: bool = False,
    config: RetryConfig | None = None,
    breaker: CircuitBreaker | None = None,
) -> T:
    """Run one processor call behind the breaker, retrying when that is safe.

    Args:
        func: Zero-argument coroutine factory performing the call.
        operation: Name used in logs, e.g. ``upgrade.price``.
        idempotency_key: Key sent with a mutating call. Without one the
            call is attempted exactly once.
        read_only: The call only reads processor state.
        config: Backoff policy.
        breaker: Breaker guarding the processor, if any.

    Raises:
        PaymentProcessorError: The last failure once attempts run out.
    """
    config = config or RetryConfig()

    async def attempt_once() -> T:
        return await (breaker.call(func) if breaker is not None else func())

    if idempotency_key is None and not read_only:
        return await attempt_once()

    def log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "processor_call_retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=config.max_attempts,
            error=str(outcome.exception()) if outcome is not None else None,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential_jitter(
            initial=config.initial_delay, max=config.max_delay, jitter=config.jitter_max
        ),
        retry=retry_if_exception(_should_retry),
        before_sleep=log_retry,
        reraise=True,
    )
    return await retrying(attempt_once)
