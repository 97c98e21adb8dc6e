"""Retry with exponential backoff plus per-key circuit breakers.

Every call to a fallible collaborator (the mail source, the LLM advisor) goes
through RetryExecutor.execute(). Each attempt passes through the circuit
breaker for the call's key, so once a resource is known to be down further
attempts fail fast with CircuitOpenError instead of waiting on the network.

Usage:
    from followup.core.resilience import RetryExecutor, RetryPolicy

    executor = RetryExecutor(RetryPolicy.from_config(config.retry), config.circuit_breaker)
    messages = await executor.execute(
        lambda: source.fetch_conversation(conversation_id),
        breaker_key="mail-source",
    )
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from followup.config_schema import CircuitBreakerConfig, RetryConfig
from followup.core.errors import (
    CircuitOpenError,
    PermanentError,
    ThreadOrderError,
    TransientResourceError,
)
from followup.core.logging import get_logger

logger = get_logger(__name__)

# Message fragments used to classify errors without an explicit kind
RETRYABLE_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "socket",
    "econnreset",
    "enotfound",
    "rate limit",
    "429",
    "quota exceeded",
    "too many requests",
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)
NON_RETRYABLE_MARKERS = (
    "400",
    "401",
    "403",
    "404",
    "bad request",
    "unauthorized",
    "forbidden",
    "not found",
)


def classify_by_message(error: BaseException) -> bool:
    """Decide retryability from an error's message text.

    Retryable markers win over non-retryable ones ("404" never appears in a
    rate-limit message, but "timeout" may appear next to a status code).
    Unknown errors default to retryable.
    """
    text = str(error).lower()
    if any(marker in text for marker in RETRYABLE_MARKERS):
        return True
    if any(marker in text for marker in NON_RETRYABLE_MARKERS):
        return False
    return True


def is_retryable_error(
    error: BaseException,
    classifier: Callable[[BaseException], bool] = classify_by_message,
) -> bool:
    """Decide whether an error should be retried.

    Explicit error kinds are always honored; everything else is passed to the
    classifier.

    Args:
        error: The exception raised by an attempt
        classifier: Fallback classifier for errors without an explicit kind

    Returns:
        True if the operation may be attempted again
    """
    if isinstance(error, CircuitOpenError | PermanentError | ThreadOrderError):
        return False
    if isinstance(error, TransientResourceError | TimeoutError | ConnectionError):
        return True
    return classifier(error)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How often and how patiently to retry an operation.

    Attributes:
        max_attempts: Attempts including the first
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound on the exponential delay (seconds)
        backoff_factor: Multiplier applied per attempt
        jitter: Maximum random extra delay added per retry (seconds)
        classifier: Decides retryability for errors without an explicit kind
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: float = 0.1
    classifier: Callable[[BaseException], bool] = classify_by_message

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("Retry delays and jitter must not be negative")

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            backoff_factor=config.backoff_factor,
            jitter=config.jitter_seconds,
        )

    def backoff_delay(self, attempt: int, random_fraction: float = 0.0) -> float:
        """Delay to wait after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed
            random_fraction: Value in [0, 1) scaling the jitter

        Returns:
            min(base * factor^(attempt-1), max) + jitter share, in seconds
        """
        exponential = self.base_delay * self.backoff_factor ** (attempt - 1)
        return min(exponential, self.max_delay) + random_fraction * self.jitter


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitBreakerSnapshot:
    """Point-in-time view of one breaker."""

    key: str
    state: CircuitState
    failure_count: int
    next_attempt_at: float | None
    half_open_attempts: int
    total_trips: int


class CircuitBreaker:
    """Per-resource circuit breaker.

    CLOSED: calls pass; consecutive failures are counted and the circuit
    opens when they reach failure_threshold (or immediately for an error
    flagged should_circuit_break).
    OPEN: calls are rejected with CircuitOpenError until recovery_timeout
    has elapsed, then the breaker moves to HALF_OPEN.
    HALF_OPEN: up to half_open_max_attempts trial calls are admitted; any
    failure reopens the circuit and a success closes it.
    """

    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt_at: float | None = None
        self._half_open_attempts = 0
        self._total_trips = 0

    @classmethod
    def from_config(
        cls,
        key: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> CircuitBreaker:
        return cls(
            key,
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout_seconds,
            half_open_max_attempts=config.half_open_max_attempts,
            clock=clock,
        )

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the timeout has elapsed."""
        if (
            self._state is CircuitState.OPEN
            and self._next_attempt_at is not None
            and self._clock() >= self._next_attempt_at
        ):
            self._state = CircuitState.HALF_OPEN
            self._half_open_attempts = 0
            logger.info("circuit_half_open", key=self.key)
        return self._state

    def snapshot(self) -> CircuitBreakerSnapshot:
        return CircuitBreakerSnapshot(
            key=self.key,
            state=self.state,
            failure_count=self._failure_count,
            next_attempt_at=self._next_attempt_at,
            half_open_attempts=self._half_open_attempts,
            total_trips=self._total_trips,
        )

    def before_call(self) -> None:
        """Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with all
                trial slots used
        """
        state = self.state
        if state is CircuitState.OPEN:
            raise CircuitOpenError(self.key, self._next_attempt_at)
        if state is CircuitState.HALF_OPEN:
            if self._half_open_attempts >= self.half_open_max_attempts:
                raise CircuitOpenError(self.key, self._next_attempt_at)
            self._half_open_attempts += 1

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("circuit_closed", key=self.key)
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_attempts = 0
        self._next_attempt_at = None

    def record_failure(self, error: BaseException) -> None:
        self._failure_count += 1
        force_open = isinstance(error, TransientResourceError) and error.should_circuit_break

        if (
            self._state is CircuitState.HALF_OPEN
            or force_open
            or self._failure_count >= self.failure_threshold
        ):
            self._open(error)

    def reset(self) -> None:
        """Return to CLOSED and clear all counters."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_attempts = 0
        self._next_attempt_at = None

    async def call(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run one attempt through the breaker.

        Raises:
            CircuitOpenError: If the call is rejected
            Exception: Whatever the operation raises (after recording it)
        """
        self.before_call()
        try:
            result = await operation()
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def _open(self, error: BaseException) -> None:
        was_open = self._state is CircuitState.OPEN
        self._state = CircuitState.OPEN
        self._next_attempt_at = self._clock() + self.recovery_timeout
        self._half_open_attempts = 0
        if not was_open:
            self._total_trips += 1
        logger.warning(
            "circuit_opened",
            key=self.key,
            failure_count=self._failure_count,
            recovery_timeout=self.recovery_timeout,
            error=str(error),
        )


# ---------------------------------------------------------------------------
# Retry executor
# ---------------------------------------------------------------------------

RetryObserver = Callable[[int, BaseException, float], None]


@dataclass(slots=True)
class RetryStats:
    """Cumulative retry counters for one executor.

    Attributes:
        total_operations: Calls to execute()
        total_retries: Retries scheduled (attempts after the first)
        successful_retries: Operations that succeeded after at least one retry
        failed_operations: Operations that raised after all handling
        total_retry_delay: Sum of scheduled retry delays (seconds)
        circuit_breaker_trips: Times any breaker opened from a closed state
    """

    total_operations: int = 0
    total_retries: int = 0
    successful_retries: int = 0
    failed_operations: int = 0
    total_retry_delay: float = 0.0
    circuit_breaker_trips: int = 0

    @property
    def average_retry_delay(self) -> float:
        return self.total_retry_delay / self.total_retries if self.total_retries else 0.0


@dataclass(slots=True)
class _Attempt:
    number: int = 0
    delays: list[float] = field(default_factory=list)


class RetryExecutor:
    """Runs async operations with retry, backoff and per-key circuit breaking."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the executor.

        Args:
            policy: Default retry policy
            breaker_config: Defaults for breakers created on first use
            clock: Monotonic clock shared with the breakers
            sleep: Awaitable sleep used for backoff; injectable for tests
            rng: Source of jitter fractions in [0, 1)
        """
        self._policy = policy or RetryPolicy()
        self._breaker_config = breaker_config or CircuitBreakerConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._breakers: dict[str, CircuitBreaker] = {}
        self._explicit_breakers: set[str] = set()
        self._stats = RetryStats()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def reconfigure(
        self,
        policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
    ) -> None:
        """Replace the default policy and breaker settings at runtime.

        Breakers keep their state and counters. Those created with default
        settings take the new thresholds; those from create_breaker() keep
        their explicit settings.
        """
        if policy is not None:
            self._policy = policy
        if breaker_config is not None:
            self._breaker_config = breaker_config
            for key, breaker in self._breakers.items():
                if key in self._explicit_breakers:
                    continue
                breaker.failure_threshold = breaker_config.failure_threshold
                breaker.recovery_timeout = breaker_config.recovery_timeout_seconds
                breaker.half_open_max_attempts = breaker_config.half_open_max_attempts
        logger.info(
            "retry_reconfigured",
            policy_changed=policy is not None,
            breakers_changed=breaker_config is not None,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        policy: RetryPolicy | None = None,
        breaker_key: str | None = None,
        on_retry: RetryObserver | None = None,
    ) -> Any:
        """Run an operation until it succeeds, fails permanently, or attempts run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            policy: Overrides the executor's default policy for this call
            breaker_key: Circuit breaker that guards every attempt, if any
            on_retry: Called with (attempt, error, delay) before each backoff sleep

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the breaker rejects an attempt
            Exception: The last error, when it is not retryable or attempts are exhausted
        """
        policy = policy or self._policy
        breaker = self.get_breaker(breaker_key) if breaker_key else None
        attempt = _Attempt()
        self._stats.total_operations += 1

        while True:
            attempt.number += 1
            try:
                if breaker is not None:
                    trips_before = breaker.snapshot().total_trips
                    try:
                        result = await breaker.call(operation)
                    finally:
                        self._stats.circuit_breaker_trips += (
                            breaker.snapshot().total_trips - trips_before
                        )
                else:
                    result = await operation()
            except Exception as e:
                retryable = is_retryable_error(e, policy.classifier)
                if not retryable or attempt.number >= policy.max_attempts:
                    self._stats.failed_operations += 1
                    if attempt.delays:
                        logger.warning(
                            "retry_exhausted",
                            breaker_key=breaker_key,
                            attempts=attempt.number,
                            retryable=retryable,
                            error=str(e),
                        )
                    raise

                delay = policy.backoff_delay(attempt.number, self._rng())
                attempt.delays.append(delay)
                self._stats.total_retries += 1
                self._stats.total_retry_delay += delay
                logger.info(
                    "retry_scheduled",
                    breaker_key=breaker_key,
                    attempt=attempt.number,
                    delay_seconds=round(delay, 3),
                    error=str(e),
                )
                if on_retry is not None:
                    on_retry(attempt.number, e, delay)
                await self._sleep(delay)
                continue

            if attempt.delays:
                self._stats.successful_retries += 1
            return result

    # -----------------------------------------------------------------
    # Breaker registry
    # -----------------------------------------------------------------

    def create_breaker(
        self,
        key: str,
        failure_threshold: int | None = None,
        recovery_timeout: float | None = None,
        half_open_max_attempts: int | None = None,
    ) -> CircuitBreaker:
        """Create (or replace) the breaker for a key with explicit settings."""
        defaults = self._breaker_config
        breaker = CircuitBreaker(
            key,
            failure_threshold=failure_threshold or defaults.failure_threshold,
            recovery_timeout=recovery_timeout or defaults.recovery_timeout_seconds,
            half_open_max_attempts=half_open_max_attempts or defaults.half_open_max_attempts,
            clock=self._clock,
        )
        self._breakers[key] = breaker
        self._explicit_breakers.add(key)
        return breaker

    def get_breaker(self, key: str) -> CircuitBreaker:
        """Breaker for a key, created with the default settings on first use."""
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker.from_config(key, self._breaker_config, clock=self._clock)
            self._breakers[key] = breaker
        return breaker

    def breaker_states(self) -> dict[str, CircuitBreakerSnapshot]:
        return {key: breaker.snapshot() for key, breaker in self._breakers.items()}

    def reset_breaker(self, key: str) -> bool:
        """Reset one breaker to CLOSED. Returns False if the key is unknown."""
        breaker = self._breakers.get(key)
        if breaker is None:
            return False
        breaker.reset()
        logger.info("circuit_reset", key=key)
        return True

    def reset_all_breakers(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def stats(self) -> RetryStats:
        """Copy of the cumulative counters."""
        s = self._stats
        return RetryStats(
            total_operations=s.total_operations,
            total_retries=s.total_retries,
            successful_retries=s.successful_retries,
            failed_operations=s.failed_operations,
            total_retry_delay=s.total_retry_delay,
            circuit_breaker_trips=s.circuit_breaker_trips,
        )

    def reset_stats(self) -> None:
        self._stats = RetryStats()
