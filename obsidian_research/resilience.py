"""
Resilience module for Obsidian Research MCP Server.

Retry with exponential backoff, per-resource circuit breakers and a
facade combining both, used around every call into the Local REST API
and the Smart Connections endpoint.
"""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity import RetryError as TenacityRetryError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[Any]]

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

RETRYABLE_MESSAGE_PATTERN = re.compile(
    r"econnreset|enotfound|econnrefused|etimedout|socket hang up|network timeout"
    r"|request timeout|connection reset|temporary failure|service unavailable"
    r"|rate limit|too many requests",
    re.IGNORECASE,
)


# ============== Exceptions ==============

class RetryError(Exception):
    """Raised when an operation failed and no further attempt will be made."""

    def __init__(self, message: str, attempts: int, last_error: BaseException):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerError(Exception):
    """Raised instead of calling a resource whose breaker rejects the call."""

    def __init__(self, message: str, state: CircuitState, name: str | None = None):
        super().__init__(message)
        self.state = state
        self.name = name


def is_retryable_error(error: BaseException) -> bool:
    """Classify transient network and service failures as retryable."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if not isinstance(error, Exception):
        return False
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code in RETRYABLE_STATUS_CODES
    return bool(RETRYABLE_MESSAGE_PATTERN.search(str(error)))


# ============== Retry ==============

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with deterministic exponential backoff. Delays in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


class RetryExecutor:
    """Runs an operation under a RetryPolicy.

    Every terminal failure, whether attempts ran out or the error was not
    retryable, surfaces as RetryError carrying the attempt count and the
    last error (also chained as __cause__).
    """

    def __init__(self, sleep: Sleep = asyncio.sleep):
        self._sleep = sleep

    async def execute(self, operation: Operation[T], policy: RetryPolicy, name: str | None = None) -> T:
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.base_delay,
                exp_base=policy.backoff_factor,
                max=policy.max_delay,
            ),
            # Cancellation and other BaseExceptions never reach the classifier
            retry=retry_if_exception(lambda e: isinstance(e, Exception) and policy.is_retryable(e)),
            sleep=self._sleep,
            before_sleep=self._log_retry(name, policy),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    return await operation()
        except TenacityRetryError as e:
            last_error = e.last_attempt.exception()
            logger.warning(
                "retry_exhausted",
                operation=name,
                attempts=attempts,
                error=str(last_error),
            )
            raise RetryError(
                f"Operation failed after {attempts} attempts: {last_error}",
                attempts,
                last_error,
            ) from last_error
        except Exception as e:
            logger.warning(
                "retry_not_retryable",
                operation=name,
                attempts=attempts,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise RetryError(
                f"Operation failed with non-retryable error: {e}",
                attempts,
                e,
            ) from e

    @staticmethod
    def _log_retry(name: str | None, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "retry_scheduled",
                operation=name,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=policy.delay_for(retry_state.attempt_number),
                error=str(error),
            )

        return before_sleep


# ============== Circuit Breaker ==============

@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for a circuit breaker. Durations in seconds."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    monitoring_window: float = 300.0


class CircuitBreaker:
    """Fail-fast gate for one named resource.

    CLOSED counts failures inside the monitoring window and opens at the
    threshold. OPEN rejects calls until recovery_timeout has passed since
    the last failure, then lets a single probe through as HALF_OPEN. The
    probe's outcome closes or re-opens the breaker.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: float | None = None
        self._window_start: float | None = None
        self._probe_in_flight = False

    async def execute(self, operation: Operation[T]) -> T:
        is_probe = self._admit()
        try:
            result = await operation()
        except Exception as e:
            self._on_failure(e, is_probe)
            raise
        finally:
            if is_probe:
                self._probe_in_flight = False
        self._on_success(is_probe)
        return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failure_count,
            "successes": self.success_count,
            "last_failure_time": self.last_failure_time,
        }

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None
        self._window_start = None
        self._probe_in_flight = False
        logger.info("circuit_reset", breaker=self.name)

    def _admit(self) -> bool:
        """Raise if the call must be rejected; return True when it is the probe."""
        if self.state is CircuitState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed < self.config.recovery_timeout:
                logger.debug("circuit_rejected", breaker=self.name, state=self.state.value)
                raise CircuitBreakerError(
                    f"Circuit breaker '{self.name}' is OPEN", self.state, self.name
                )
            self.state = CircuitState.HALF_OPEN
            logger.info("circuit_half_open", breaker=self.name, since_last_failure=round(elapsed, 3))

        if self.state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                logger.debug("circuit_rejected", breaker=self.name, state=self.state.value)
                raise CircuitBreakerError(
                    f"Circuit breaker '{self.name}' is HALF_OPEN with a probe in flight",
                    self.state,
                    self.name,
                )
            self._probe_in_flight = True
            return True

        return False

    def _on_success(self, is_probe: bool) -> None:
        if is_probe:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self._window_start = None
            logger.info("circuit_closed", breaker=self.name)
            return
        if self.state is CircuitState.CLOSED:
            self.failure_count = 0
            self._window_start = None
        self.success_count += 1

    def _on_failure(self, error: Exception, is_probe: bool) -> None:
        now = self._clock()

        if is_probe:
            self.last_failure_time = now
            self.failure_count += 1
            self.state = CircuitState.OPEN
            logger.warning("circuit_opened", breaker=self.name, reason="probe_failed", error=str(error))
            return

        # Calls admitted before the breaker opened do not move it
        if self.state is not CircuitState.CLOSED:
            logger.debug("circuit_late_failure_ignored", breaker=self.name, state=self.state.value)
            return

        self.last_failure_time = now
        if self._window_start is None or now - self._window_start > self.config.monitoring_window:
            self._window_start = now
            self.failure_count = 0
        self.failure_count += 1

        if self.failure_count >= self.config.failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                "circuit_opened",
                breaker=self.name,
                failures=self.failure_count,
                threshold=self.config.failure_threshold,
                error=str(error),
            )
        else:
            logger.debug("circuit_failure_recorded", breaker=self.name, failures=self.failure_count)


# ============== Facade ==============

class ResilienceFacade:
    """Retry, circuit breaking and fallback for calls into external services.

    Constructed explicitly and handed to consumers; breakers are created
    lazily per resource name and live as long as the facade.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self._clock = clock
        self._executor = RetryExecutor(sleep=sleep)
        self._breakers: dict[str, CircuitBreaker] = {}

    async def with_retry(
        self,
        operation: Operation[T],
        retry_options: dict[str, Any] | None = None,
        name: str | None = None,
    ) -> T:
        policy = replace(self.retry_policy, **(retry_options or {}))
        return await self._executor.execute(operation, policy, name=name)

    def circuit_breaker(self, name: str, breaker_options: dict[str, Any] | None = None) -> CircuitBreaker:
        """Look up the named breaker, creating it on first use. Options apply only on creation."""
        breaker = self._breakers.get(name)
        if breaker is None:
            config = replace(self.breaker_config, **(breaker_options or {}))
            breaker = CircuitBreaker(name, config, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    async def with_circuit_breaker(
        self,
        name: str,
        operation: Operation[T],
        breaker_options: dict[str, Any] | None = None,
    ) -> T:
        return await self.circuit_breaker(name, breaker_options).execute(operation)

    async def with_resilience(
        self,
        name: str,
        operation: Operation[T],
        retry_options: dict[str, Any] | None = None,
        breaker_options: dict[str, Any] | None = None,
    ) -> T:
        """Retry inside a circuit breaker: the breaker sees one outcome per call."""
        return await self.with_circuit_breaker(
            name,
            lambda: self.with_retry(operation, retry_options, name=name),
            breaker_options,
        )

    async def with_fallback(
        self,
        primary: Operation[T],
        fallback: Operation[T],
        name: str | None = None,
    ) -> T:
        try:
            return await primary()
        except Exception as primary_error:
            logger.warning(
                "fallback_used",
                resource=name,
                error_type=type(primary_error).__name__,
                error=str(primary_error),
            )
            try:
                return await fallback()
            except Exception as fallback_error:
                logger.error(
                    "fallback_failed",
                    resource=name,
                    primary_error=str(primary_error),
                    fallback_error=str(fallback_error),
                )
                raise

    def get_circuit_breaker_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    def reset_circuit_breakers(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def reset_circuit_breaker(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True
