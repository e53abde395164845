"""Error classification, retry with exponential backoff, and circuit breaking."""

import asyncio
import enum
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import exc as sa_exc

from transfer_engine.config import settings
from transfer_engine.logger import get_logger
from transfer_engine.utils.exceptions import (
    BusinessRuleError,
    CircuitOpenError,
    MoneyError,
    RecommendationValidationError,
    TransientError,
)

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    BUSINESS_LOGIC = "business_logic"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TransientError,
    TimeoutError,
    ConnectionError,
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.TimeoutError,
    sa_exc.DisconnectionError,
)


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception onto the recovery category that decides its handling."""
    if isinstance(exc, (RecommendationValidationError, MoneyError)):
        return ErrorCategory.VALIDATION
    if isinstance(exc, BusinessRuleError):
        return ErrorCategory.BUSINESS_LOGIC
    if isinstance(exc, sa_exc.IntegrityError):
        return ErrorCategory.PERMANENT
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PERMANENT


class RetryExhaustedError(TransientError):
    """A transient failure persisted through every attempt."""

    def __init__(self, operation: str, attempts: int, last_exception: BaseException):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_exception}")
        self.operation = operation
        self.attempts = attempts
        self.last_exception = last_exception


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with proportional jitter."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retrying after ``attempt`` (1-indexed) failed."""
        delay = min(self.base_delay * (self.backoff_multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


async def retry_async(
    operation: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func`` and retry it while it fails transiently.

    Non-transient errors propagate on the first attempt.

    Raises:
        RetryExhaustedError: the last allowed attempt failed transiently.
    """
    policy = policy or RetryPolicy.from_settings()
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except Exception as exc:
            if classify_error(exc) is not ErrorCategory.TRANSIENT:
                raise
            if attempt >= policy.max_attempts:
                logger.warning(
                    "Retry exhausted",
                    operation=operation,
                    attempts=attempt,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise RetryExhaustedError(operation, attempt, exc) from exc
            delay = policy.delay_for(attempt)
            logger.info(
                "Retrying after transient failure",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error_type=type(exc).__name__,
            )
            await sleep(delay)
    raise AssertionError("unreachable: retry loop always returns or raises")


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling a dependency that keeps failing.

    State transitions:
        CLOSED -> OPEN: ``failure_threshold`` consecutive failures
        OPEN -> HALF_OPEN: ``recovery_timeout`` seconds after the last failure
        HALF_OPEN -> CLOSED: ``success_threshold`` successes
        HALF_OPEN -> OPEN: any failure

    Validation and business-rule errors say nothing about the dependency's
    health and are not counted. Only used from the event loop, so no locking.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    @classmethod
    def from_settings(cls, name: str) -> "CircuitBreaker":
        return cls(
            name,
            failure_threshold=settings.circuit_failure_threshold,
            success_threshold=settings.circuit_success_threshold,
            recovery_timeout=settings.circuit_recovery_timeout_seconds,
        )

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info("Circuit half-open", circuit=self.name)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def allow_request(self) -> None:
        """Raise ``CircuitOpenError`` while the circuit rejects calls."""
        if self.state is CircuitState.OPEN:
            retry_after = max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))
            raise CircuitOpenError(self.name, retry_after)

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failures = 0
                logger.info("Circuit closed", circuit=self.name)
        elif self._state is CircuitState.CLOSED:
            self._failures = 0

    def record_failure(self, exc: BaseException) -> None:
        if classify_error(exc) in (ErrorCategory.VALIDATION, ErrorCategory.BUSINESS_LOGIC):
            return
        self._failures += 1
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit opened",
                circuit=self.name,
                failures=self._failures,
                error_type=type(exc).__name__,
            )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        self.allow_request()
        try:
            result = await func()
        except Exception as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result


async def call_with_recovery(
    operation: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Retry ``func`` inside the breaker; an exhausted retry counts as one failure.

    Raises:
        CircuitOpenError: the breaker is open, ``func`` was not called.
        RetryExhaustedError: the last allowed attempt failed transiently.
    """
    if breaker is None:
        return await retry_async(operation, func, policy, sleep=sleep)
    return await breaker.call(lambda: retry_async(operation, func, policy, sleep=sleep))


# Guards every engine's store calls in the process
store_circuit_breaker = CircuitBreaker.from_settings("recommendation_store")
