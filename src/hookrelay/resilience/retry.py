"""Retry executor with exponential backoff, jitter and deadlines.

Wraps one logical downstream operation:

- terminal failures are raised immediately, without a second attempt
- rate-limited failures wait exactly the hinted ``retry after`` (capped at
  the maximum delay) and do not grow the backoff exponent
- other transient failures wait
  ``min(max_delay, base_delay * 2**n) + uniform(0, base_delay)``
- after ``max_attempts`` attempts ``RetriesExhausted`` is raised
- when a deadline is set, an attempt or wait that would cross it raises
  ``DeadlineExceeded`` instead

Every attempt is recorded as a ``RetryAttempt``. Waits are ``asyncio``
sleeps, so only the calling task is suspended.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception

from hookrelay.errors import (
    DeadlineExceeded,
    ErrorClass,
    ErrorClassification,
    RateLimitExceeded,
    RetriesExhausted,
    classify_error,
)
from hookrelay.resilience.rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], ErrorClassification]


class AttemptOutcome(str, Enum):
    """Result class of one attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for an operation.

    Attributes:
        max_attempts: Maximum number of attempts (including initial).
        base_delay_ms: Backoff base and jitter ceiling.
        max_delay_ms: Backoff ceiling; also caps retry-after hints.
        deadline_seconds: Optional wall-clock budget for all attempts.
    """

    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    deadline_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must not be negative")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class RetryAttempt:
    """Record of one attempt within a logical operation.

    Attributes:
        attempt_number: Zero-based, strictly increasing per operation.
        scheduled_at: When the attempt was due to start.
        executed_at: When it actually started (None if it never ran).
        outcome_class: Success, retryable or terminal failure.
        backoff_ms: Delay that preceded this attempt (0 for the first).
        rate_limited: The preceding delay came from a retry-after hint.
        error: Error message for failed attempts.
    """

    attempt_number: int
    scheduled_at: datetime
    executed_at: datetime | None = None
    outcome_class: AttemptOutcome | None = None
    backoff_ms: int = 0
    rate_limited: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "attempt_number": self.attempt_number,
            "scheduled_at": self.scheduled_at.isoformat(),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "outcome_class": self.outcome_class.value if self.outcome_class else None,
            "backoff_ms": self.backoff_ms,
            "rate_limited": self.rate_limited,
            "error": self.error,
        }


@dataclass
class _Execution:
    """Mutable bookkeeping for one ``execute`` call."""

    policy: RetryPolicy
    classify: Classifier
    attempts: list[RetryAttempt]
    rng: random.Random
    started: float = field(default_factory=time.monotonic)
    transient_failures: int = 0
    next_backoff_ms: int = 0
    next_rate_limited: bool = False
    next_scheduled_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_classification: ErrorClassification | None = None
    deadline_hit: bool = False

    @property
    def deadline(self) -> float | None:
        if self.policy.deadline_seconds is None:
            return None
        return self.started + self.policy.deadline_seconds

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def backoff_ms(self) -> int:
        """Exponential delay for the current transient failure count."""
        exponent = max(0, self.transient_failures - 1)
        base = self.policy.base_delay_ms
        delay = min(self.policy.max_delay_ms, base * (2**exponent))
        return int(delay + self.rng.uniform(0, base))

    def should_retry(self, error: BaseException) -> bool:
        """Retry predicate; also schedules the next attempt."""
        classification = self.last_classification
        if not isinstance(error, Exception) or classification is None:
            return False
        if classification.is_terminal:
            return False

        if classification.error_class is ErrorClass.RATE_LIMITED:
            hinted = int((classification.retry_after_seconds or 0) * 1000)
            self.next_backoff_ms = min(self.policy.max_delay_ms, max(0, hinted))
            self.next_rate_limited = True
        else:
            self.transient_failures += 1
            self.next_backoff_ms = self.backoff_ms()
            self.next_rate_limited = False

        self.next_scheduled_at = datetime.now(UTC) + timedelta(
            milliseconds=self.next_backoff_ms
        )
        return True

    def should_stop(self, retry_state: RetryCallState) -> bool:
        if retry_state.attempt_number >= self.policy.max_attempts:
            return True
        remaining = self.remaining()
        if remaining is not None and self.next_backoff_ms / 1000 >= remaining:
            self.deadline_hit = True
            return True
        return False

    def wait_seconds(self, retry_state: RetryCallState) -> float:  # noqa: ARG002
        return self.next_backoff_ms / 1000


class RetryExecutor:
    """Runs operations under a retry policy.

    Example:
        executor = RetryExecutor(RetryPolicy(max_attempts=5), rate_limiter=limiter)

        response = await executor.execute(
            lambda: crm.call(request),
            bucket="crm",
        )
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            policy: Default policy for operations.
            rate_limiter: Limiter consulted before each attempt when a
                bucket is named.
            sleep: Awaitable sleep used between attempts.
            rng: Random source for jitter.
        """
        self.policy = policy or DEFAULT_RETRY_POLICY
        self._rate_limiter = rate_limiter
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._logger = logger.bind(component="retry_executor")

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Classifier = classify_error,
        *,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        deadline_seconds: float | None = None,
        bucket: str | None = None,
        attempts: list[RetryAttempt] | None = None,
        operation_name: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds or the budget is spent.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            classify: Maps a failure to retryable, rate-limited or terminal.
            max_attempts: Override of the policy's attempt budget.
            base_delay_ms: Override of the policy's base delay.
            max_delay_ms: Override of the policy's maximum delay.
            deadline_seconds: Override of the policy's deadline.
            bucket: Rate limit bucket to acquire one token from per attempt.
            attempts: List that receives a RetryAttempt per attempt.
            operation_name: Name used in logs.

        Returns:
            The operation's result.

        Raises:
            RetriesExhausted: If every attempt failed with a retryable error.
            DeadlineExceeded: If the deadline passed first.
            Exception: A terminal failure, unchanged, from the first attempt
                that produced one.
        """
        policy = RetryPolicy(
            max_attempts=max_attempts if max_attempts is not None else self.policy.max_attempts,
            base_delay_ms=base_delay_ms if base_delay_ms is not None else self.policy.base_delay_ms,
            max_delay_ms=max_delay_ms if max_delay_ms is not None else self.policy.max_delay_ms,
            deadline_seconds=(
                deadline_seconds if deadline_seconds is not None else self.policy.deadline_seconds
            ),
        )
        state = _Execution(
            policy=policy,
            classify=classify,
            attempts=attempts if attempts is not None else [],
            rng=self._rng,
        )

        retrying = AsyncRetrying(
            stop=state.should_stop,
            wait=state.wait_seconds,
            retry=retry_if_exception(state.should_retry),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._run_attempt(state, operation, bucket, operation_name)
        except DeadlineExceeded:
            raise
        except Exception as e:
            count = len(state.attempts)
            if state.deadline_hit:
                self._logger.warning(
                    "retry_deadline_exceeded",
                    operation=operation_name,
                    attempts=count,
                    deadline_seconds=policy.deadline_seconds,
                )
                raise DeadlineExceeded(
                    policy.deadline_seconds or 0, count, last_error=e
                ) from e
            if state.last_classification is not None and state.last_classification.is_terminal:
                self._logger.warning(
                    "retry_terminal_failure",
                    operation=operation_name,
                    attempts=count,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise
            self._logger.error(
                "retries_exhausted",
                operation=operation_name,
                attempts=count,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise RetriesExhausted(e, count) from e

        # Unreachable: AsyncRetrying either returns through the loop or raises
        raise RuntimeError("Retry loop exited unexpectedly")

    async def _run_attempt(
        self,
        state: _Execution,
        operation: Callable[[], Awaitable[T]],
        bucket: str | None,
        operation_name: str,
    ) -> T:
        record = RetryAttempt(
            attempt_number=len(state.attempts),
            scheduled_at=state.next_scheduled_at,
            backoff_ms=state.next_backoff_ms if state.attempts else 0,
            rate_limited=state.next_rate_limited if state.attempts else False,
        )
        state.attempts.append(record)
        state.last_classification = None

        try:
            remaining = state.remaining()
            if remaining is not None and remaining <= 0:
                raise DeadlineExceeded(
                    state.policy.deadline_seconds or 0, len(state.attempts) - 1
                )

            if bucket is not None and self._rate_limiter is not None:
                try:
                    await self._rate_limiter.acquire(bucket, timeout=remaining)
                except RateLimitExceeded as e:
                    if remaining is not None:
                        raise DeadlineExceeded(
                            state.policy.deadline_seconds or 0,
                            len(state.attempts) - 1,
                            last_error=e,
                        ) from e
                    raise
                remaining = state.remaining()

            record.executed_at = datetime.now(UTC)
            if record.attempt_number > 0:
                self._logger.info(
                    "retry_attempt",
                    operation=operation_name,
                    attempt=record.attempt_number,
                    max_attempts=state.policy.max_attempts,
                    backoff_ms=record.backoff_ms,
                    rate_limited=record.rate_limited,
                )

            if remaining is None:
                result = await operation()
            else:
                try:
                    result = await asyncio.wait_for(operation(), timeout=max(remaining, 0))
                except TimeoutError as e:
                    # Only the deadline turns a timeout into DeadlineExceeded;
                    # a timeout raised by the operation itself stays retryable.
                    if (state.remaining() or 0) > 0:
                        raise
                    raise DeadlineExceeded(
                        state.policy.deadline_seconds or 0, len(state.attempts), last_error=e
                    ) from e

        except DeadlineExceeded as e:
            record.outcome_class = AttemptOutcome.TERMINAL_FAILURE
            record.error = str(e)
            state.last_classification = ErrorClassification(ErrorClass.TERMINAL)
            raise
        except Exception as e:
            classification = state.classify(e)
            state.last_classification = classification
            record.outcome_class = (
                AttemptOutcome.TERMINAL_FAILURE
                if classification.is_terminal
                else AttemptOutcome.RETRYABLE_FAILURE
            )
            record.error = str(e)
            self._logger.warning(
                "attempt_failed",
                operation=operation_name,
                attempt=record.attempt_number,
                error_class=classification.error_class.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        record.outcome_class = AttemptOutcome.SUCCESS
        return result
