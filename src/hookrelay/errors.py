"""Error taxonomy for the integration pipeline.

Exception Hierarchy:
    HookRelayError (base)
    ├── VerificationError - bad signature or stale timestamp
    ├── PayloadValidationError - body does not match its source's schema
    ├── UnknownSourceError - no webhook source with that name
    ├── DuplicateInFlightError - idempotency key already pending
    ├── IdempotencyConflictError - conflicting terminal outcome
    ├── IntegrationError
    │   ├── RetryableIntegrationError - transient downstream failure
    │   └── TerminalIntegrationError - permanent downstream failure
    ├── TerminalError
    │   ├── RetriesExhausted - attempt budget consumed
    │   ├── DeadlineExceeded - wall-clock budget consumed
    │   └── OperationFailedError - handler reported a business failure
    ├── RateLimitExceeded - bounded token wait exceeded
    ├── RateLimitConfigError - request can never be satisfied
    ├── WatermarkRegressionError - cursor would move backwards
    ├── SyncInProgressError - another run holds the source lease
    └── NotificationError - a channel rejected a message

Signature and idempotency errors are handled at the ingestion boundary.
Integration errors are classified once, by the adapter that raised them,
and that classification is what the retry executor acts on.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any


class HookRelayError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        recoverable: Whether retrying could help.
        operation_id: Operation this error belongs to, when known.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.operation_id = operation_id

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "operation_id": self.operation_id,
        }


class VerificationError(HookRelayError):
    """Inbound event failed signature or freshness checks."""

    def __init__(self, reason: str, *, source_name: str | None = None) -> None:
        super().__init__(
            f"Webhook verification failed: {reason}",
            details={"reason": reason, "source_name": source_name},
        )
        self.reason = reason
        self.source_name = source_name


class PayloadValidationError(HookRelayError):
    """Inbound body could not be parsed into its source's payload model."""


class UnknownSourceError(HookRelayError):
    """No webhook source is configured under the requested name."""

    def __init__(self, source_name: str) -> None:
        super().__init__(
            f"Unknown webhook source: {source_name}",
            details={"source_name": source_name},
        )
        self.source_name = source_name


class DuplicateInFlightError(HookRelayError):
    """An event with the same idempotency key is still being processed."""

    def __init__(self, key: str) -> None:
        super().__init__(
            f"Event {key} is already in progress",
            details={"idempotency_key": key},
            recoverable=True,
        )
        self.key = key


class IdempotencyConflictError(HookRelayError):
    """A terminal outcome was already recorded with a different value."""

    def __init__(self, key: str, recorded: str, attempted: str) -> None:
        super().__init__(
            f"Idempotency key {key} already completed as {recorded}, "
            f"refusing to overwrite with {attempted}",
            details={"idempotency_key": key, "recorded": recorded, "attempted": attempted},
        )
        self.key = key
        self.recorded = recorded
        self.attempted = attempted


class IntegrationError(HookRelayError):
    """Downstream call failed.

    Attributes:
        integration: Name of the downstream integration.
        status_code: HTTP status, when the failure came from a response.
    """

    def __init__(
        self,
        message: str,
        *,
        integration: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message, details=details, recoverable=recoverable)
        self.integration = integration
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update({"integration": self.integration, "status_code": self.status_code})
        return base


class RetryableIntegrationError(IntegrationError):
    """Transient downstream failure; may carry a retry-after hint."""

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        integration: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            integration=integration,
            status_code=status_code,
            details=details,
            recoverable=True,
        )
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["retry_after_seconds"] = self.retry_after_seconds
        return base


class TerminalIntegrationError(IntegrationError):
    """Permanent downstream failure (bad request, auth, not found)."""


class TerminalError(HookRelayError):
    """An operation stopped for good; no further attempts will be made."""


class RetriesExhausted(TerminalError):
    """Every allowed attempt failed.

    Attributes:
        last_error: The failure from the final attempt.
        attempts: Number of attempts made.
    """

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(
            f"Retries exhausted after {attempts} attempts: {last_error}",
            details={
                "attempts": attempts,
                "last_error_type": type(last_error).__name__,
                "last_error": str(last_error),
            },
        )
        self.last_error = last_error
        self.attempts = attempts


class DeadlineExceeded(TerminalError):
    """The operation's wall-clock deadline passed before it succeeded."""

    def __init__(
        self,
        deadline_seconds: float,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(
            f"Deadline of {deadline_seconds}s exceeded after {attempts} attempts",
            details={
                "deadline_seconds": deadline_seconds,
                "attempts": attempts,
                "last_error": str(last_error) if last_error else None,
            },
        )
        self.deadline_seconds = deadline_seconds
        self.attempts = attempts
        self.last_error = last_error


class OperationFailedError(TerminalError):
    """A handler explicitly reported that the business action failed."""


class RateLimitExceeded(HookRelayError):
    """Tokens did not become available within the allowed wait."""

    def __init__(self, bucket: str, tokens: float, retry_after: float) -> None:
        super().__init__(
            f"Rate limit exceeded for bucket {bucket}: "
            f"{tokens} tokens not available, retry after {retry_after:.1f}s",
            details={"bucket": bucket, "tokens": tokens, "retry_after": retry_after},
            recoverable=True,
        )
        self.bucket = bucket
        self.tokens = tokens
        self.retry_after = retry_after


class RateLimitConfigError(HookRelayError, ValueError):
    """A request asked for more tokens than the bucket can ever hold."""


class WatermarkRegressionError(HookRelayError):
    """A timestamp cursor would move backwards."""


class SyncInProgressError(HookRelayError):
    """Another sync run currently holds the lease for this source."""

    def __init__(self, source_name: str, holder: str | None = None) -> None:
        super().__init__(
            f"Sync for {source_name} is already running",
            details={"source_name": source_name, "holder": holder},
            recoverable=True,
        )
        self.source_name = source_name
        self.holder = holder


class NotificationError(HookRelayError):
    """A notification channel failed to deliver a message."""

    def __init__(self, message: str, *, channel: str) -> None:
        super().__init__(message, details={"channel": channel}, recoverable=True)
        self.channel = channel


# ============================================================================
# Classification
# ============================================================================


class ErrorClass(str, Enum):
    """How the retry executor should react to a failure."""

    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class ErrorClassification:
    """Classification of one failure.

    Attributes:
        error_class: Retry decision.
        retry_after_seconds: Explicit wait hint for rate-limited failures.
    """

    error_class: ErrorClass
    retry_after_seconds: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.error_class is ErrorClass.TERMINAL


TERMINAL = ErrorClassification(ErrorClass.TERMINAL)
RETRYABLE = ErrorClassification(ErrorClass.RETRYABLE)


def classify_error(error: BaseException) -> ErrorClassification:
    """Default classifier: trust the adapter's error type.

    Args:
        error: The error to classify.

    Returns:
        Classification for the retry executor.
    """
    if isinstance(error, RetryableIntegrationError):
        if error.retry_after_seconds is not None:
            return ErrorClassification(ErrorClass.RATE_LIMITED, error.retry_after_seconds)
        return RETRYABLE

    if isinstance(error, HookRelayError):
        return RETRYABLE if error.recoverable and not isinstance(error, TerminalError) else TERMINAL

    # Bare transport-level failures from adapters that did not wrap them
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return RETRYABLE

    return TERMINAL
