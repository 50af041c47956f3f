"""Outcome routing.

Each logical operation is a two-state machine: ``running`` moves to
``success`` or ``error`` and never leaves either.

The router is the single place that turns a finished operation into a
durable ``OutcomeRecord`` and a notification. An operation succeeds only
when the business action and the idempotency ``complete`` both finish
without raising; anything else is an error. Re-running the router for an
operation that already has an outcome never re-executes the action and
only notifies channels that have not been notified yet.
"""

import time
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog

from hookrelay.errors import HookRelayError, RetriesExhausted
from hookrelay.notifications.dispatcher import NotificationDispatcher
from hookrelay.outcomes import OutcomeRecord, OutcomeStatus, OutcomeStore
from hookrelay.sync.incremental import IncrementalSync
from hookrelay.webhooks.idempotency import (
    IdempotencyOutcome,
    IdempotencyRecord,
    IdempotencyStore,
)

logger = structlog.get_logger(__name__)

Action = Callable[[], Awaitable[dict[str, Any] | None]]


class OperationState(str, Enum):
    """Lifecycle of one routed operation."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


def describe_error(error: BaseException) -> dict[str, Any]:
    """Outcome detail fields for a failure."""
    detail: dict[str, Any] = {
        "error_class": type(error).__name__,
        "error": str(error),
    }
    if isinstance(error, HookRelayError):
        detail["recoverable"] = error.recoverable
        if error.details:
            detail["error_details"] = error.details
    if isinstance(error, RetriesExhausted):
        detail["error_type"] = type(error.last_error).__name__
    return detail


class OutcomeRouter:
    """Routes finished operations to the outcome store and notifications.

    Example:
        router = OutcomeRouter(outcomes, idempotency, dispatcher)
        record = await router.run(operation_id, action, idempotency_key=key)
    """

    def __init__(
        self,
        outcomes: OutcomeStore,
        idempotency: IdempotencyStore,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.outcomes = outcomes
        self.idempotency = idempotency
        self.dispatcher = dispatcher
        self._logger = logger.bind(component="outcome_router")

    async def run(
        self,
        operation_id: str,
        action: Action,
        *,
        idempotency_key: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> OutcomeRecord:
        """Run an action and route its outcome.

        Args:
            operation_id: Stable id of the operation.
            action: Coroutine factory for the business action. Its return
                value is stored under ``result`` in the outcome detail.
            idempotency_key: Key to complete once the action finishes.
            context: Extra detail recorded with the outcome.

        Returns:
            The operation's outcome record.
        """
        existing = await self.outcomes.get(operation_id)
        if existing is not None:
            self._logger.info(
                "operation_already_routed",
                operation_id=operation_id,
                status=existing.status.value,
            )
            if idempotency_key is not None:
                await self._complete_quietly(idempotency_key, existing)
            await self._notify(existing)
            return existing

        state = OperationState.RUNNING
        self._logger.info("operation_started", operation_id=operation_id)
        started = time.perf_counter()

        error: Exception | None = None
        result: dict[str, Any] | None = None
        try:
            result = await action()
        except Exception as e:
            error = e
            self._logger.error(
                "operation_failed",
                operation_id=operation_id,
                error_class=type(e).__name__,
                error=str(e),
            )

        # Built after the action so that context it filled in is included
        detail: dict[str, Any] = dict(context or {})
        if idempotency_key is not None:
            detail.setdefault("idempotency_key", idempotency_key)

        if error is not None:
            state = OperationState.ERROR
            detail.update(describe_error(error))
        else:
            if result is not None:
                detail["result"] = result
            if idempotency_key is not None:
                try:
                    await self.idempotency.complete(
                        idempotency_key,
                        IdempotencyOutcome.SUCCEEDED,
                        self._summary(operation_id, OutcomeStatus.SUCCESS, detail),
                    )
                except Exception as e:
                    state = OperationState.ERROR
                    detail.update(describe_error(e))
                    self._logger.error(
                        "operation_completion_failed",
                        operation_id=operation_id,
                        error=str(e),
                    )
                else:
                    state = OperationState.SUCCESS
            else:
                state = OperationState.SUCCESS

        detail["duration_ms"] = int((time.perf_counter() - started) * 1000)
        status = OutcomeStatus.SUCCESS if state is OperationState.SUCCESS else OutcomeStatus.ERROR

        if status is OutcomeStatus.ERROR and idempotency_key is not None:
            try:
                await self.idempotency.complete(
                    idempotency_key,
                    IdempotencyOutcome.FAILED,
                    self._summary(operation_id, status, detail),
                )
            except Exception as e:
                self._logger.error(
                    "idempotency_fail_mark_failed",
                    operation_id=operation_id,
                    idempotency_key=idempotency_key,
                    error=str(e),
                )

        record, created = await self.outcomes.record(operation_id, status, detail)
        self._logger.info(
            "operation_finished",
            operation_id=operation_id,
            status=record.status.value,
            duration_ms=detail["duration_ms"],
        )
        # Only the caller that stored the outcome announces it
        if created:
            await self._notify(record)
        return record

    async def resume(self, operation_id: str, completed: IdempotencyRecord) -> OutcomeRecord | None:
        """Finish routing for an operation whose idempotency key is terminal.

        Covers a crash after ``complete`` but before the outcome was stored,
        and channels that missed the first announcement. The action is never
        re-run; channels already in ``notified_channels`` are skipped.

        Args:
            operation_id: Operation id of the key.
            completed: Terminal idempotency record.

        Returns:
            The outcome record, or None if the key is not terminal.
        """
        if not completed.is_terminal:
            return None
        existing = await self.outcomes.get(operation_id)
        if existing is not None:
            await self._notify(existing)
            return await self.outcomes.get(operation_id) or existing

        summary = completed.result or {}
        status = (
            OutcomeStatus.SUCCESS
            if completed.outcome is IdempotencyOutcome.SUCCEEDED
            else OutcomeStatus.ERROR
        )
        detail = dict(summary.get("detail") or {})
        detail.setdefault("idempotency_key", completed.key)
        record, created = await self.outcomes.record(operation_id, status, detail)
        if created:
            self._logger.warning("operation_outcome_recovered", operation_id=operation_id)
            await self._notify(record)
        return record

    async def run_sync(
        self,
        sync: IncrementalSync,
        *,
        operation_id: str | None = None,
    ) -> OutcomeRecord:
        """Run an incremental sync and route its outcome like an event."""
        operation_id = operation_id or f"sync_{sync.source_name}_{uuid.uuid4().hex[:12]}"

        async def action() -> dict[str, Any]:
            result = await sync.run()
            return {**result.to_detail(), "attempts": len(sync.attempts)}

        return await self.run(
            operation_id,
            action,
            context={"source_name": sync.source_name, "kind": "sync"},
        )

    async def _notify(self, record: OutcomeRecord) -> None:
        async def mark(channel: str) -> None:
            await self.outcomes.mark_notified(record.operation_id, channel)

        await self.dispatcher.notify(record, on_delivered=mark)

    async def _complete_quietly(self, key: str, record: OutcomeRecord) -> None:
        outcome = (
            IdempotencyOutcome.SUCCEEDED
            if record.status is OutcomeStatus.SUCCESS
            else IdempotencyOutcome.FAILED
        )
        try:
            await self.idempotency.complete(
                key, outcome, self._summary(record.operation_id, record.status, record.detail)
            )
        except Exception as e:
            self._logger.error(
                "idempotency_resync_failed",
                operation_id=record.operation_id,
                idempotency_key=key,
                error=str(e),
            )

    @staticmethod
    def _summary(
        operation_id: str,
        status: OutcomeStatus,
        detail: dict[str, Any],
    ) -> dict[str, Any]:
        """Result replayed to duplicate deliveries."""
        return {"operation_id": operation_id, "status": status.value, "detail": detail}
