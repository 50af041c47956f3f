"""Webhook ingestion and processing.

``WebhookProcessor.ingest`` is the request boundary:

1. look up the source (unknown: 404)
2. verify the signature over the raw body (failure: 401, nothing stored)
3. parse the body into the source's payload model (failure: 400)
4. reserve the idempotency key (pending: 409, terminal: 200 with the
   recorded result)
5. hand the event to the outcome router, inline or as a background task,
   and acknowledge with 200

Signature, payload and idempotency errors are resolved here and never
reach the retry executor.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, Field

from hookrelay.errors import (
    DuplicateInFlightError,
    PayloadValidationError,
    UnknownSourceError,
    VerificationError,
)
from hookrelay.integrations.base import (
    IntegrationRequest,
    IntegrationResponse,
    ResilientIntegration,
)
from hookrelay.outcomes import OutcomeRecord
from hookrelay.pipeline.router import OutcomeRouter
from hookrelay.resilience.retry import RetryAttempt, RetryExecutor
from hookrelay.webhooks.events import InboundEvent, SourceType, build_inbound_event
from hookrelay.webhooks.idempotency import IdempotencyStore, Reservation
from hookrelay.webhooks.security import (
    DEFAULT_MAX_CLOCK_SKEW_SECONDS,
    DEFAULT_SCHEME,
    SCHEMES,
    SignatureScheme,
    verify,
)

logger = structlog.get_logger(__name__)


@dataclass
class SourceConfig:
    """A configured webhook sender.

    Attributes:
        name: Path segment the source posts to.
        source_type: Schema family of its payloads.
        secret: Shared signing secret.
        scheme: Signature header layout.
        max_clock_skew_seconds: Replay window.
    """

    name: str
    source_type: SourceType
    secret: str
    scheme: SignatureScheme = DEFAULT_SCHEME
    max_clock_skew_seconds: int = DEFAULT_MAX_CLOCK_SKEW_SECONDS

    @classmethod
    def from_dict(
        cls,
        name: str,
        data: Mapping[str, Any],
        *,
        max_clock_skew_seconds: int = DEFAULT_MAX_CLOCK_SKEW_SECONDS,
    ) -> "SourceConfig":
        """Build from a ``WEBHOOK_SOURCES`` entry.

        Raises:
            ValueError: If the type or scheme is unknown or the secret is missing.
        """
        if not data.get("secret"):
            raise ValueError(f"Webhook source {name} has no secret")
        scheme_name = data.get("scheme", "default")
        if scheme_name not in SCHEMES:
            raise ValueError(f"Webhook source {name} uses unknown scheme {scheme_name!r}")
        return cls(
            name=name,
            source_type=SourceType(data.get("type", SourceType.GENERIC.value)),
            secret=str(data["secret"]),
            scheme=SCHEMES[scheme_name],
            max_clock_skew_seconds=int(
                data.get("max_clock_skew_seconds", max_clock_skew_seconds)
            ),
        )


class IngestResult(BaseModel):
    """HTTP response for one delivery."""

    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ActionContext:
    """What a handler gets besides the event.

    ``call`` and ``run`` go through the shared retry executor and record
    every attempt in ``attempts``.
    """

    event: InboundEvent
    executor: RetryExecutor
    integrations: Mapping[str, ResilientIntegration] = field(default_factory=dict)
    attempts: list[RetryAttempt] = field(default_factory=list)

    @property
    def operation_id(self) -> str:
        return self.event.operation_id

    async def call(
        self,
        integration_name: str,
        request: IntegrationRequest,
    ) -> IntegrationResponse:
        """Call a named downstream integration with retries and rate limiting.

        Raises:
            KeyError: If no integration has that name.
        """
        integration = self.integrations.get(integration_name)
        if integration is None:
            raise KeyError(f"No integration named {integration_name!r}")
        if request.idempotency_key is None:
            request = request.model_copy(update={"idempotency_key": self.operation_id})
        return await integration.call(request, attempts=self.attempts)

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        bucket: str | None = None,
        name: str = "action",
    ) -> Any:
        """Run an arbitrary coroutine factory under the retry executor."""
        return await self.executor.execute(
            operation,
            bucket=bucket,
            attempts=self.attempts,
            operation_name=name,
        )


# Business action for one event; its return value becomes the outcome's result
ActionHandler = Callable[[InboundEvent, ActionContext], Awaitable[dict[str, Any] | None]]


async def acknowledge_only(event: InboundEvent, context: ActionContext) -> dict[str, Any]:
    """Handler for sources without business logic."""
    return {"event_id": event.id, "source_type": event.source_type.value}


class WebhookProcessor:
    """Turns raw webhook requests into routed operations.

    Example:
        processor = WebhookProcessor(
            sources={"github": SourceConfig("github", SourceType.REPOSITORY_PUSH, secret)},
            handlers={"github": handle_push},
            idempotency=idempotency,
            router=router,
            executor=executor,
        )
        result = await processor.ingest("github", raw_body, headers)
    """

    def __init__(
        self,
        *,
        sources: Mapping[str, SourceConfig],
        idempotency: IdempotencyStore,
        router: OutcomeRouter,
        executor: RetryExecutor,
        handlers: Mapping[str, ActionHandler] | None = None,
        integrations: Mapping[str, ResilientIntegration] | None = None,
        process_inline: bool = False,
    ) -> None:
        """Initialize the processor.

        Args:
            sources: Configured sources by name.
            idempotency: Idempotency store.
            router: Outcome router.
            executor: Shared retry executor.
            handlers: Business actions keyed by source name or source type.
            integrations: Downstream integrations handlers may call.
            process_inline: Process before responding instead of in the
                background.
        """
        self.sources = dict(sources)
        self.idempotency = idempotency
        self.router = router
        self.executor = executor
        self.handlers = dict(handlers or {})
        self.integrations = dict(integrations or {})
        self.process_inline = process_inline
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger.bind(component="webhook_processor")

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def handler_for(self, source: SourceConfig) -> ActionHandler:
        """Handler registered for a source name, then for its type."""
        return (
            self.handlers.get(source.name)
            or self.handlers.get(source.source_type.value)
            or acknowledge_only
        )

    async def ingest(
        self,
        source_name: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> IngestResult:
        """Handle one inbound delivery.

        Args:
            source_name: Source the request was posted to.
            raw_body: Request body exactly as received.
            headers: Request headers.

        Returns:
            Status code and body to respond with.
        """
        try:
            source = self._source(source_name)
            event = self._admit(source, raw_body, headers)
            reservation = await self._reserve(event)
        except UnknownSourceError as e:
            return IngestResult(status_code=404, body={"status": "unknown_source", **e.details})
        except VerificationError as e:
            return IngestResult(status_code=401, body={"status": "rejected", "reason": e.reason})
        except PayloadValidationError as e:
            return IngestResult(
                status_code=400,
                body={"status": "invalid_payload", "error": e.message, **e.details},
            )
        except DuplicateInFlightError as e:
            return IngestResult(
                status_code=409,
                body={"status": "in_progress", "idempotency_key": e.key, **e.details},
            )

        if reservation.completed:
            previous = reservation.record
            # Finishes routing left incomplete by a crash after completion
            resume = self.router.resume(event.operation_id, previous)
            if self.process_inline:
                await resume
            else:
                self._schedule(resume)
            return IngestResult(
                status_code=200,
                body={
                    "status": "duplicate",
                    "operation_id": event.operation_id,
                    "idempotency_key": previous.key,
                    "outcome": previous.outcome.value,
                    "result": previous.result,
                },
            )

        if self.process_inline:
            record = await self.process(event)
            return IngestResult(
                status_code=200,
                body={
                    "status": "processed",
                    "operation_id": event.operation_id,
                    "event_id": event.id,
                    "outcome": record.status.value,
                },
            )

        self._schedule(self.process(event))
        return IngestResult(
            status_code=200,
            body={
                "status": "accepted",
                "operation_id": event.operation_id,
                "event_id": event.id,
            },
        )

    async def process(self, event: InboundEvent) -> OutcomeRecord:
        """Run the business action for an admitted event."""
        source = self.sources[event.source_name]
        handler = self.handler_for(source)
        context = ActionContext(
            event=event,
            executor=self.executor,
            integrations=self.integrations,
        )

        context_detail: dict[str, Any] = {
            "source_name": event.source_name,
            "source_type": event.source_type.value,
            "event_id": event.id,
            "delivery_id": event.delivery_id,
        }

        async def action() -> dict[str, Any] | None:
            try:
                return await handler(event, context)
            finally:
                context_detail["attempts"] = len(context.attempts)
                context_detail["retry_attempts"] = [a.to_dict() for a in context.attempts]

        return await self.router.run(
            event.operation_id,
            action,
            idempotency_key=event.idempotency_key,
            context=context_detail,
        )

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Wait for background processing to finish, cancelling stragglers."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        self._logger.info("processor_draining", tasks=len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self._logger.warning("processor_tasks_cancelled", tasks=len(pending))

    # =========================================================================
    # Ingestion steps
    # =========================================================================

    def _source(self, source_name: str) -> SourceConfig:
        source = self.sources.get(source_name)
        if source is None:
            self._logger.warning("webhook_unknown_source", source_name=source_name)
            raise UnknownSourceError(source_name)
        return source

    def _admit(
        self,
        source: SourceConfig,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> InboundEvent:
        result = verify(
            raw_body,
            headers,
            source.secret,
            source.max_clock_skew_seconds,
            scheme=source.scheme,
        )
        if not result.valid:
            self._logger.warning(
                "webhook_rejected",
                source_name=source.name,
                reason=result.reason,
            )
            raise VerificationError(result.reason or "invalid", source_name=source.name)

        return build_inbound_event(source.name, source.source_type, raw_body, dict(headers))

    async def _reserve(self, event: InboundEvent) -> Reservation:
        reservation = await self.idempotency.reserve(event.idempotency_key)
        if reservation.in_flight:
            raise DuplicateInFlightError(event.idempotency_key)
        if reservation.is_new:
            self._logger.info(
                "webhook_accepted",
                source_name=event.source_name,
                event_id=event.id,
                operation_id=event.operation_id,
                reclaimed=reservation.reclaimed,
            )
        return reservation

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error(
                "background_processing_failed",
                error_type=type(error).__name__,
                error=str(error),
            )


