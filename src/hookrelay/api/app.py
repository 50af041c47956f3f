"""Application assembly.

``build_pipeline`` is the one place where collaborators are constructed:
a single rate limiter, a single retry executor, the three stores and the
notification dispatcher are created here and handed to the components
that use them. Nothing downstream reads ambient globals.
"""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from hookrelay.config import Settings
from hookrelay.errors import HookRelayError
from hookrelay.integrations.base import IntegrationAdapter, ResilientIntegration
from hookrelay.logging import configure_logging
from hookrelay.notifications.channels import (
    EmailChannel,
    NotificationChannel,
    PagerDutyChannel,
    SlackChannel,
)
from hookrelay.notifications.dispatcher import NotificationDispatcher
from hookrelay.outcomes import OutcomeStore
from hookrelay.pipeline.processor import ActionHandler, SourceConfig, WebhookProcessor
from hookrelay.pipeline.router import OutcomeRouter
from hookrelay.resilience.rate_limiter import BucketConfig, RateLimiter
from hookrelay.resilience.retry import RetryExecutor, RetryPolicy
from hookrelay.storage import utc_now
from hookrelay.sync.watermark import WatermarkTracker
from hookrelay.webhooks.idempotency import IdempotencyStore

logger = structlog.get_logger(__name__)


@dataclass
class Pipeline:
    """Every long-lived collaborator of a running service."""

    settings: Settings
    rate_limiter: RateLimiter
    executor: RetryExecutor
    idempotency: IdempotencyStore
    watermarks: WatermarkTracker
    outcomes: OutcomeStore
    dispatcher: NotificationDispatcher
    router: OutcomeRouter
    processor: WebhookProcessor
    integrations: dict[str, ResilientIntegration] = field(default_factory=dict)
    redis: Any | None = None

    async def prune_expired(self) -> dict[str, int]:
        """Apply the retention policy to idempotency and outcome rows."""
        cutoff = utc_now() - timedelta(days=self.settings.RETENTION_DAYS)
        return {
            "idempotency_records": await self.idempotency.prune(cutoff),
            "outcome_records": await self.outcomes.prune(cutoff),
        }

    async def aclose(self) -> None:
        """Drain background work and release clients."""
        await self.processor.shutdown()
        for integration in self.integrations.values():
            await integration.adapter.aclose()
        for channel in self.dispatcher.channels:
            await channel.aclose()
        if self.redis is not None:
            await self.redis.aclose()


def build_channels(settings: Settings) -> list[NotificationChannel]:
    """Create the notification channels that are configured."""
    channels: list[NotificationChannel] = []
    if settings.SLACK_WEBHOOK_URL:
        channels.append(SlackChannel(settings.SLACK_WEBHOOK_URL))
    if settings.PAGERDUTY_ROUTING_KEY:
        channels.append(PagerDutyChannel(settings.PAGERDUTY_ROUTING_KEY))
    if settings.SMTP_HOST and settings.SMTP_SENDER and settings.SMTP_RECIPIENTS:
        channels.append(
            EmailChannel(
                host=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                sender=settings.SMTP_SENDER,
                recipients=settings.SMTP_RECIPIENTS,
                username=settings.SMTP_USERNAME,
                password=settings.SMTP_PASSWORD,
            )
        )
    return channels


def build_pipeline(
    settings: Settings | None = None,
    *,
    handlers: dict[str, ActionHandler] | None = None,
    channels: list[NotificationChannel] | None = None,
    integrations: list[IntegrationAdapter] | None = None,
    redis: Any | None = None,
) -> Pipeline:
    """Construct the pipeline from settings.

    Args:
        settings: Settings (read from the environment if not provided).
        handlers: Business actions keyed by source name or source type.
        channels: Notification channels (built from settings if not provided).
        integrations: Downstream adapters; each uses the bucket of the same
            name when one is configured.
        redis: redis.asyncio client for shared buckets (created from
            ``REDIS_URL`` if not provided).

    Returns:
        Assembled pipeline.

    Raises:
        ValueError: If a source or bucket definition is invalid.
    """
    settings = settings or Settings.from_env()

    if redis is None and settings.REDIS_URL:
        redis = Redis.from_url(settings.REDIS_URL)

    rate_limiter = RateLimiter(
        {name: BucketConfig.from_dict(cfg) for name, cfg in settings.RATE_LIMITS.items()},
        max_wait_seconds=settings.RATE_LIMIT_MAX_WAIT_SECONDS,
        redis=redis,
    )
    executor = RetryExecutor(
        RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            deadline_seconds=settings.OPERATION_DEADLINE_SECONDS or None,
        ),
        rate_limiter=rate_limiter,
    )

    idempotency = IdempotencyStore(
        settings.DATABASE_PATH,
        pending_ttl=timedelta(seconds=settings.IDEMPOTENCY_PENDING_TTL_SECONDS)
        if settings.IDEMPOTENCY_PENDING_TTL_SECONDS > 0
        else None,
    )
    watermarks = WatermarkTracker(settings.DATABASE_PATH)
    outcomes = OutcomeStore(settings.DATABASE_PATH)

    dispatcher = NotificationDispatcher(
        channels if channels is not None else build_channels(settings)
    )
    router = OutcomeRouter(outcomes, idempotency, dispatcher)

    resilient = {
        adapter.name: ResilientIntegration(
            adapter,
            executor,
            bucket=adapter.name if adapter.name in rate_limiter else None,
        )
        for adapter in integrations or []
    }

    sources = {
        name: SourceConfig.from_dict(
            name, cfg, max_clock_skew_seconds=settings.SIGNATURE_TOLERANCE_SECONDS
        )
        for name, cfg in settings.WEBHOOK_SOURCES.items()
    }
    processor = WebhookProcessor(
        sources=sources,
        idempotency=idempotency,
        router=router,
        executor=executor,
        handlers=handlers,
        integrations=resilient,
        process_inline=settings.PROCESS_INLINE,
    )

    logger.info(
        "pipeline_built",
        sources=sorted(sources),
        buckets=sorted(settings.RATE_LIMITS),
        channels=[c.name for c in dispatcher.channels],
        integrations=sorted(resilient),
    )

    return Pipeline(
        settings=settings,
        rate_limiter=rate_limiter,
        executor=executor,
        idempotency=idempotency,
        watermarks=watermarks,
        outcomes=outcomes,
        dispatcher=dispatcher,
        router=router,
        processor=processor,
        integrations=resilient,
        redis=redis,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    pipeline: Pipeline = app.state.pipeline
    configure_logging(pipeline.settings.LOG_LEVEL)
    logger.info("application_starting")

    pruned = await pipeline.prune_expired()
    logger.info("retention_applied", **pruned)

    yield

    logger.info("application_shutting_down")
    await pipeline.aclose()


def create_app(
    settings: Settings | None = None,
    *,
    pipeline: Pipeline | None = None,
    handlers: dict[str, ActionHandler] | None = None,
    channels: list[NotificationChannel] | None = None,
    integrations: list[IntegrationAdapter] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings used to build the pipeline.
        pipeline: Prebuilt pipeline (overrides the other arguments).
        handlers: Business actions passed to ``build_pipeline``.
        channels: Notification channels passed to ``build_pipeline``.
        integrations: Downstream adapters passed to ``build_pipeline``.

    Returns:
        Configured FastAPI application.
    """
    pipeline = pipeline or build_pipeline(
        settings,
        handlers=handlers,
        channels=channels,
        integrations=integrations,
    )

    app = FastAPI(
        title="HookRelay",
        version="0.1.0",
        description="Verified, idempotent webhook ingestion with resilient downstream calls.",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    @app.exception_handler(HookRelayError)
    async def hookrelay_error_handler(
        request: Request, exc: HookRelayError  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("request_failed", **exc.to_dict())
        return JSONResponse(status_code=500, content=exc.to_dict())

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application."""
    from hookrelay.api.health import router as health_router
    from hookrelay.api.webhooks import router as webhooks_router

    app.include_router(health_router)
    app.include_router(webhooks_router)


def main() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    uvicorn.run(
        "hookrelay.api.app:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
