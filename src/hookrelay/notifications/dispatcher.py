"""Best-effort delivery of outcome notifications.

Each channel gets a short retry of its own (two attempts with a fixed
delay). Failures are logged and reported, never raised: a notification
that cannot be delivered does not change the operation's outcome.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog
from pydantic import BaseModel, Field

from hookrelay.notifications.channels import NotificationChannel
from hookrelay.notifications.rendering import render_message
from hookrelay.outcomes import OutcomeRecord

logger = structlog.get_logger(__name__)

DEFAULT_ATTEMPTS = 2
DEFAULT_RETRY_DELAY_SECONDS = 0.5

# Called with the channel name after each successful delivery
DeliveredCallback = Callable[[str], Awaitable[Any]]


class NotificationReport(BaseModel):
    """Per-channel result of one ``notify`` call."""

    operation_id: str
    delivered: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)


class NotificationDispatcher:
    """Sends one outcome to every configured channel.

    Example:
        dispatcher = NotificationDispatcher([SlackChannel(url), EmailChannel(...)])
        report = await dispatcher.notify(record)
    """

    def __init__(
        self,
        channels: Sequence[NotificationChannel] | None = None,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            channels: Default channels for ``notify``.
            attempts: Delivery attempts per channel.
            retry_delay_seconds: Fixed delay between attempts.
            sleep: Awaitable sleep used between attempts.
        """
        self.channels = list(channels or [])
        self._attempts = max(1, attempts)
        self._retry_delay = retry_delay_seconds
        self._sleep = sleep
        self._logger = logger.bind(component="notification_dispatcher")

    async def notify(
        self,
        record: OutcomeRecord,
        channels: Sequence[NotificationChannel] | None = None,
        *,
        on_delivered: DeliveredCallback | None = None,
    ) -> NotificationReport:
        """Deliver ``record`` to each channel that has not received it yet.

        Channels already listed in ``record.notified_channels`` or not
        subscribed to the record's status are skipped.

        Args:
            record: Outcome to announce.
            channels: Channels to use instead of the defaults.
            on_delivered: Awaited with the channel name after each delivery.

        Returns:
            Report of delivered, failed and skipped channels.
        """
        targets = list(self.channels if channels is None else channels)
        report = NotificationReport(operation_id=record.operation_id)

        pending: list[NotificationChannel] = []
        for channel in targets:
            if channel.name in record.notified_channels or not channel.accepts(record.status):
                report.skipped.append(channel.name)
            else:
                pending.append(channel)

        results = await asyncio.gather(
            *(self._deliver(channel, record, on_delivered) for channel in pending)
        )
        for channel, error in zip(pending, results, strict=True):
            if error is None:
                report.delivered.append(channel.name)
            else:
                report.failed[channel.name] = error

        self._logger.info(
            "notifications_dispatched",
            operation_id=record.operation_id,
            status=record.status.value,
            delivered=report.delivered,
            failed=sorted(report.failed),
            skipped=report.skipped,
        )
        return report

    async def _deliver(
        self,
        channel: NotificationChannel,
        record: OutcomeRecord,
        on_delivered: DeliveredCallback | None,
    ) -> str | None:
        """Deliver to one channel; returns an error message or None."""
        message = render_message(record, channel.message_format)
        last_error = ""

        for attempt in range(1, self._attempts + 1):
            try:
                await channel.send(message)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                self._logger.warning(
                    "notification_attempt_failed",
                    channel=channel.name,
                    operation_id=record.operation_id,
                    attempt=attempt,
                    error=last_error,
                )
                if attempt < self._attempts:
                    await self._sleep(self._retry_delay)
                continue

            if on_delivered is not None:
                try:
                    await on_delivered(channel.name)
                except Exception as e:
                    self._logger.error(
                        "notification_bookkeeping_failed",
                        channel=channel.name,
                        operation_id=record.operation_id,
                        error=str(e),
                    )
            return None

        self._logger.error(
            "notification_failed",
            channel=channel.name,
            operation_id=record.operation_id,
            attempts=self._attempts,
            error=last_error,
        )
        return last_error
