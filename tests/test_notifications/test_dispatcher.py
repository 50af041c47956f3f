"""Tests for the notification dispatcher."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from hookrelay.errors import NotificationError
from hookrelay.notifications import (
    ERRORS_ONLY,
    MessageFormat,
    NotificationChannel,
    NotificationDispatcher,
    RenderedMessage,
)
from hookrelay.outcomes import OutcomeRecord, OutcomeStatus

CREATED = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)


class FakeChannel(NotificationChannel):
    """Channel that records messages and can fail a number of times."""

    def __init__(self, name: str, *, failures: int = 0, message_format=MessageFormat.PLAIN, **kwargs):
        super().__init__(name, **kwargs)
        self.message_format = message_format
        self.failures = failures
        self.sent: list[RenderedMessage] = []
        self.calls = 0

    async def send(self, message: RenderedMessage) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise NotificationError(f"{self.name} unavailable", channel=self.name)
        self.sent.append(message)


def make_record(
    status: OutcomeStatus = OutcomeStatus.ERROR,
    *,
    notified: set[str] | None = None,
) -> OutcomeRecord:
    return OutcomeRecord(
        operation_id="op_abc",
        status=status,
        detail={"error_class": "RetriesExhausted"} if status is OutcomeStatus.ERROR else {},
        notified_channels=notified or set(),
        created_at=CREATED,
        updated_at=CREATED,
    )


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


class TestNotificationDispatcher:
    """Tests for NotificationDispatcher.notify."""

    @pytest.mark.asyncio
    async def test_delivers_to_every_channel(self, sleep):
        """Test each channel gets the record in its own format."""
        email = FakeChannel("email")
        slack = FakeChannel("slack", message_format=MessageFormat.MARKUP)
        dispatcher = NotificationDispatcher([email, slack], sleep=sleep)

        report = await dispatcher.notify(make_record())

        assert sorted(report.delivered) == ["email", "slack"]
        assert report.failed == {}
        assert email.sent[0].format is MessageFormat.PLAIN
        assert slack.sent[0].format is MessageFormat.MARKUP
        assert email.sent[0].operation_id == "op_abc"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_already_notified(self, sleep):
        """Test channels in notified_channels are not sent again."""
        email = FakeChannel("email")
        slack = FakeChannel("slack")
        dispatcher = NotificationDispatcher([email, slack], sleep=sleep)

        report = await dispatcher.notify(make_record(notified={"email"}))

        assert report.skipped == ["email"]
        assert report.delivered == ["slack"]
        assert email.calls == 0

    @pytest.mark.asyncio
    async def test_skips_unsubscribed_status(self, sleep):
        """Test error-only channels are not sent successes."""
        pager = FakeChannel("pagerduty", notify_on=ERRORS_ONLY)
        dispatcher = NotificationDispatcher([pager], sleep=sleep)

        report = await dispatcher.notify(make_record(OutcomeStatus.SUCCESS))

        assert report.skipped == ["pagerduty"]
        assert pager.calls == 0

    @pytest.mark.asyncio
    async def test_retries_once_then_delivers(self, sleep):
        """Test a single failure is retried after the fixed delay."""
        slack = FakeChannel("slack", failures=1)
        dispatcher = NotificationDispatcher([slack], retry_delay_seconds=0.25, sleep=sleep)

        report = await dispatcher.notify(make_record())

        assert report.delivered == ["slack"]
        assert slack.calls == 2
        sleep.assert_awaited_once_with(0.25)

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, sleep):
        """Test a channel that keeps failing does not affect the others."""
        broken = FakeChannel("slack", failures=5)
        email = FakeChannel("email")
        dispatcher = NotificationDispatcher([broken, email], sleep=sleep)

        report = await dispatcher.notify(make_record())

        assert report.delivered == ["email"]
        assert report.failed == {"slack": "slack unavailable"}
        assert broken.calls == 2

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, sleep):
        """Test arbitrary channel exceptions are reported as failures."""

        class Exploding(FakeChannel):
            async def send(self, message: RenderedMessage) -> None:
                raise RuntimeError("bug")

        dispatcher = NotificationDispatcher([Exploding("webhook")], attempts=1, sleep=sleep)

        report = await dispatcher.notify(make_record())

        assert report.failed == {"webhook": "bug"}
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_delivered_called_per_success(self, sleep):
        """Test the callback receives each delivered channel name."""
        delivered = AsyncMock()
        dispatcher = NotificationDispatcher(
            [FakeChannel("email"), FakeChannel("slack", failures=5)], sleep=sleep
        )

        await dispatcher.notify(make_record(), on_delivered=delivered)

        delivered.assert_awaited_once_with("email")

    @pytest.mark.asyncio
    async def test_on_delivered_failure_still_counts_delivery(self, sleep):
        """Test bookkeeping errors do not turn a delivery into a failure."""
        dispatcher = NotificationDispatcher([FakeChannel("email")], sleep=sleep)

        report = await dispatcher.notify(
            make_record(), on_delivered=AsyncMock(side_effect=RuntimeError("db locked"))
        )

        assert report.delivered == ["email"]

    @pytest.mark.asyncio
    async def test_channel_override(self, sleep):
        """Test explicit channels replace the defaults."""
        default = FakeChannel("email")
        override = FakeChannel("slack")
        dispatcher = NotificationDispatcher([default], sleep=sleep)

        report = await dispatcher.notify(make_record(), [override])

        assert report.delivered == ["slack"]
        assert default.calls == 0

    @pytest.mark.asyncio
    async def test_no_channels(self, sleep):
        """Test notifying with nothing configured is a no-op."""
        report = await NotificationDispatcher(sleep=sleep).notify(make_record())

        assert report.delivered == []
        assert report.operation_id == "op_abc"
