"""Notification channels.

Every channel implements the same ``send(message)``; email, chat and
paging are interchangeable. A channel raises ``NotificationError`` when a
delivery fails and leaves retrying to the dispatcher.
"""

import json
from abc import ABC, abstractmethod
from email.mime.text import MIMEText

import aiosmtplib
import httpx
import structlog

from hookrelay.errors import NotificationError
from hookrelay.notifications.rendering import MessageFormat, RenderedMessage
from hookrelay.outcomes import OutcomeStatus
from hookrelay.webhooks.security import DEFAULT_SCHEME, SignatureScheme, sign_headers

logger = structlog.get_logger(__name__)

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"

ALL_STATUSES = frozenset(OutcomeStatus)
ERRORS_ONLY = frozenset({OutcomeStatus.ERROR})

DEFAULT_TIMEOUT_SECONDS = 10.0


class NotificationChannel(ABC):
    """Destination for outcome notifications.

    Attributes:
        name: Channel identifier recorded in ``notified_channels``.
        message_format: Format the channel renders messages in.
        notify_on: Outcome statuses this channel is sent.
    """

    message_format: MessageFormat = MessageFormat.PLAIN

    def __init__(
        self,
        name: str,
        *,
        notify_on: frozenset[OutcomeStatus] = ALL_STATUSES,
    ) -> None:
        self.name = name
        self.notify_on = notify_on

    def accepts(self, status: OutcomeStatus) -> bool:
        return status in self.notify_on

    @abstractmethod
    async def send(self, message: RenderedMessage) -> None:
        """Deliver one message.

        Raises:
            NotificationError: If delivery failed.
        """

    async def aclose(self) -> None:
        """Release any held resources."""


class _HttpChannel(NotificationChannel):
    """Channel that POSTs to an HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        notify_on: frozenset[OutcomeStatus] = ALL_STATUSES,
    ) -> None:
        super().__init__(name, notify_on=notify_on)
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)

    async def _post(self, content: bytes, headers: dict[str, str]) -> None:
        try:
            response = await self._client.post(self.url, content=content, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"{self.name} request failed: {e}", channel=self.name) from e

        if not response.is_success:
            raise NotificationError(
                f"{self.name} returned HTTP {response.status_code}",
                channel=self.name,
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class SlackChannel(_HttpChannel):
    """Slack incoming webhook with mrkdwn formatting."""

    message_format = MessageFormat.MARKUP

    def __init__(
        self,
        webhook_url: str,
        *,
        name: str = "slack",
        client: httpx.AsyncClient | None = None,
        notify_on: frozenset[OutcomeStatus] = ALL_STATUSES,
    ) -> None:
        super().__init__(name, webhook_url, client=client, notify_on=notify_on)

    async def send(self, message: RenderedMessage) -> None:
        body = {
            "text": message.subject,
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": message.text}},
            ],
        }
        await self._post(json.dumps(body).encode(), {"Content-Type": "application/json"})


class WebhookChannel(_HttpChannel):
    """Generic JSON webhook, HMAC-signed when a secret is configured."""

    message_format = MessageFormat.STRUCTURED

    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        scheme: SignatureScheme = DEFAULT_SCHEME,
        name: str = "webhook",
        client: httpx.AsyncClient | None = None,
        notify_on: frozenset[OutcomeStatus] = ALL_STATUSES,
    ) -> None:
        super().__init__(name, url, client=client, notify_on=notify_on)
        self._secret = secret
        self._scheme = scheme

    async def send(self, message: RenderedMessage) -> None:
        raw = json.dumps(message.payload, default=str, sort_keys=True).encode()
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers.update(sign_headers(raw, self._secret, scheme=self._scheme))
        await self._post(raw, headers)


class PagerDutyChannel(_HttpChannel):
    """PagerDuty Events API v2; opens one incident per failed operation."""

    message_format = MessageFormat.STRUCTURED

    def __init__(
        self,
        routing_key: str,
        *,
        name: str = "pagerduty",
        url: str = PAGERDUTY_EVENTS_URL,
        severity: str = "error",
        client: httpx.AsyncClient | None = None,
        notify_on: frozenset[OutcomeStatus] = ERRORS_ONLY,
    ) -> None:
        super().__init__(name, url, client=client, notify_on=notify_on)
        self._routing_key = routing_key
        self._severity = severity

    async def send(self, message: RenderedMessage) -> None:
        body = {
            "routing_key": self._routing_key,
            "event_action": "trigger",
            # Same operation never opens a second incident
            "dedup_key": message.operation_id,
            "payload": {
                "summary": message.subject,
                "source": "hookrelay",
                "severity": self._severity,
                "custom_details": message.payload,
            },
        }
        await self._post(json.dumps(body, default=str).encode(), {"Content-Type": "application/json"})


class EmailChannel(NotificationChannel):
    """Plain-text email over SMTP."""

    message_format = MessageFormat.PLAIN

    def __init__(
        self,
        *,
        host: str,
        sender: str,
        recipients: list[str],
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        start_tls: bool | None = None,
        name: str = "email",
        notify_on: frozenset[OutcomeStatus] = ALL_STATUSES,
    ) -> None:
        super().__init__(name, notify_on=notify_on)
        if not recipients:
            raise ValueError("EmailChannel requires at least one recipient")
        self.host = host
        self.port = port
        self.sender = sender
        self.recipients = recipients
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._start_tls = start_tls

    def build_message(self, message: RenderedMessage) -> MIMEText:
        mime = MIMEText(message.text, "plain", "utf-8")
        mime["Subject"] = message.subject
        mime["From"] = self.sender
        mime["To"] = ", ".join(self.recipients)
        return mime

    async def send(self, message: RenderedMessage) -> None:
        mime = self.build_message(message)
        try:
            async with aiosmtplib.SMTP(
                hostname=self.host,
                port=self.port,
                use_tls=self._use_tls,
                start_tls=self._start_tls,
                timeout=DEFAULT_TIMEOUT_SECONDS,
            ) as smtp:
                if self._username and self._password:
                    await smtp.login(self._username, self._password)
                await smtp.send_message(mime)
        except (aiosmtplib.SMTPException, OSError) as e:
            raise NotificationError(f"{self.name} delivery failed: {e}", channel=self.name) from e

        logger.debug(
            "email_sent",
            channel=self.name,
            operation_id=message.operation_id,
            recipients=len(self.recipients),
        )
