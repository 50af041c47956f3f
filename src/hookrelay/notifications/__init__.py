"""Outcome notifications.

This module provides:
- NotificationChannel: one-method channel contract
- SlackChannel, WebhookChannel, PagerDutyChannel, EmailChannel
- render_message: plain, markup and structured renderings of an outcome
- NotificationDispatcher: best-effort, per-channel-retried delivery
"""

from hookrelay.notifications.channels import (
    ALL_STATUSES,
    ERRORS_ONLY,
    EmailChannel,
    NotificationChannel,
    PagerDutyChannel,
    SlackChannel,
    WebhookChannel,
)
from hookrelay.notifications.dispatcher import NotificationDispatcher, NotificationReport
from hookrelay.notifications.rendering import MessageFormat, RenderedMessage, render_message

__all__ = [
    # Channels
    "ALL_STATUSES",
    "ERRORS_ONLY",
    "EmailChannel",
    "NotificationChannel",
    "PagerDutyChannel",
    "SlackChannel",
    "WebhookChannel",
    # Dispatch
    "NotificationDispatcher",
    "NotificationReport",
    # Rendering
    "MessageFormat",
    "RenderedMessage",
    "render_message",
]
