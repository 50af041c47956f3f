"""Render outcome records into channel-appropriate messages.

One ``OutcomeRecord`` renders to plain text (email), markup (chat) or a
structured payload (webhooks, paging). Error messages always carry the
operation id, the error class and the idempotency key or source so an
operator can retry the operation by hand.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from hookrelay.outcomes import OutcomeRecord, OutcomeStatus

# Detail keys shown in rendered messages, in display order
_CONTEXT_KEYS = (
    "source_name",
    "idempotency_key",
    "event_id",
    "error_type",
    "attempts",
    "records_applied",
    "duration_ms",
)


class MessageFormat(str, Enum):
    """Message representation a channel accepts."""

    PLAIN = "plain"
    MARKUP = "markup"
    STRUCTURED = "structured"


class RenderedMessage(BaseModel):
    """A message ready for one channel."""

    operation_id: str
    status: OutcomeStatus
    format: MessageFormat
    subject: str
    text: str = Field(default="", description="Body for PLAIN and MARKUP formats")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Body for the STRUCTURED format",
    )


def render_subject(record: OutcomeRecord) -> str:
    """One-line summary used as subject, title or incident summary."""
    if record.status is OutcomeStatus.SUCCESS:
        return f"[SUCCESS] Operation {record.operation_id} completed"
    error_class = record.error_class or "error"
    return f"[ERROR] Operation {record.operation_id} failed: {error_class}"


def _context_items(record: OutcomeRecord) -> list[tuple[str, Any]]:
    return [(key, record.detail[key]) for key in _CONTEXT_KEYS if key in record.detail]


def render_plain(record: OutcomeRecord) -> str:
    lines = [
        render_subject(record),
        "",
        f"Operation ID: {record.operation_id}",
        f"Status: {record.status.value}",
    ]
    if record.status is OutcomeStatus.ERROR:
        lines.append(f"Error class: {record.error_class or 'unknown'}")
        if record.detail.get("error"):
            lines.append(f"Error: {record.detail['error']}")
    for key, value in _context_items(record):
        lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    if record.status is OutcomeStatus.ERROR:
        lines.extend(["", "Redeliver the event or re-run the sync with the key above to retry."])
    return "\n".join(lines)


def render_markup(record: OutcomeRecord) -> str:
    icon = ":white_check_mark:" if record.status is OutcomeStatus.SUCCESS else ":x:"
    lines = [f"{icon} *{render_subject(record)}*", f"*Operation:* `{record.operation_id}`"]
    if record.status is OutcomeStatus.ERROR:
        lines.append(f"*Error class:* `{record.error_class or 'unknown'}`")
        if record.detail.get("error"):
            lines.append(f"*Error:* {record.detail['error']}")
    for key, value in _context_items(record):
        lines.append(f"*{key.replace('_', ' ').capitalize()}:* `{value}`")
    return "\n".join(lines)


def render_structured(record: OutcomeRecord) -> dict[str, Any]:
    return {
        "operation_id": record.operation_id,
        "status": record.status.value,
        "error_class": record.error_class,
        "summary": render_subject(record),
        "detail": record.detail,
        "created_at": record.created_at.isoformat(),
    }


def render_message(record: OutcomeRecord, message_format: MessageFormat) -> RenderedMessage:
    """Render a record for a channel's format.

    Args:
        record: Outcome to describe.
        message_format: Format the channel accepts.

    Returns:
        Rendered message.
    """
    message = RenderedMessage(
        operation_id=record.operation_id,
        status=record.status,
        format=message_format,
        subject=render_subject(record),
    )
    if message_format is MessageFormat.PLAIN:
        message.text = render_plain(record)
    elif message_format is MessageFormat.MARKUP:
        message.text = render_markup(record)
    else:
        message.payload = render_structured(record)
    return message
