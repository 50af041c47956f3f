"""Inbound event models.

An ``InboundEvent`` is created once per delivery and never mutated. Its
body is kept as raw bytes for signature verification and additionally
parsed into a typed payload variant chosen by the source type, so that
handlers receive validated fields instead of an untyped dict.
"""

import hashlib
import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hookrelay.errors import PayloadValidationError


class SourceType(str, Enum):
    """Kinds of upstream event sources."""

    REPOSITORY_PUSH = "repository-push"
    COMMERCE_ORDER = "commerce-order"
    PAYMENT_EVENT = "payment-event"
    GENERIC = "generic"


# Headers that carry a provider-assigned delivery id, per source type
DELIVERY_ID_HEADERS: dict[SourceType, tuple[str, ...]] = {
    SourceType.REPOSITORY_PUSH: ("X-GitHub-Delivery", "X-Delivery-Id"),
    SourceType.COMMERCE_ORDER: ("X-Shopify-Webhook-Id", "X-Delivery-Id"),
    SourceType.PAYMENT_EVENT: ("X-Delivery-Id",),
    SourceType.GENERIC: ("X-Delivery-Id", "X-Request-Id"),
}


# ============================================================================
# Payload variants
# ============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class Commit(_Payload):
    """A single commit in a push."""

    id: str
    message: str = ""
    author: str | None = None

    @field_validator("author", mode="before")
    @classmethod
    def _author_name(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("name") or value.get("email")
        return value


class RepositoryPushPayload(_Payload):
    """Push to a source repository."""

    kind: Literal["repository-push"] = "repository-push"
    repository: str = Field(..., min_length=1)
    ref: str = Field(..., min_length=1)
    before: str | None = None
    after: str | None = None
    pusher: str | None = None
    commits: list[Commit] = Field(default_factory=list)

    @field_validator("repository", mode="before")
    @classmethod
    def _repository_name(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("full_name") or value.get("name")
        return value

    @field_validator("pusher", mode="before")
    @classmethod
    def _pusher_name(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("name") or value.get("email")
        return value


class LineItem(_Payload):
    """One line of a commerce order."""

    sku: str | None = None
    title: str = ""
    quantity: int = Field(default=1, ge=0)
    price: float = Field(default=0.0, ge=0)


class CommerceOrderPayload(_Payload):
    """Order created or updated in a storefront."""

    kind: Literal["commerce-order"] = "commerce-order"
    order_id: str = Field(..., min_length=1)
    status: str | None = None
    email: str | None = None
    total_price: float = Field(default=0.0, ge=0)
    currency: str = "USD"
    line_items: list[LineItem] = Field(default_factory=list)


class PaymentEventPayload(_Payload):
    """Payment provider event (charge, refund, dispute...)."""

    kind: Literal["payment-event"] = "payment-event"
    event_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    object_id: str | None = None
    amount: int | None = None
    currency: str | None = None


class GenericPayload(_Payload):
    """Any JSON object from a source without a dedicated schema."""

    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)


EventPayload = Annotated[
    RepositoryPushPayload | CommerceOrderPayload | PaymentEventPayload | GenericPayload,
    Field(discriminator="kind"),
]


def _nested(body: dict[str, Any], name: str, kind: type, source_type: SourceType) -> Any:
    """Nested value of the expected JSON type, or None when absent."""
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, kind):
        raise PayloadValidationError(
            f"Field {name} must be a JSON {'object' if kind is dict else 'array'}",
            details={
                "source_type": source_type.value,
                "errors": [{"loc": [name], "msg": f"expected {kind.__name__}"}],
            },
        )
    return value


def _normalize_commerce(body: dict[str, Any]) -> dict[str, Any]:
    items = [
        {
            "sku": item.get("sku"),
            "title": item.get("title") or item.get("name") or "",
            "quantity": item.get("quantity", 1),
            "price": item.get("price", 0),
        }
        for item in _nested(body, "line_items", list, SourceType.COMMERCE_ORDER) or []
        if isinstance(item, dict)
    ]
    order_id = body.get("order_id", body.get("id"))
    return {
        "order_id": str(order_id) if order_id is not None else "",
        "status": body.get("financial_status") or body.get("status"),
        "email": body.get("email"),
        "total_price": body.get("total_price", 0),
        "currency": body.get("currency") or "USD",
        "line_items": items,
    }


def _normalize_payment(body: dict[str, Any]) -> dict[str, Any]:
    data = _nested(body, "data", dict, SourceType.PAYMENT_EVENT) or {}
    obj = _nested(data, "object", dict, SourceType.PAYMENT_EVENT) or {}
    return {
        "event_id": body.get("id", ""),
        "event_type": body.get("type", ""),
        "object_id": obj.get("id"),
        "amount": obj.get("amount"),
        "currency": obj.get("currency"),
    }


def parse_payload(source_type: SourceType, raw_payload: bytes) -> EventPayload:
    """Decode and validate a raw body into its typed payload variant.

    Args:
        source_type: Which schema to apply.
        raw_payload: Body bytes (already verified).

    Returns:
        Validated payload model.

    Raises:
        PayloadValidationError: If the body is not JSON or fails validation.
    """
    try:
        body = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadValidationError(
            f"Body is not valid JSON: {e}", details={"source_type": source_type.value}
        ) from e

    if not isinstance(body, dict):
        raise PayloadValidationError(
            "Body must be a JSON object", details={"source_type": source_type.value}
        )

    try:
        if source_type is SourceType.REPOSITORY_PUSH:
            return RepositoryPushPayload.model_validate(body)
        if source_type is SourceType.COMMERCE_ORDER:
            return CommerceOrderPayload.model_validate(_normalize_commerce(body))
        if source_type is SourceType.PAYMENT_EVENT:
            return PaymentEventPayload.model_validate(_normalize_payment(body))
        return GenericPayload(data=body)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Payload does not match {source_type.value} schema",
            details={
                "source_type": source_type.value,
                "errors": [
                    {"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()
                ],
            },
        ) from e


# ============================================================================
# Inbound event
# ============================================================================


class InboundEvent(BaseModel):
    """One received webhook delivery.

    Attributes:
        id: Unique id for this delivery attempt.
        source_name: Configured source the event arrived on.
        source_type: Schema family of the source.
        received_at: When the request was received.
        raw_payload: Body exactly as received.
        headers: Request headers with lower-cased names.
        payload: Typed view of the body.
        delivery_id: Provider-supplied delivery id, if any.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    source_name: str
    source_type: SourceType
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    raw_payload: bytes
    headers: dict[str, str] = Field(default_factory=dict)
    payload: EventPayload
    delivery_id: str | None = None

    @field_validator("headers", mode="before")
    @classmethod
    def _lower_headers(cls, value: Any) -> Any:
        if value is None:
            return {}
        return {str(k).lower(): str(v) for k, v in dict(value).items()}

    def header(self, name: str, default: str | None = None) -> str | None:
        """Look up a header case-insensitively."""
        return self.headers.get(name.lower(), default)

    @property
    def idempotency_key(self) -> str:
        """Stable deduplication key for this delivery."""
        return derive_idempotency_key(self.source_name, self.delivery_id, self.raw_payload)

    @property
    def operation_id(self) -> str:
        """Operation id shared by every delivery of the same logical event."""
        return operation_id_for(self.idempotency_key)


def find_delivery_id(
    source_type: SourceType,
    headers: dict[str, str],
    payload: EventPayload,
) -> str | None:
    """Find the provider-supplied delivery id for an event, if there is one."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in DELIVERY_ID_HEADERS[source_type]:
        value = lowered.get(name.lower())
        if value and value.strip():
            return value.strip()

    if isinstance(payload, PaymentEventPayload):
        return payload.event_id
    return None


def derive_idempotency_key(
    source_name: str,
    delivery_id: str | None,
    raw_payload: bytes,
) -> str:
    """Derive the idempotency key from source and delivery id.

    Falls back to a SHA-256 of the raw body when the source supplies no id,
    so identical bodies on one source deduplicate to the same key.
    """
    if delivery_id:
        return f"{source_name}:{delivery_id}"
    digest = hashlib.sha256(raw_payload).hexdigest()
    return f"{source_name}:sha256:{digest}"


def build_inbound_event(
    source_name: str,
    source_type: SourceType,
    raw_payload: bytes,
    headers: dict[str, str],
    *,
    received_at: datetime | None = None,
) -> InboundEvent:
    """Parse a verified request into an InboundEvent.

    Raises:
        PayloadValidationError: If the body fails the source's schema.
    """
    payload = parse_payload(source_type, raw_payload)
    delivery_id = find_delivery_id(source_type, headers, payload)

    return InboundEvent(
        id=f"evt_{uuid.uuid4().hex[:12]}",
        source_name=source_name,
        source_type=source_type,
        received_at=received_at or datetime.now(UTC),
        raw_payload=raw_payload,
        headers=headers,
        payload=payload,
        delivery_id=delivery_id,
    )


def operation_id_for(idempotency_key: str) -> str:
    """Map an idempotency key to the operation id used for outcomes."""
    return "op_" + hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:24]
