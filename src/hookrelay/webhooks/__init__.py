"""Inbound webhook handling.

This module provides:
- verify / sign_headers: HMAC signature checks with a replay window
- InboundEvent: typed, immutable view of one delivery
- IdempotencyStore: durable deduplication by idempotency key
"""

from hookrelay.webhooks.events import (
    CommerceOrderPayload,
    EventPayload,
    GenericPayload,
    InboundEvent,
    PaymentEventPayload,
    RepositoryPushPayload,
    SourceType,
    build_inbound_event,
    derive_idempotency_key,
    operation_id_for,
    parse_payload,
)
from hookrelay.webhooks.idempotency import (
    IdempotencyOutcome,
    IdempotencyRecord,
    IdempotencyStore,
    Reservation,
)
from hookrelay.webhooks.security import (
    SCHEMES,
    SignatureScheme,
    VerificationResult,
    sign_headers,
    verify,
)

__all__ = [
    # Events
    "CommerceOrderPayload",
    "EventPayload",
    "GenericPayload",
    "InboundEvent",
    "PaymentEventPayload",
    "RepositoryPushPayload",
    "SourceType",
    "build_inbound_event",
    "derive_idempotency_key",
    "operation_id_for",
    "parse_payload",
    # Idempotency
    "IdempotencyOutcome",
    "IdempotencyRecord",
    "IdempotencyStore",
    "Reservation",
    # Security
    "SCHEMES",
    "SignatureScheme",
    "VerificationResult",
    "sign_headers",
    "verify",
]
