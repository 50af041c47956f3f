"""Tests for webhook ingestion and processing."""

import asyncio
import json
import random
import tempfile
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from hookrelay.errors import (
    NotificationError,
    RetryableIntegrationError,
    TerminalIntegrationError,
)
from hookrelay.integrations import (
    IntegrationAdapter,
    IntegrationRequest,
    IntegrationResponse,
    ResilientIntegration,
)
from hookrelay.notifications import NotificationChannel, NotificationDispatcher, RenderedMessage
from hookrelay.outcomes import OutcomeStatus, OutcomeStore
from hookrelay.pipeline import (
    ActionContext,
    OutcomeRouter,
    SourceConfig,
    WebhookProcessor,
)
from hookrelay.resilience.retry import RetryExecutor, RetryPolicy
from hookrelay.webhooks.events import InboundEvent, SourceType
from hookrelay.webhooks.idempotency import IdempotencyOutcome, IdempotencyStore
from hookrelay.webhooks.security import COMBINED_SCHEME, DEFAULT_SCHEME, sign_headers

SECRET = "whsec_test"

ORDER = {
    "id": 1001,
    "email": "buyer@example.com",
    "financial_status": "paid",
    "total_price": 25.0,
    "line_items": [{"sku": "SKU-1", "title": "Mug", "quantity": 1, "price": 25.0}],
}


def signed(body: dict | bytes, *, delivery_id: str | None = "dlv_1", secret: str = SECRET):
    """Raw body and headers for a correctly signed delivery."""
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    headers = sign_headers(raw, secret)
    if delivery_id:
        headers["X-Shopify-Webhook-Id"] = delivery_id
    return raw, headers


class ScriptedAdapter(IntegrationAdapter):
    """Adapter that replays scripted failures before succeeding."""

    def __init__(self, name: str, script: list[Exception | IntegrationResponse]) -> None:
        self.name = name
        self.script = list(script)
        self.requests: list[IntegrationRequest] = []

    async def call(self, request: IntegrationRequest) -> IntegrationResponse:
        self.requests.append(request)
        step = self.script.pop(0) if self.script else IntegrationResponse()
        if isinstance(step, Exception):
            raise step
        return step


class RecordingChannel(NotificationChannel):
    def __init__(self) -> None:
        super().__init__("slack")
        self.sent: list[RenderedMessage] = []
        self.down = False

    async def send(self, message: RenderedMessage) -> None:
        if self.down:
            raise NotificationError("slack unavailable", channel=self.name)
        self.sent.append(message)


@dataclass
class Harness:
    processor: WebhookProcessor
    idempotency: IdempotencyStore
    outcomes: OutcomeStore
    channel: RecordingChannel


@pytest.fixture
def temp_db():
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield Path(f.name)


def build(
    db_path: Path,
    *,
    handlers: dict | None = None,
    adapters: list[IntegrationAdapter] | None = None,
    process_inline: bool = True,
) -> Harness:
    idempotency = IdempotencyStore(db_path)
    outcomes = OutcomeStore(db_path)
    channel = RecordingChannel()
    router = OutcomeRouter(
        outcomes, idempotency, NotificationDispatcher([channel], sleep=AsyncMock())
    )
    executor = RetryExecutor(
        RetryPolicy(max_attempts=5, base_delay_ms=10, max_delay_ms=100),
        sleep=AsyncMock(),
        rng=random.Random(0),
    )
    processor = WebhookProcessor(
        sources={
            "shop": SourceConfig("shop", SourceType.COMMERCE_ORDER, SECRET),
            "payments": SourceConfig(
                "payments", SourceType.PAYMENT_EVENT, SECRET, scheme=COMBINED_SCHEME
            ),
        },
        idempotency=idempotency,
        router=router,
        executor=executor,
        handlers=handlers,
        integrations={a.name: ResilientIntegration(a, executor) for a in adapters or []},
        process_inline=process_inline,
    )
    return Harness(processor, idempotency, outcomes, channel)


def counting_handler():
    calls: list[InboundEvent] = []

    async def handler(event: InboundEvent, context: ActionContext) -> dict:
        calls.append(event)
        return {"order_id": event.payload.order_id}

    return handler, calls


# ============================================================================
# SourceConfig Tests
# ============================================================================


class TestSourceConfig:
    """Tests for SourceConfig.from_dict."""

    def test_defaults(self):
        """Test a minimal entry gets the generic type and default scheme."""
        source = SourceConfig.from_dict("misc", {"secret": "s"}, max_clock_skew_seconds=120)

        assert source.source_type is SourceType.GENERIC
        assert source.scheme.signature_header == "X-Signature"
        assert source.max_clock_skew_seconds == 120

    def test_full_entry(self):
        """Test type, scheme and skew are read from the entry."""
        source = SourceConfig.from_dict(
            "gh",
            {
                "type": "repository-push",
                "secret": "s",
                "scheme": "prefixed",
                "max_clock_skew_seconds": 60,
            },
        )

        assert source.source_type is SourceType.REPOSITORY_PUSH
        assert source.scheme.prefix == "sha256="
        assert source.max_clock_skew_seconds == 60

    def test_missing_secret(self):
        """Test sources must have a secret."""
        with pytest.raises(ValueError, match="no secret"):
            SourceConfig.from_dict("gh", {"type": "repository-push"})

    def test_unknown_scheme(self):
        """Test unknown signature schemes are rejected."""
        with pytest.raises(ValueError, match="unknown scheme"):
            SourceConfig.from_dict("gh", {"secret": "s", "scheme": "rot13"})

    def test_unknown_type(self):
        """Test unknown source types are rejected."""
        with pytest.raises(ValueError):
            SourceConfig.from_dict("gh", {"secret": "s", "type": "fax"})


# ============================================================================
# Ingestion Tests
# ============================================================================


class TestIngest:
    """Tests for WebhookProcessor.ingest."""

    @pytest.mark.asyncio
    async def test_valid_event_processed_once(self, temp_db):
        """Test a valid delivery is processed and a redelivery is a duplicate."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"shop": handler})
        raw, headers = signed(ORDER)

        first = await harness.processor.ingest("shop", raw, headers)

        assert first.status_code == 200
        assert first.body["status"] == "processed"
        assert first.body["outcome"] == "success"
        operation_id = first.body["operation_id"]

        second = await harness.processor.ingest("shop", raw, headers)

        assert second.status_code == 200
        assert second.body["status"] == "duplicate"
        assert second.body["operation_id"] == operation_id
        assert second.body["outcome"] == "succeeded"
        assert second.body["result"]["detail"]["result"] == {"order_id": "1001"}
        assert len(calls) == 1

        record = await harness.outcomes.get(operation_id)
        assert record.status is OutcomeStatus.SUCCESS
        assert record.detail["source_name"] == "shop"
        assert record.detail["idempotency_key"] == "shop:dlv_1"
        assert len(harness.channel.sent) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_without_side_effects(self, temp_db):
        """Test a forged delivery is rejected before anything is stored."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"shop": handler})
        raw, headers = signed(ORDER, secret="wrong-secret")

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.status_code == 401
        assert result.body == {"status": "rejected", "reason": "signature_mismatch"}
        assert await harness.idempotency.get("shop:dlv_1") is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, temp_db):
        """Test a body changed after signing fails verification."""
        harness = build(temp_db)
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw.replace(b"1001", b"1002"), headers)

        assert result.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_source(self, temp_db):
        """Test deliveries to an unconfigured source get 404."""
        harness = build(temp_db)
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("nope", raw, headers)

        assert result.status_code == 404
        assert result.body == {"status": "unknown_source", "source_name": "nope"}

    @pytest.mark.asyncio
    async def test_invalid_payload(self, temp_db):
        """Test a signed body that fails its schema gets 400."""
        harness = build(temp_db)
        raw, headers = signed({"email": "no-order-id@example.com"})

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.status_code == 400
        assert result.body["status"] == "invalid_payload"
        assert result.body["source_type"] == "commerce-order"
        assert await harness.idempotency.get("shop:dlv_1") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "source_name,body",
        [
            ("payments", {"id": "evt_2", "type": "charge.succeeded", "data": "oops"}),
            ("payments", {"id": "evt_3", "type": "charge.succeeded", "data": {"object": [1]}}),
            ("shop", {"id": 1002, "line_items": 5}),
        ],
    )
    async def test_malformed_nested_payload(self, temp_db, source_name, body):
        """Test signed bodies with wrongly typed nested fields get 400."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={source_name: handler})
        raw = json.dumps(body).encode()
        scheme = COMBINED_SCHEME if source_name == "payments" else DEFAULT_SCHEME
        headers = sign_headers(raw, SECRET, scheme=scheme)

        result = await harness.processor.ingest(source_name, raw, headers)

        assert result.status_code == 400
        assert result.body["status"] == "invalid_payload"
        assert calls == []
        assert harness.channel.sent == []

    @pytest.mark.asyncio
    async def test_non_json_body(self, temp_db):
        """Test a signed non-JSON body gets 400."""
        harness = build(temp_db)
        raw, headers = signed(b"not json")

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_in_flight_duplicate(self, temp_db):
        """Test a delivery whose key is still pending gets 409."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"shop": handler})
        await harness.idempotency.reserve("shop:dlv_1")
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.status_code == 409
        assert result.body["status"] == "in_progress"
        assert result.body["idempotency_key"] == "shop:dlv_1"
        assert calls == []

    @pytest.mark.asyncio
    async def test_payload_hash_key_without_delivery_id(self, temp_db):
        """Test identical bodies without a delivery id deduplicate."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"shop": handler})
        raw, headers = signed(ORDER, delivery_id=None)

        first = await harness.processor.ingest("shop", raw, headers)
        second = await harness.processor.ingest("shop", raw, headers)

        assert first.body["status"] == "processed"
        assert second.body["status"] == "duplicate"
        assert second.body["idempotency_key"].startswith("shop:sha256:")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_payment_event_id_is_delivery_id(self, temp_db):
        """Test payment events deduplicate on their event id."""
        harness = build(temp_db)
        body = {"id": "evt_pay_1", "type": "charge.succeeded", "data": {"object": {"id": "ch_1"}}}
        raw = json.dumps(body).encode()
        headers = sign_headers(raw, SECRET, scheme=COMBINED_SCHEME)

        result = await harness.processor.ingest("payments", raw, headers)
        duplicate = await harness.processor.ingest("payments", raw, headers)

        assert result.body["status"] == "processed"
        assert duplicate.body["idempotency_key"] == "payments:evt_pay_1"

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_process_once(self, temp_db):
        """Test simultaneous deliveries of one event run the handler once."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"shop": handler})
        raw, headers = signed(ORDER)

        results = await asyncio.gather(
            *(harness.processor.ingest("shop", raw, headers) for _ in range(3))
        )

        statuses = [r.body["status"] for r in results]
        assert statuses.count("processed") == 1
        assert set(statuses) <= {"processed", "in_progress", "duplicate"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_background_processing(self, temp_db):
        """Test deliveries are acknowledged first and processed in the background."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"shop": handler}, process_inline=False)
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.body["status"] == "accepted"
        await harness.processor.shutdown()
        assert harness.processor.pending_tasks == 0
        record = await harness.outcomes.get(result.body["operation_id"])
        assert record.status is OutcomeStatus.SUCCESS
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_duplicate_recovers_missing_outcome(self, temp_db):
        """Test a redelivery finishes routing interrupted after completion."""
        harness = build(temp_db)
        raw, headers = signed(ORDER)
        await harness.idempotency.reserve("shop:dlv_1")
        await harness.idempotency.complete(
            "shop:dlv_1",
            IdempotencyOutcome.SUCCEEDED,
            {"operation_id": "x", "status": "success", "detail": {"result": {"ok": True}}},
        )

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.body["status"] == "duplicate"
        record = await harness.outcomes.get(result.body["operation_id"])
        assert record is not None
        assert record.detail["result"] == {"ok": True}
        assert len(harness.channel.sent) == 1

    @pytest.mark.asyncio
    async def test_redelivery_notifies_channel_that_was_down(self, temp_db):
        """Test a redelivery retries notifications that failed the first time."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"shop": handler})
        raw, headers = signed(ORDER)
        harness.channel.down = True

        first = await harness.processor.ingest("shop", raw, headers)

        operation_id = first.body["operation_id"]
        assert first.body["status"] == "processed"
        assert harness.channel.sent == []
        assert (await harness.outcomes.get(operation_id)).notified_channels == set()

        harness.channel.down = False
        second = await harness.processor.ingest("shop", raw, headers)

        assert second.body["status"] == "duplicate"
        assert len(calls) == 1
        assert len(harness.channel.sent) == 1
        assert (await harness.outcomes.get(operation_id)).notified_channels == {"slack"}

        await harness.processor.ingest("shop", raw, headers)

        assert len(harness.channel.sent) == 1


# ============================================================================
# Processing Tests
# ============================================================================


class TestProcessing:
    """Tests for business actions and downstream calls."""

    @pytest.mark.asyncio
    async def test_transient_failures_retried_to_success(self, temp_db):
        """Test a downstream that fails twice with 503 succeeds on the third attempt."""
        crm = ScriptedAdapter(
            "crm",
            [
                RetryableIntegrationError("crm returned HTTP 503", status_code=503),
                RetryableIntegrationError("crm returned HTTP 503", status_code=503),
                IntegrationResponse(status_code=201, body={"id": "c_1"}),
            ],
        )

        async def handler(event: InboundEvent, context: ActionContext) -> dict:
            response = await context.call(
                "crm", IntegrationRequest(path="/contacts", json_body={"email": event.payload.email})
            )
            return {"contact_id": response.body["id"]}

        harness = build(temp_db, handlers={"shop": handler}, adapters=[crm])
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.body["outcome"] == "success"
        record = await harness.outcomes.get(result.body["operation_id"])
        assert record.detail["attempts"] == 3
        assert record.detail["result"] == {"contact_id": "c_1"}
        assert [a["outcome_class"] for a in record.detail["retry_attempts"]] == [
            "retryable_failure",
            "retryable_failure",
            "success",
        ]
        # Every retry carries the same key so the downstream can deduplicate
        assert {r.idempotency_key for r in crm.requests} == {result.body["operation_id"]}

    @pytest.mark.asyncio
    async def test_terminal_failure_recorded(self, temp_db):
        """Test a 400 from downstream ends the operation as an error."""
        crm = ScriptedAdapter("crm", [TerminalIntegrationError("HTTP 400", status_code=400)])

        async def handler(event: InboundEvent, context: ActionContext) -> dict:
            await context.call("crm", IntegrationRequest(path="/contacts"))
            return {}

        harness = build(temp_db, handlers={"shop": handler}, adapters=[crm])
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        assert result.body["outcome"] == "error"
        assert len(crm.requests) == 1
        record = await harness.outcomes.get(result.body["operation_id"])
        assert record.error_class == "TerminalIntegrationError"
        assert record.detail["attempts"] == 1
        key = await harness.idempotency.get("shop:dlv_1")
        assert key.outcome is IdempotencyOutcome.FAILED

        duplicate = await harness.processor.ingest("shop", raw, headers)
        assert duplicate.body["status"] == "duplicate"
        assert duplicate.body["outcome"] == "failed"
        assert len(crm.requests) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_recorded(self, temp_db):
        """Test a downstream that never recovers ends as RetriesExhausted."""
        crm = ScriptedAdapter("crm", [RetryableIntegrationError("503")] * 5)

        async def handler(event: InboundEvent, context: ActionContext) -> dict:
            await context.call("crm", IntegrationRequest(path="/contacts"))
            return {}

        harness = build(temp_db, handlers={"shop": handler}, adapters=[crm])
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        record = await harness.outcomes.get(result.body["operation_id"])
        assert record.error_class == "RetriesExhausted"
        assert record.detail["error_type"] == "RetryableIntegrationError"
        assert record.detail["attempts"] == 5
        assert "RetriesExhausted" in harness.channel.sent[0].subject

    @pytest.mark.asyncio
    async def test_unknown_integration(self, temp_db):
        """Test calling an unconfigured integration fails the operation."""

        async def handler(event: InboundEvent, context: ActionContext) -> dict:
            await context.call("erp", IntegrationRequest(path="/orders"))
            return {}

        harness = build(temp_db, handlers={"shop": handler})
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        record = await harness.outcomes.get(result.body["operation_id"])
        assert record.error_class == "KeyError"

    @pytest.mark.asyncio
    async def test_context_run_retries_arbitrary_work(self, temp_db):
        """Test handlers can retry their own coroutines through the context."""
        work = AsyncMock(side_effect=[ConnectionError("reset"), "done"])

        async def handler(event: InboundEvent, context: ActionContext) -> dict:
            return {"value": await context.run(work, name="warehouse")}

        harness = build(temp_db, handlers={"shop": handler})
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        record = await harness.outcomes.get(result.body["operation_id"])
        assert record.detail["result"] == {"value": "done"}
        assert record.detail["attempts"] == 2

    @pytest.mark.asyncio
    async def test_handler_lookup_by_type(self, temp_db):
        """Test handlers can be registered per source type."""
        handler, calls = counting_handler()
        harness = build(temp_db, handlers={"commerce-order": handler})
        raw, headers = signed(ORDER)

        await harness.processor.ingest("shop", raw, headers)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_default_handler_acknowledges(self, temp_db):
        """Test sources without a handler are acknowledged."""
        harness = build(temp_db)
        raw, headers = signed(ORDER)

        result = await harness.processor.ingest("shop", raw, headers)

        record = await harness.outcomes.get(result.body["operation_id"])
        assert record.detail["result"]["source_type"] == "commerce-order"
        assert record.detail["attempts"] == 0
