"""Tests for the durable idempotency store."""

import asyncio
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from hookrelay.errors import IdempotencyConflictError
from hookrelay.webhooks.idempotency import IdempotencyOutcome, IdempotencyStore

# ============================================================================
# Fixtures
# ============================================================================


class FakeClock:
    """Settable clock for store tests."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def temp_db():
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield Path(f.name)


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock."""
    return FakeClock()


@pytest.fixture
def store(temp_db, clock) -> IdempotencyStore:
    """Create store with temp database."""
    return IdempotencyStore(temp_db, clock=clock)


# ============================================================================
# reserve Tests
# ============================================================================


class TestReserve:
    """Tests for IdempotencyStore.reserve."""

    @pytest.mark.asyncio
    async def test_new_key(self, store):
        """Test first reservation owns the key."""
        reservation = await store.reserve("github:1")

        assert reservation.is_new is True
        assert reservation.record.outcome == IdempotencyOutcome.PENDING
        assert reservation.in_flight is False
        assert reservation.completed is False

    @pytest.mark.asyncio
    async def test_pending_duplicate_is_in_flight(self, store, clock):
        """Test second reservation of a pending key is rejected as in flight."""
        await store.reserve("github:1")
        clock.advance(seconds=5)

        reservation = await store.reserve("github:1")

        assert reservation.is_new is False
        assert reservation.in_flight is True
        assert reservation.record.last_seen_at == clock.now
        assert reservation.record.first_seen_at == clock.now - timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_terminal_duplicate_replays_result(self, store):
        """Test a completed key returns the stored result."""
        await store.reserve("github:1")
        await store.complete("github:1", IdempotencyOutcome.SUCCEEDED, {"operation_id": "op_1"})

        reservation = await store.reserve("github:1")

        assert reservation.is_new is False
        assert reservation.completed is True
        assert reservation.record.result == {"operation_id": "op_1"}

    @pytest.mark.asyncio
    async def test_concurrent_reserve_single_winner(self, store):
        """Test two concurrent reservations yield exactly one new."""
        results = await asyncio.gather(store.reserve("k"), store.reserve("k"))

        assert sorted(r.is_new for r in results) == [False, True]

    @pytest.mark.asyncio
    async def test_concurrent_reserve_across_instances(self, temp_db):
        """Test separate store instances on one file still agree."""
        stores = [IdempotencyStore(temp_db) for _ in range(5)]
        await stores[0].ping()

        results = await asyncio.gather(*(s.reserve("shared") for s in stores))

        assert sum(r.is_new for r in results) == 1

    @pytest.mark.asyncio
    async def test_survives_restart(self, temp_db):
        """Test records persist across store instances."""
        await IdempotencyStore(temp_db).reserve("k")

        reservation = await IdempotencyStore(temp_db).reserve("k")

        assert reservation.in_flight is True

    @pytest.mark.asyncio
    async def test_stale_pending_reclaimed(self, temp_db, clock):
        """Test abandoned pending reservations can be taken over."""
        store = IdempotencyStore(temp_db, pending_ttl=timedelta(minutes=15), clock=clock)
        await store.reserve("k")
        clock.advance(minutes=16)

        reservation = await store.reserve("k")

        assert reservation.is_new is True
        assert reservation.reclaimed is True
        assert reservation.record.reserved_at == clock.now

    @pytest.mark.asyncio
    async def test_fresh_pending_not_reclaimed(self, temp_db, clock):
        """Test pending reservations inside the TTL stay in flight."""
        store = IdempotencyStore(temp_db, pending_ttl=timedelta(minutes=15), clock=clock)
        await store.reserve("k")
        clock.advance(minutes=14)

        reservation = await store.reserve("k")

        assert reservation.in_flight is True

    @pytest.mark.asyncio
    async def test_reclaim_disabled(self, temp_db, clock):
        """Test pending_ttl=None never reclaims."""
        store = IdempotencyStore(temp_db, pending_ttl=None, clock=clock)
        await store.reserve("k")
        clock.advance(days=10)

        assert (await store.reserve("k")).in_flight is True

    @pytest.mark.asyncio
    async def test_terminal_never_reclaimed(self, temp_db, clock):
        """Test completed keys are not reclaimed however old they are."""
        store = IdempotencyStore(temp_db, pending_ttl=timedelta(minutes=1), clock=clock)
        await store.reserve("k")
        await store.complete("k", IdempotencyOutcome.FAILED)
        clock.advance(days=1)

        reservation = await store.reserve("k")

        assert reservation.completed is True
        assert reservation.record.outcome == IdempotencyOutcome.FAILED


# ============================================================================
# complete Tests
# ============================================================================


class TestComplete:
    """Tests for IdempotencyStore.complete."""

    @pytest.mark.asyncio
    async def test_pending_to_succeeded(self, store):
        """Test pending transitions to succeeded."""
        await store.reserve("k")

        record = await store.complete("k", IdempotencyOutcome.SUCCEEDED)

        assert record.outcome == IdempotencyOutcome.SUCCEEDED
        assert (await store.get("k")).outcome == IdempotencyOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_same_outcome_is_noop(self, store):
        """Test completing twice with the same outcome is accepted."""
        await store.reserve("k")
        await store.complete("k", IdempotencyOutcome.FAILED, {"n": 1})

        record = await store.complete("k", IdempotencyOutcome.FAILED, {"n": 2})

        assert record.result == {"n": 1}

    @pytest.mark.asyncio
    async def test_different_outcome_rejected(self, store):
        """Test a second, different terminal outcome is a logic error."""
        await store.reserve("k")
        await store.complete("k", IdempotencyOutcome.SUCCEEDED)

        with pytest.raises(IdempotencyConflictError) as exc_info:
            await store.complete("k", IdempotencyOutcome.FAILED)

        assert exc_info.value.recorded == "succeeded"
        assert (await store.get("k")).outcome == IdempotencyOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_unreserved_key_rejected(self, store):
        """Test completing a key that was never reserved."""
        with pytest.raises(IdempotencyConflictError):
            await store.complete("missing", IdempotencyOutcome.SUCCEEDED)

    @pytest.mark.asyncio
    async def test_pending_outcome_rejected(self, store):
        """Test complete refuses the pending outcome."""
        await store.reserve("k")

        with pytest.raises(ValueError):
            await store.complete("k", IdempotencyOutcome.PENDING)


# ============================================================================
# get / prune Tests
# ============================================================================


class TestGetAndPrune:
    """Tests for get and prune."""

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Test unknown keys return None."""
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_prune_removes_only_old_terminal(self, store, clock):
        """Test retention keeps pending and recent records."""
        await store.reserve("old-done")
        await store.complete("old-done", IdempotencyOutcome.SUCCEEDED)
        await store.reserve("old-pending")
        clock.advance(days=40)
        await store.reserve("new-done")
        await store.complete("new-done", IdempotencyOutcome.SUCCEEDED)

        deleted = await store.prune(clock.now - timedelta(days=30))

        assert deleted == 1
        assert await store.get("old-done") is None
        assert await store.get("old-pending") is not None
        assert await store.get("new-done") is not None

    @pytest.mark.asyncio
    async def test_ping(self, store):
        """Test the database is reachable."""
        assert await store.ping() is True
