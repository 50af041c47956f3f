"""Incremental sync runner.

Drives the fetch, apply, advance cycle for one source feed:

1. read the watermark
2. fetch records modified since it
3. upsert the whole batch into the sink
4. advance the watermark to the batch's highest cursor

Steps 3 and 4 are never reordered. A crash between them replays the batch
on the next run, so sinks must upsert by source record id.
"""

import time
from abc import ABC, abstractmethod
from typing import Any

import structlog
from pydantic import BaseModel, Field

from hookrelay.resilience.retry import RetryAttempt, RetryExecutor
from hookrelay.sync.watermark import DEFAULT_LEASE_SECONDS, Cursor, WatermarkTracker

logger = structlog.get_logger(__name__)

DEFAULT_MAX_BATCHES = 100


class SyncRecord(BaseModel):
    """One record fetched from a source feed."""

    record_id: str = Field(description="Stable source id; sinks upsert on it")
    cursor: Cursor = Field(description="Position of this record in the feed")
    data: dict[str, Any] = Field(default_factory=dict)


class SyncBatch(BaseModel):
    """A page of records past a cursor.

    ``next_cursor`` defaults to the highest record cursor when the source
    does not supply one.
    """

    records: list[SyncRecord] = Field(default_factory=list)
    next_cursor: Cursor | None = None

    @property
    def is_empty(self) -> bool:
        return not self.records

    def high_water_mark(self) -> Cursor | None:
        """Cursor to advance to once this batch is applied."""
        if self.next_cursor is not None:
            return self.next_cursor
        if not self.records:
            return None
        return max(record.cursor for record in self.records)


class SyncRunResult(BaseModel):
    """Summary of one sync run."""

    source_name: str
    batches: int = 0
    records_applied: int = 0
    starting_cursor: Cursor | None = None
    final_cursor: Cursor | None = None
    duration_ms: int = 0

    def to_detail(self) -> dict[str, Any]:
        """Outcome detail for the outcome router."""
        return self.model_dump(mode="json")


class SyncSource(ABC):
    """A feed that can be read incrementally."""

    @abstractmethod
    async def fetch(self, cursor: Cursor | None) -> SyncBatch:
        """Fetch records modified after ``cursor`` (all records if None)."""


class SyncSink(ABC):
    """Destination that applies records idempotently."""

    @abstractmethod
    async def upsert(self, records: list[SyncRecord]) -> None:
        """Insert or replace each record keyed by ``record_id``."""


class IncrementalSync:
    """Runs incremental syncs of one source into one sink.

    Example:
        sync = IncrementalSync(tracker, "orders", OrdersApi(), Warehouse(), executor=executor)
        result = await sync.run()
    """

    def __init__(
        self,
        tracker: WatermarkTracker,
        source_name: str,
        source: SyncSource,
        sink: SyncSink,
        *,
        executor: RetryExecutor | None = None,
        bucket: str | None = None,
        initial_cursor: Cursor | None = None,
        max_batches: int = DEFAULT_MAX_BATCHES,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ) -> None:
        """Initialize the runner.

        Args:
            tracker: Watermark store.
            source_name: Feed name the watermark is stored under.
            source: Feed to read.
            sink: Destination to apply batches to.
            executor: Optional retry executor wrapping fetch and upsert.
            bucket: Rate limit bucket for fetches.
            initial_cursor: Cursor used before the first advance.
            max_batches: Upper bound on batches per run.
            lease_seconds: Lease lifetime, renewed after every applied batch.
        """
        self.tracker = tracker
        self.source_name = source_name
        self.source = source
        self.sink = sink
        self._executor = executor
        self._bucket = bucket
        self._initial_cursor = initial_cursor
        self._max_batches = max_batches
        self._lease_seconds = lease_seconds
        self.attempts: list[RetryAttempt] = []
        self._logger = logger.bind(component="incremental_sync", source_name=source_name)

    async def run(self) -> SyncRunResult:
        """Run until the source returns an empty batch.

        Returns:
            Run summary.

        Raises:
            SyncInProgressError: If another run holds this source, or took
                over the lease after it expired mid-run.
        """
        started = time.perf_counter()
        self.attempts.clear()

        async with self.tracker.lock(
            self.source_name, lease_seconds=self._lease_seconds
        ) as holder:
            cursor = await self.tracker.get_watermark(self.source_name, self._initial_cursor)
            result = SyncRunResult(source_name=self.source_name, starting_cursor=cursor)
            self._logger.info("sync_started", cursor=str(cursor) if cursor else None)

            while result.batches < self._max_batches:
                batch = await self._fetch(cursor)
                if batch.is_empty:
                    break

                await self._apply(batch)
                # The batch stays unadvanced if the lease was lost meanwhile
                await self.tracker.renew_lease(self.source_name, holder, self._lease_seconds)
                next_cursor = batch.high_water_mark()
                if next_cursor is not None:
                    await self.tracker.advance_watermark(self.source_name, next_cursor)
                    cursor = next_cursor

                result.batches += 1
                result.records_applied += len(batch.records)
                self._logger.info(
                    "sync_batch_applied",
                    batch=result.batches,
                    records=len(batch.records),
                    cursor=str(cursor),
                )

                if next_cursor is None:
                    break

            result.final_cursor = cursor

        result.duration_ms = int((time.perf_counter() - started) * 1000)
        self._logger.info(
            "sync_completed",
            batches=result.batches,
            records_applied=result.records_applied,
            duration_ms=result.duration_ms,
        )
        return result

    async def _fetch(self, cursor: Cursor | None) -> SyncBatch:
        if self._executor is None:
            return await self.source.fetch(cursor)
        return await self._executor.execute(
            lambda: self.source.fetch(cursor),
            bucket=self._bucket,
            attempts=self.attempts,
            operation_name=f"sync_fetch:{self.source_name}",
        )

    async def _apply(self, batch: SyncBatch) -> None:
        if self._executor is None:
            await self.sink.upsert(batch.records)
            return
        await self._executor.execute(
            lambda: self.sink.upsert(batch.records),
            attempts=self.attempts,
            operation_name=f"sync_upsert:{self.source_name}",
        )
