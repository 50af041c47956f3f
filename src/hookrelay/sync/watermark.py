"""Durable per-source sync cursors.

A watermark marks the last point of a source feed that has been durably
applied downstream. Callers fetch records past the watermark, apply the
whole batch, and only then advance it, so a crash in between replays the
batch instead of skipping it.

Cursors are either timestamps, which only ever move forward, or opaque
continuation tokens defined by the source, which are accepted as given.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel

from hookrelay.errors import SyncInProgressError, WatermarkRegressionError
from hookrelay.storage import (
    BUSY_TIMEOUT_SECONDS,
    Clock,
    SQLiteStore,
    from_db_time,
    to_db_time,
    utc_now,
)

Cursor = datetime | str

CURSOR_KIND_TIMESTAMP = "timestamp"
CURSOR_KIND_TOKEN = "token"

DEFAULT_LEASE_SECONDS = 600.0
DEFAULT_LOCK_WAIT_SECONDS = 30.0
LEASE_POLL_INTERVAL_SECONDS = 0.5


class SyncWatermark(BaseModel):
    """Stored cursor for one source."""

    source_name: str
    cursor: Cursor
    updated_at: datetime


def _normalize_cursor(cursor: Cursor) -> Cursor:
    if isinstance(cursor, datetime):
        if cursor.tzinfo is None:
            return cursor.replace(tzinfo=UTC)
        return cursor.astimezone(UTC)
    if isinstance(cursor, str):
        return cursor
    raise TypeError(f"Cursor must be a datetime or str, got {type(cursor).__name__}")


def _encode_cursor(cursor: Cursor) -> tuple[str, str]:
    if isinstance(cursor, datetime):
        return to_db_time(cursor), CURSOR_KIND_TIMESTAMP
    return cursor, CURSOR_KIND_TOKEN


def _decode_cursor(value: str, kind: str) -> Cursor:
    if kind == CURSOR_KIND_TIMESTAMP:
        return from_db_time(value)
    return value


class WatermarkTracker(SQLiteStore):
    """SQLite-backed watermarks with a per-source run lease.

    Example:
        tracker = WatermarkTracker("data/hookrelay.db")

        async with tracker.lock("orders"):
            cursor = await tracker.get_watermark("orders")
            batch = await source.fetch(cursor)
            await sink.upsert(batch.records)
            await tracker.advance_watermark("orders", batch.next_cursor)
    """

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS sync_watermarks (
            source_name TEXT PRIMARY KEY,
            cursor TEXT NOT NULL,
            cursor_kind TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS sync_leases (
            source_name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """,
    )

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        busy_timeout: float = BUSY_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(db_path, busy_timeout=busy_timeout, clock=clock)
        self._local_locks: dict[str, asyncio.Lock] = {}

    async def get_watermark(
        self,
        source_name: str,
        default: Cursor | None = None,
    ) -> Cursor | None:
        """Get the current cursor for a source.

        Args:
            source_name: Synchronized feed name.
            default: Returned when the source has never advanced.

        Returns:
            The stored cursor, or ``default``.
        """
        record = await self.get(source_name)
        if record is None:
            return default
        return record.cursor

    async def get(self, source_name: str) -> SyncWatermark | None:
        """Get the full watermark record for a source."""
        await self._ensure_initialized()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            return await self._fetch(db, source_name)

    async def advance_watermark(self, source_name: str, new_cursor: Cursor) -> SyncWatermark:
        """Move the cursor forward after a batch has been applied.

        Timestamp cursors never move backwards: an equal timestamp is a
        no-op and an earlier one is rejected. Token cursors are stored as
        given because only the source can order them.

        Args:
            source_name: Synchronized feed name.
            new_cursor: Highest cursor observed in the applied batch.

        Returns:
            The stored watermark.

        Raises:
            WatermarkRegressionError: If a timestamp cursor would move back.
        """
        cursor = _normalize_cursor(new_cursor)
        value, kind = _encode_cursor(cursor)

        await self._ensure_initialized()
        now_s = to_db_time(self._clock())

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            current = await self._fetch(db, source_name)

            if (
                current is not None
                and isinstance(current.cursor, datetime)
                and isinstance(cursor, datetime)
            ):
                if cursor < current.cursor:
                    await db.rollback()
                    raise WatermarkRegressionError(
                        f"Watermark for {source_name} cannot move from "
                        f"{current.cursor.isoformat()} back to {cursor.isoformat()}",
                        details={
                            "source_name": source_name,
                            "current": current.cursor.isoformat(),
                            "attempted": cursor.isoformat(),
                        },
                    )
                if cursor == current.cursor:
                    await db.rollback()
                    return current

            await db.execute(
                """
                INSERT INTO sync_watermarks (source_name, cursor, cursor_kind, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(source_name) DO UPDATE SET
                    cursor = excluded.cursor,
                    cursor_kind = excluded.cursor_kind,
                    updated_at = excluded.updated_at
                """,
                (source_name, value, kind, now_s),
            )
            record = await self._fetch(db, source_name)
            await db.commit()

        if record is None:
            raise RuntimeError(f"Watermark for {source_name} vanished during advance")

        self._logger.info(
            "watermark_advanced",
            source_name=source_name,
            cursor=value,
            cursor_kind=kind,
        )
        return record

    async def reset(self, source_name: str) -> bool:
        """Forget a source's cursor so the next run starts from scratch.

        Returns:
            True if a watermark was deleted.
        """
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM sync_watermarks WHERE source_name = ?", (source_name,)
            )
            deleted = cursor.rowcount > 0
            await db.commit()

        if deleted:
            self._logger.warning("watermark_reset", source_name=source_name)
        return deleted

    # =========================================================================
    # Per-source run lease
    # =========================================================================

    @asynccontextmanager
    async def lock(
        self,
        source_name: str,
        *,
        holder: str | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        wait_seconds: float = DEFAULT_LOCK_WAIT_SECONDS,
    ) -> AsyncIterator[str]:
        """Hold the single active sync run for a source.

        Serializes runs within this process with an ``asyncio.Lock`` and
        across processes with a lease row. A lease left behind by a crashed
        process expires after ``lease_seconds``; runs that may take longer
        call ``renew_lease`` with the yielded holder.

        Args:
            source_name: Synchronized feed name.
            holder: Lease owner identifier (random if not provided).
            lease_seconds: Lease lifetime.
            wait_seconds: Longest wait for another run to finish.

        Yields:
            The holder identifier.

        Raises:
            SyncInProgressError: If the lease could not be taken in time.
        """
        holder = holder or f"run_{uuid.uuid4().hex[:12]}"
        local = self._local_locks.setdefault(source_name, asyncio.Lock())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds

        try:
            await asyncio.wait_for(local.acquire(), timeout=max(wait_seconds, 0))
        except TimeoutError:
            raise SyncInProgressError(source_name) from None

        try:
            while True:
                taken, current_holder = await self._try_take_lease(
                    source_name, holder, lease_seconds
                )
                if taken:
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self._logger.warning(
                        "sync_lease_busy",
                        source_name=source_name,
                        holder=current_holder,
                    )
                    raise SyncInProgressError(source_name, current_holder)
                await asyncio.sleep(min(LEASE_POLL_INTERVAL_SECONDS, remaining))

            self._logger.debug("sync_lease_acquired", source_name=source_name, holder=holder)
            try:
                yield holder
            finally:
                await self._release_lease(source_name, holder)
                self._logger.debug(
                    "sync_lease_released", source_name=source_name, holder=holder
                )
        finally:
            local.release()

    async def _try_take_lease(
        self,
        source_name: str,
        holder: str,
        lease_seconds: float,
    ) -> tuple[bool, str | None]:
        await self._ensure_initialized()
        now = self._clock()
        now_s = to_db_time(now)
        expires_s = to_db_time(now + timedelta(seconds=lease_seconds))

        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO sync_leases (source_name, holder, expires_at)
                VALUES (?, ?, ?)
                """,
                (source_name, holder, expires_s),
            )
            taken = cursor.rowcount == 1
            if not taken:
                cursor = await db.execute(
                    """
                    UPDATE sync_leases SET holder = ?, expires_at = ?
                    WHERE source_name = ? AND expires_at < ?
                    """,
                    (holder, expires_s, source_name, now_s),
                )
                taken = cursor.rowcount == 1

            current_holder: str | None = holder
            if not taken:
                async with db.execute(
                    "SELECT holder FROM sync_leases WHERE source_name = ?", (source_name,)
                ) as rows:
                    row = await rows.fetchone()
                current_holder = row[0] if row else None
            await db.commit()

        return taken, current_holder

    async def renew_lease(
        self,
        source_name: str,
        holder: str,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ) -> None:
        """Extend a held lease before it expires.

        Long runs call this between batches so the lease outlives the run.

        Raises:
            SyncInProgressError: If the lease expired and another run took it.
        """
        await self._ensure_initialized()
        expires_s = to_db_time(self._clock() + timedelta(seconds=lease_seconds))

        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE sync_leases SET expires_at = ?
                WHERE source_name = ? AND holder = ?
                """,
                (expires_s, source_name, holder),
            )
            renewed = cursor.rowcount == 1
            current_holder: str | None = holder
            if not renewed:
                async with db.execute(
                    "SELECT holder FROM sync_leases WHERE source_name = ?", (source_name,)
                ) as rows:
                    row = await rows.fetchone()
                current_holder = row[0] if row else None
            await db.commit()

        if not renewed:
            self._logger.error(
                "sync_lease_lost",
                source_name=source_name,
                holder=holder,
                current_holder=current_holder,
            )
            raise SyncInProgressError(source_name, current_holder)

    async def _release_lease(self, source_name: str, holder: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM sync_leases WHERE source_name = ? AND holder = ?",
                (source_name, holder),
            )
            await db.commit()

    @staticmethod
    async def _fetch(db: Any, source_name: str) -> SyncWatermark | None:
        async with db.execute(
            "SELECT * FROM sync_watermarks WHERE source_name = ?", (source_name,)
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None

        return SyncWatermark(
            source_name=row["source_name"],
            cursor=_decode_cursor(row["cursor"], row["cursor_kind"]),
            updated_at=from_db_time(row["updated_at"]),
        )
