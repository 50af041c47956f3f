"""Durable idempotency store.

Deduplicates inbound events by idempotency key so that redelivered webhooks
never re-apply side effects. Records survive restarts because redelivery
often follows a crash.

Lifecycle of a key::

    (absent) --reserve--> pending --complete--> succeeded | failed

A pending reservation older than ``pending_ttl`` is treated as abandoned by
a crashed worker and may be reclaimed by the next delivery.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from hookrelay.errors import IdempotencyConflictError
from hookrelay.storage import (
    BUSY_TIMEOUT_SECONDS,
    Clock,
    SQLiteStore,
    from_db_time,
    to_db_time,
    utc_now,
)


DEFAULT_PENDING_TTL = timedelta(minutes=15)


class IdempotencyOutcome(str, Enum):
    """Processing state recorded for a key."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class IdempotencyRecord(BaseModel):
    """Stored state for one idempotency key."""

    key: str
    outcome: IdempotencyOutcome
    first_seen_at: datetime
    last_seen_at: datetime
    reserved_at: datetime
    result: dict[str, Any] | None = Field(
        default=None,
        description="Result summary replayed to later duplicate deliveries",
    )

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not IdempotencyOutcome.PENDING


@dataclass(frozen=True)
class Reservation:
    """Result of ``IdempotencyStore.reserve``.

    Attributes:
        is_new: True when the caller owns the key and must process the event.
        record: Current stored record for the key.
        reclaimed: True when an abandoned pending reservation was taken over.
    """

    is_new: bool
    record: IdempotencyRecord
    reclaimed: bool = False

    @property
    def in_flight(self) -> bool:
        """Another worker is processing this key right now."""
        return not self.is_new and self.record.outcome is IdempotencyOutcome.PENDING

    @property
    def completed(self) -> bool:
        """The key already reached a terminal outcome."""
        return not self.is_new and self.record.is_terminal


class IdempotencyStore(SQLiteStore):
    """SQLite-backed idempotency records.

    ``reserve`` and ``complete`` each run in a single ``BEGIN IMMEDIATE``
    transaction, so concurrent callers in any number of processes see a
    consistent compare-and-set.
    """

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS idempotency_records (
            key TEXT PRIMARY KEY,
            outcome TEXT NOT NULL,
            first_seen_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL,
            reserved_at TEXT NOT NULL,
            result_json TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_idempotency_last_seen
        ON idempotency_records(last_seen_at)
        """,
    )

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        pending_ttl: timedelta | None = DEFAULT_PENDING_TTL,
        busy_timeout: float = BUSY_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database.
            pending_ttl: Age after which a pending reservation may be
                reclaimed. None disables reclamation.
            busy_timeout: Seconds to wait for another writer's lock.
            clock: Source of the current time.
        """
        super().__init__(db_path, busy_timeout=busy_timeout, clock=clock)
        self._pending_ttl = pending_ttl

    async def reserve(self, key: str) -> Reservation:
        """Atomically claim a key for processing.

        Args:
            key: Idempotency key.

        Returns:
            Reservation; ``is_new`` is True only for the caller that must
            process the event.
        """
        await self._ensure_initialized()
        now = self._clock()
        now_s = to_db_time(now)
        reclaimed = False

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO idempotency_records
                    (key, outcome, first_seen_at, last_seen_at, reserved_at, result_json)
                VALUES (?, ?, ?, ?, ?, NULL)
                """,
                (key, IdempotencyOutcome.PENDING.value, now_s, now_s, now_s),
            )
            is_new = cursor.rowcount == 1

            if not is_new and self._pending_ttl is not None:
                cutoff = to_db_time(now - self._pending_ttl)
                cursor = await db.execute(
                    """
                    UPDATE idempotency_records
                    SET reserved_at = ?, last_seen_at = ?
                    WHERE key = ? AND outcome = ? AND reserved_at < ?
                    """,
                    (now_s, now_s, key, IdempotencyOutcome.PENDING.value, cutoff),
                )
                reclaimed = cursor.rowcount == 1
                is_new = reclaimed

            if not is_new:
                await db.execute(
                    "UPDATE idempotency_records SET last_seen_at = ? WHERE key = ?",
                    (now_s, key),
                )

            record = await self._fetch(db, key)
            await db.commit()

        if record is None:
            raise RuntimeError(f"Idempotency record for {key} vanished during reserve")

        if reclaimed:
            self._logger.warning("idempotency_pending_reclaimed", key=key)
        elif is_new:
            self._logger.debug("idempotency_reserved", key=key)
        else:
            self._logger.info(
                "idempotency_duplicate",
                key=key,
                outcome=record.outcome.value,
            )

        return Reservation(is_new=is_new, record=record, reclaimed=reclaimed)

    async def complete(
        self,
        key: str,
        outcome: IdempotencyOutcome,
        result: dict[str, Any] | None = None,
    ) -> IdempotencyRecord:
        """Record the terminal outcome for a reserved key.

        Completing again with the same outcome is a no-op; a different
        terminal outcome is rejected.

        Args:
            key: Idempotency key.
            outcome: SUCCEEDED or FAILED.
            result: Optional summary replayed to later duplicates.

        Returns:
            The stored record.

        Raises:
            ValueError: If ``outcome`` is PENDING.
            IdempotencyConflictError: If the key was never reserved or
                already holds a different terminal outcome.
        """
        if outcome is IdempotencyOutcome.PENDING:
            raise ValueError("complete() requires a terminal outcome")

        await self._ensure_initialized()
        now_s = to_db_time(self._clock())

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            current = await self._fetch(db, key)

            if current is None:
                await db.rollback()
                raise IdempotencyConflictError(key, "unreserved", outcome.value)

            if current.outcome is IdempotencyOutcome.PENDING:
                await db.execute(
                    """
                    UPDATE idempotency_records
                    SET outcome = ?, last_seen_at = ?, result_json = ?
                    WHERE key = ? AND outcome = ?
                    """,
                    (
                        outcome.value,
                        now_s,
                        json.dumps(result, default=str) if result is not None else None,
                        key,
                        IdempotencyOutcome.PENDING.value,
                    ),
                )
                record = await self._fetch(db, key)
                await db.commit()
            elif current.outcome is outcome:
                await db.rollback()
                return current
            else:
                await db.rollback()
                raise IdempotencyConflictError(key, current.outcome.value, outcome.value)

        if record is None:
            raise RuntimeError(f"Idempotency record for {key} vanished during complete")

        self._logger.info("idempotency_completed", key=key, outcome=outcome.value)
        return record

    async def get(self, key: str) -> IdempotencyRecord | None:
        """Get the record for a key.

        Args:
            key: Idempotency key.

        Returns:
            Record or None if the key was never reserved.
        """
        await self._ensure_initialized()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            return await self._fetch(db, key)

    async def prune(self, older_than: datetime) -> int:
        """Delete terminal records not seen since ``older_than``.

        Pending records are never pruned.

        Returns:
            Number of records deleted.
        """
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM idempotency_records WHERE outcome != ? AND last_seen_at < ?",
                (IdempotencyOutcome.PENDING.value, to_db_time(older_than)),
            )
            deleted = cursor.rowcount
            await db.commit()

        self._logger.info("idempotency_pruned", deleted=deleted)
        return deleted

    @staticmethod
    async def _fetch(db: Any, key: str) -> IdempotencyRecord | None:
        async with db.execute(
            "SELECT * FROM idempotency_records WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None

        return IdempotencyRecord(
            key=row["key"],
            outcome=IdempotencyOutcome(row["outcome"]),
            first_seen_at=from_db_time(row["first_seen_at"]),
            last_seen_at=from_db_time(row["last_seen_at"]),
            reserved_at=from_db_time(row["reserved_at"]),
            result=json.loads(row["result_json"]) if row["result_json"] else None,
        )
