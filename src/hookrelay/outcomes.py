"""Outcome records: the audit trail of every finished operation.

Exactly one record exists per operation id. ``notified_channels`` tracks
which channels have already delivered the outcome so that re-running the
router never alerts a channel twice.
"""

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from hookrelay.storage import (
    BUSY_TIMEOUT_SECONDS,
    Clock,
    SQLiteStore,
    from_db_time,
    to_db_time,
    utc_now,
)


class OutcomeStatus(str, Enum):
    """Terminal status of an operation."""

    SUCCESS = "success"
    ERROR = "error"


class OutcomeRecord(BaseModel):
    """Recorded outcome of one operation."""

    operation_id: str = Field(description="Stable id of the event or sync run")
    status: OutcomeStatus
    detail: dict[str, Any] = Field(
        default_factory=dict,
        description="Counts, error class, duration and retry context",
    )
    notified_channels: set[str] = Field(default_factory=set)
    created_at: datetime
    updated_at: datetime

    @property
    def error_class(self) -> str | None:
        return self.detail.get("error_class")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        data = self.model_dump(mode="json")
        data["notified_channels"] = sorted(self.notified_channels)
        return data


class OutcomeStore(SQLiteStore):
    """SQLite-backed outcome records."""

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS outcome_records (
            operation_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            detail_json TEXT NOT NULL,
            notified_channels_json TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_outcome_created
        ON outcome_records(created_at)
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

    async def record(
        self,
        operation_id: str,
        status: OutcomeStatus,
        detail: dict[str, Any] | None = None,
    ) -> tuple[OutcomeRecord, bool]:
        """Record an operation's outcome once.

        A second call for the same operation id leaves the stored record
        untouched and returns it.

        Args:
            operation_id: Operation id.
            status: Terminal status.
            detail: Structured summary.

        Returns:
            Tuple of (stored record, whether this call created it).
        """
        await self._ensure_initialized()
        now_s = to_db_time(self._clock())

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO outcome_records
                    (operation_id, status, detail_json, notified_channels_json,
                     created_at, updated_at)
                VALUES (?, ?, ?, '[]', ?, ?)
                """,
                (
                    operation_id,
                    status.value,
                    json.dumps(detail or {}, default=str),
                    now_s,
                    now_s,
                ),
            )
            created = cursor.rowcount == 1
            stored = await self._fetch(db, operation_id)
            await db.commit()

        if stored is None:
            raise RuntimeError(f"Outcome {operation_id} vanished during record")

        if created:
            self._logger.info(
                "outcome_recorded",
                operation_id=operation_id,
                status=status.value,
            )
        else:
            self._logger.info(
                "outcome_already_recorded",
                operation_id=operation_id,
                status=stored.status.value,
            )
        return stored, created

    async def get(self, operation_id: str) -> OutcomeRecord | None:
        """Get an outcome by operation id."""
        await self._ensure_initialized()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            return await self._fetch(db, operation_id)

    async def mark_notified(self, operation_id: str, channel: str) -> OutcomeRecord:
        """Add a channel to the record's notified set.

        Raises:
            KeyError: If the operation has no outcome.
        """
        await self._ensure_initialized()
        now_s = to_db_time(self._clock())

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            current = await self._fetch(db, operation_id)
            if current is None:
                await db.rollback()
                raise KeyError(f"No outcome recorded for {operation_id}")

            if channel not in current.notified_channels:
                channels = sorted(current.notified_channels | {channel})
                await db.execute(
                    """
                    UPDATE outcome_records
                    SET notified_channels_json = ?, updated_at = ?
                    WHERE operation_id = ?
                    """,
                    (json.dumps(channels), now_s, operation_id),
                )
                current = await self._fetch(db, operation_id)
            await db.commit()

        if current is None:
            raise RuntimeError(f"Outcome {operation_id} vanished during mark_notified")
        return current

    async def list_recent(
        self,
        *,
        status: OutcomeStatus | None = None,
        limit: int = 50,
    ) -> list[OutcomeRecord]:
        """List the most recent outcomes, newest first."""
        await self._ensure_initialized()
        query = "SELECT * FROM outcome_records"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        return [self._from_row(row) for row in rows]

    async def prune(self, older_than: datetime) -> int:
        """Delete outcomes created before ``older_than``.

        Returns:
            Number of records deleted.
        """
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM outcome_records WHERE created_at < ?",
                (to_db_time(older_than),),
            )
            deleted = cursor.rowcount
            await db.commit()

        self._logger.info("outcomes_pruned", deleted=deleted)
        return deleted

    @classmethod
    async def _fetch(cls, db: Any, operation_id: str) -> OutcomeRecord | None:
        async with db.execute(
            "SELECT * FROM outcome_records WHERE operation_id = ?", (operation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return cls._from_row(row) if row is not None else None

    @staticmethod
    def _from_row(row: Any) -> OutcomeRecord:
        return OutcomeRecord(
            operation_id=row["operation_id"],
            status=OutcomeStatus(row["status"]),
            detail=json.loads(row["detail_json"]),
            notified_channels=set(json.loads(row["notified_channels_json"])),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )
