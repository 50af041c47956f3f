"""Shared SQLite plumbing for the durable stores.

The idempotency, watermark and outcome stores all live in one SQLite file.
SQLite serializes writers across processes, which is what makes the
compare-and-set style updates in each store atomic. Every connection uses a
bounded busy timeout so a writer waits for the lock at most that long.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_DB_PATH = Path("data/hookrelay.db")

# Longest a connection waits for another writer's lock
BUSY_TIMEOUT_SECONDS = 5.0

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    """Serialize a datetime so that string order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    """Parse a timestamp written by ``to_db_time``."""
    return datetime.fromisoformat(value)


class SQLiteStore:
    """Base class for a store backed by the shared SQLite file.

    Subclasses list their DDL in ``SCHEMA``; tables are created lazily on
    first use.
    """

    SCHEMA: tuple[str, ...] = ()

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        busy_timeout: float = BUSY_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database. Uses default if not provided.
            busy_timeout: Seconds to wait for another writer's lock.
            clock: Source of the current time.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._busy_timeout = busy_timeout
        self._clock = clock
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._logger = logger.bind(component=type(self).__name__)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self._busy_timeout)

    async def _ensure_initialized(self) -> None:
        """Ensure database tables exist."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL")
                for statement in self.SCHEMA:
                    await db.execute(statement)
                await db.commit()

            self._initialized = True
            self._logger.debug("storage_initialized", db_path=str(self.db_path))

    async def ping(self) -> bool:
        """Check that the database can be reached.

        Returns:
            True if a trivial query succeeds.
        """
        try:
            await self._ensure_initialized()
            async with self._connect() as db:
                async with db.execute("SELECT 1") as cursor:
                    row = await cursor.fetchone()
            return row is not None
        except (OSError, aiosqlite.Error) as e:
            self._logger.warning("storage_ping_failed", error=str(e))
            return False
