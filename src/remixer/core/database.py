"""SQLite storage for generations and the generation queue.

Both repositories share one :class:`Database`.  Every repository method runs
inside :meth:`Database.transaction`; when a caller already holds a
transaction on the same thread, the repository call joins it instead of
opening a new one.  That is how a batch submission creates N generation rows
and N queue rows as a single atomic unit.
"""

import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS generations (
        id TEXT PRIMARY KEY,
        prompt_json TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        image_path TEXT,
        error_message TEXT,
        api_response_text TEXT,
        reference_photo_ids TEXT,
        components_used TEXT,
        inline_reference_paths TEXT,
        parent_id TEXT REFERENCES generations(id) ON DELETE SET NULL,
        edit_instructions TEXT,
        is_favorite INTEGER NOT NULL DEFAULT 0,
        is_hidden INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generations_created
    ON generations(created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generations_parent
    ON generations(parent_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS generation_queue (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        generation_id TEXT NOT NULL REFERENCES generations(id) ON DELETE CASCADE,
        prompt_json TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        reference_photo_ids TEXT,
        inline_reference_paths TEXT,
        google_search INTEGER NOT NULL DEFAULT 0,
        safety_override INTEGER NOT NULL DEFAULT 0,
        remix_source_id TEXT,
        remix_mode TEXT,
        edit_instructions TEXT,
        error TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_queue_status
    ON generation_queue(status, created_at, seq)
    """,
)


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string that sorts lexically."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def utc_ago(seconds: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat(
        timespec="microseconds"
    )


def generate_id() -> str:
    return str(uuid.uuid4())


class Database:
    """Shared SQLite handle with thread-scoped transactions.

    Each thread gets its own connection for the lifetime of a transaction.
    ``BEGIN IMMEDIATE`` takes the write lock up front, so a read followed by
    a conditional update inside one transaction cannot interleave with
    another writer.
    """

    def __init__(self, db_path: str | Path):
        """Open (or create) the database and ensure the schema exists.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._initialize_db()
        logger.info(f"Initialized generation database at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically.

        Commits when the block exits normally and rolls back on any
        exception.  Nested calls on the same thread reuse the outer
        connection, so the outermost block decides the outcome.

        Yields:
            The connection to execute statements on
        """
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return

        conn = self._connect()
        self._local.conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            self._local.conn = None
            conn.close()

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread currently holds a transaction."""
        return getattr(self._local, "conn", None) is not None
