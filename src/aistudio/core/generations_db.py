"""SQLite store for generation records."""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from aistudio.core.errors import NotInitialized, StoreUnavailable

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 50
DEFAULT_LIST_LIMIT = 5

# Store-side clock: UTC, millisecond resolution, ISO 8601 with offset.
_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')"


class GenerationStatus(str, Enum):
    """Lifecycle state of a generation."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class GenerationRecord:
    """One row of the ``generations`` table."""

    id: int
    user_id: int
    prompt: str
    style: str
    image_ref: str | None
    status: GenerationStatus
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "GenerationRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            prompt=row["prompt"],
            style=row["style"],
            image_ref=row["image_ref"],
            status=GenerationStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


def clamp_limit(limit: int | None, default: int = DEFAULT_LIST_LIMIT, maximum: int = MAX_LIST_LIMIT) -> int:
    """Clamp a requested page size to ``[1, maximum]``."""
    if limit is None:
        limit = default
    return max(1, min(int(limit), maximum))


class GenerationsDB:
    """Generation records backed by a single SQLite connection.

    The store has an explicit lifecycle: :meth:`open` creates the schema and
    the connection, :meth:`close` releases it.  Every other method raises
    :class:`NotInitialized` outside that window.  Writes are committed before
    the method returns.

    Example::

        with GenerationsDB(path) as db:
            gen_id, created_at = db.insert(1, "a cat", "Classic", "1/abc.jpg", "succeeded")
            recent = db.list_recent(1)
    """

    def __init__(self, db_path: Path | str):
        """Initialize the store without opening it.

        Args:
            db_path: Path to the SQLite database file, or ``":memory:"``.
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    # -- Lifecycle ----------------------------------------------------------

    def open(self) -> "GenerationsDB":
        """Open the connection and create the schema if it doesn't exist."""
        if self._conn is not None:
            return self

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")

        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS generations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                prompt TEXT NOT NULL,
                style TEXT NOT NULL,
                image_ref TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT ({_NOW_SQL})
            )
            """)

        # Recent-history queries are always per user, newest first.
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_generations_user_created
            ON generations(user_id, created_at DESC, id DESC)
            """)
        conn.commit()

        self._conn = conn
        logger.info(f"Opened generations database at {self.db_path}")
        return self

    def close(self) -> None:
        """Close the connection.  Safe to call more than once."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Closed generations database")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "GenerationsDB":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise NotInitialized("Generations store used before open()")
        return self._conn

    # -- Writes -------------------------------------------------------------

    def insert(
        self,
        user_id: int,
        prompt: str,
        style: str,
        image_ref: str | None,
        status: GenerationStatus | str,
    ) -> tuple[int, datetime]:
        """Insert a generation and return its store-assigned id and timestamp.

        Raises:
            NotInitialized: If the store is not open.
            ValueError: If *status* is not a valid :class:`GenerationStatus`.
            StoreUnavailable: If SQLite fails the write.
        """
        status = GenerationStatus(status)

        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO generations (user_id, prompt, style, image_ref, status)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, prompt, style, image_ref, status.value),
                )
                gen_id = cursor.lastrowid
                row = conn.execute(
                    "SELECT created_at FROM generations WHERE id = ?", (gen_id,)
                ).fetchone()
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                logger.error(f"Error inserting generation for user {user_id}: {e}")
                raise StoreUnavailable(str(e)) from e

        return gen_id, datetime.fromisoformat(row["created_at"])

    # -- Reads --------------------------------------------------------------

    def list_recent(self, user_id: int, limit: int | None = DEFAULT_LIST_LIMIT) -> list[GenerationRecord]:
        """Return a user's generations, newest first.

        Ties on ``created_at`` are broken by descending id.  *limit* is
        clamped to ``[1, 50]``.
        """
        limit = clamp_limit(limit)
        with self._lock:
            rows = self._connection().execute(
                """
                SELECT id, user_id, prompt, style, image_ref, status, created_at
                FROM generations
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [GenerationRecord.from_row(row) for row in rows]

    def get(self, generation_id: int, user_id: int) -> GenerationRecord | None:
        """Return one generation if it belongs to *user_id*."""
        with self._lock:
            row = self._connection().execute(
                """
                SELECT id, user_id, prompt, style, image_ref, status, created_at
                FROM generations
                WHERE id = ? AND user_id = ?
                """,
                (generation_id, user_id),
            ).fetchone()
        return GenerationRecord.from_row(row) if row else None

    def count(self, user_id: int | None = None) -> int:
        """Count generations, optionally for one user."""
        with self._lock:
            conn = self._connection()
            if user_id is None:
                row = conn.execute("SELECT COUNT(*) FROM generations").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM generations WHERE user_id = ?", (user_id,)
                ).fetchone()
        return row[0] if row else 0
