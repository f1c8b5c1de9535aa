"""Mutation queue - durable log of local writes not yet confirmed remotely."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from ..config import Config, MAX_QUEUE_SIZE

logger = logging.getLogger(__name__)

# Fraction of the soft limit at which the queue reports itself near capacity
NEAR_CAPACITY_RATIO = 0.8

_COLUMNS = (
    "entity_type, entity_id, operation, payload, base_version, "
    "created_at, attempts, last_error, seq"
)


class MutationOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class MutationQueueEntry:
    """One pending local intent for one entity.

    ``payload`` is the full desired state after the mutation, not a diff.
    ``base_version`` is the remote version the write was based on.
    """

    entity_type: str
    entity_id: str
    operation: MutationOperation
    payload: dict
    base_version: Any = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    last_error: Optional[str] = None
    seq: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.entity_id)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MutationQueueEntry":
        """Create from database row."""
        return cls(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=MutationOperation(row["operation"]),
            payload=json.loads(row["payload"]),
            base_version=row["base_version"],
            created_at=datetime.fromisoformat(row["created_at"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            seq=row["seq"],
        )


@dataclass
class DeadLetter:
    """A mutation taken out of the retry loop."""

    entry: MutationQueueEntry
    reason: str
    dead_lettered_at: datetime


def _coalesce(
    existing: Optional[MutationQueueEntry], new_op: MutationOperation
) -> Optional[MutationOperation]:
    """Operation to queue when ``new_op`` lands on top of ``existing``.

    None means the two cancel out: an entity created and deleted before it
    ever reached the server needs no remote call at all.
    """
    if existing is None or existing.operation is not MutationOperation.CREATE:
        return new_op
    if new_op is MutationOperation.DELETE:
        return None
    return MutationOperation.CREATE


class MutationQueue:
    """SQLite-based queue holding at most one entry per entity."""

    def __init__(self, db_path: Optional[Path] = None, soft_limit: int = MAX_QUEUE_SIZE):
        """Initialize the mutation queue.

        Args:
            db_path: Path to SQLite database file
            soft_limit: Size at which the queue starts warning (never evicts)
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "offline_cache.db"

        self.db_path = db_path
        self.soft_limit = soft_limit
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            self._local.connection = sqlite3.connect(str(self.db_path))
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for a cursor; one transaction per block."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS mutation_queue (
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    base_version,
                    created_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    seq INTEGER NOT NULL,
                    PRIMARY KEY (entity_type, entity_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS dead_letters (
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    base_version,
                    created_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    seq INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    dead_lettered_at TEXT NOT NULL,
                    PRIMARY KEY (entity_type, entity_id)
                )
                """
            )

    def _next_seq(self, cursor: sqlite3.Cursor) -> int:
        cursor.execute(
            """
            SELECT COALESCE(MAX(seq), 0) + 1 FROM (
                SELECT seq FROM mutation_queue
                UNION ALL
                SELECT seq FROM dead_letters
            )
            """
        )
        return cursor.fetchone()[0]

    def _fetch(
        self, cursor: sqlite3.Cursor, entity_type: str, entity_id: str
    ) -> Optional[MutationQueueEntry]:
        cursor.execute(
            f"""
            SELECT {_COLUMNS} FROM mutation_queue
            WHERE entity_type = ? AND entity_id = ?
            """,
            (entity_type, entity_id),
        )
        row = cursor.fetchone()
        return MutationQueueEntry.from_row(row) if row else None

    def enqueue(self, entry: MutationQueueEntry) -> Optional[MutationQueueEntry]:
        """Insert an entry, replacing any pending entry for the same entity.

        The stored entry starts with ``attempts=0`` and no error. A pending
        create stays a create (with the new payload) and keeps its base
        version; a create followed by a delete removes the entry.

        Returns:
            The entry as stored, or None if the writes cancelled out
        """
        with self._cursor() as cursor:
            existing = self._fetch(cursor, entry.entity_type, entry.entity_id)
            operation = _coalesce(existing, MutationOperation(entry.operation))

            if operation is None:
                cursor.execute(
                    "DELETE FROM mutation_queue WHERE entity_type = ? AND entity_id = ?",
                    entry.key,
                )
                logger.debug(
                    f"Dropped pending create for {entry.entity_type}/{entry.entity_id}"
                )
                return None

            stored = MutationQueueEntry(
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                operation=operation,
                payload=entry.payload,
                base_version=existing.base_version if existing else entry.base_version,
                created_at=entry.created_at,
                attempts=0,
                last_error=None,
                seq=self._next_seq(cursor),
            )
            cursor.execute(
                f"""
                INSERT OR REPLACE INTO mutation_queue ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?)
                """,
                (
                    stored.entity_type,
                    stored.entity_id,
                    stored.operation.value,
                    json.dumps(stored.payload),
                    stored.base_version,
                    stored.created_at.isoformat(),
                    stored.seq,
                ),
            )

        size = self.size()
        if size >= self.soft_limit * NEAR_CAPACITY_RATIO:
            logger.warning(f"Mutation queue at {size}/{self.soft_limit} entries")
        return stored

    def peek_all(self) -> list[MutationQueueEntry]:
        """All pending entries, in the order they were last written."""
        with self._cursor() as cursor:
            cursor.execute(f"SELECT {_COLUMNS} FROM mutation_queue ORDER BY seq ASC")
            return [MutationQueueEntry.from_row(row) for row in cursor.fetchall()]

    def get(self, entity_type: str, entity_id: str) -> Optional[MutationQueueEntry]:
        """The pending entry for one entity, if any."""
        with self._cursor() as cursor:
            return self._fetch(cursor, entity_type, entity_id)

    def remove(self, entity_type: str, entity_id: str, seq: Optional[int] = None) -> bool:
        """Remove the entry for an entity after its push was confirmed.

        With ``seq``, the entry is only removed if it was not replaced since
        it was read; a newer local write must survive a confirmation of the
        older one.
        """
        sql = "DELETE FROM mutation_queue WHERE entity_type = ? AND entity_id = ?"
        params: tuple = (entity_type, entity_id)
        if seq is not None:
            sql += " AND seq = ?"
            params += (seq,)
        with self._cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.rowcount > 0

    def record_failure(self, entity_type: str, entity_id: str, error: str) -> None:
        """Count a failed push attempt; the entry stays queued."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE mutation_queue
                SET attempts = attempts + 1, last_error = ?
                WHERE entity_type = ? AND entity_id = ?
                """,
                (error, entity_type, entity_id),
            )

    def rekey(
        self,
        entity_type: str,
        old_id: str,
        new_id: str,
        operation: MutationOperation,
        base_version: Any,
    ) -> Optional[MutationQueueEntry]:
        """Re-base a pending entry on a confirmed write of its entity.

        Used when a push is confirmed while a newer write for the same
        entity is already queued: the entry moves to the server-assigned id
        (a no-op move when the id did not change) and takes the confirmed
        version as its base.
        """
        with self._cursor() as cursor:
            entry = self._fetch(cursor, entity_type, old_id)
            if entry is None:
                return None
            payload = dict(entry.payload)
            if "id" in payload:
                payload["id"] = new_id
            cursor.execute(
                "DELETE FROM mutation_queue WHERE entity_type = ? AND entity_id = ?",
                (entity_type, old_id),
            )
            cursor.execute(
                f"""
                INSERT OR REPLACE INTO mutation_queue ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entity_type,
                    new_id,
                    MutationOperation(operation).value,
                    json.dumps(payload),
                    base_version,
                    entry.created_at.isoformat(),
                    entry.attempts,
                    entry.last_error,
                    entry.seq,
                ),
            )
            return self._fetch(cursor, entity_type, new_id)

    # Dead letters

    def dead_letter(
        self, entity_type: str, entity_id: str, reason: str, seq: Optional[int] = None
    ) -> bool:
        """Move an entry out of the retry loop into the dead-letter table.

        With ``seq``, nothing moves if the entry was replaced since it was
        read; the newer write gets its own attempts.
        """
        now = datetime.now(timezone.utc).isoformat()
        where = "entity_type = ? AND entity_id = ?"
        params: tuple = (entity_type, entity_id)
        if seq is not None:
            where += " AND seq = ?"
            params += (seq,)
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                INSERT OR REPLACE INTO dead_letters ({_COLUMNS}, reason, dead_lettered_at)
                SELECT {_COLUMNS}, ?, ? FROM mutation_queue
                WHERE {where}
                """,
                (reason, now) + params,
            )
            if cursor.rowcount == 0:
                return False
            cursor.execute(f"DELETE FROM mutation_queue WHERE {where}", params)
        logger.warning(f"Dead-lettered {entity_type}/{entity_id}: {reason}")
        return True

    def dead_letter_exhausted(self, max_attempts: int) -> list[MutationQueueEntry]:
        """Dead-letter every entry that has failed ``max_attempts`` times."""
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_COLUMNS} FROM mutation_queue WHERE attempts >= ?",
                (max_attempts,),
            )
            exhausted = [MutationQueueEntry.from_row(row) for row in cursor.fetchall()]

        for entry in exhausted:
            self.dead_letter(
                entry.entity_type,
                entry.entity_id,
                f"Gave up after {entry.attempts} attempts: {entry.last_error}",
            )
        return exhausted

    def dead_letters(self) -> list[DeadLetter]:
        """All dead-lettered mutations, oldest first."""
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT {_COLUMNS}, reason, dead_lettered_at FROM dead_letters
                ORDER BY dead_lettered_at ASC
                """
            )
            return [
                DeadLetter(
                    entry=MutationQueueEntry.from_row(row),
                    reason=row["reason"],
                    dead_lettered_at=datetime.fromisoformat(row["dead_lettered_at"]),
                )
                for row in cursor.fetchall()
            ]

    def requeue_dead_letter(
        self, entity_type: str, entity_id: str
    ) -> Optional[MutationQueueEntry]:
        """Give a dead-lettered mutation another round of attempts.

        A newer pending write for the same entity wins over the old one.
        """
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT {_COLUMNS} FROM dead_letters
                WHERE entity_type = ? AND entity_id = ?
                """,
                (entity_type, entity_id),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            cursor.execute(
                "DELETE FROM dead_letters WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            )
            if self._fetch(cursor, entity_type, entity_id) is not None:
                return None

            entry = MutationQueueEntry.from_row(row)
            entry.attempts = 0
            entry.last_error = None
            entry.seq = self._next_seq(cursor)
            cursor.execute(
                f"""
                INSERT INTO mutation_queue ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?)
                """,
                (
                    entry.entity_type,
                    entry.entity_id,
                    entry.operation.value,
                    json.dumps(entry.payload),
                    entry.base_version,
                    entry.created_at.isoformat(),
                    entry.seq,
                ),
            )
            return entry

    def size(self) -> int:
        """Number of pending entries."""
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM mutation_queue")
            return cursor.fetchone()[0]

    def is_empty(self) -> bool:
        """Check if queue is empty."""
        return self.size() == 0

    def capacity_percent(self) -> float:
        """Queue fill level relative to the soft limit."""
        return self.size() / self.soft_limit if self.soft_limit else 0.0

    def is_near_capacity(self) -> bool:
        return self.capacity_percent() >= NEAR_CAPACITY_RATIO

    def clear(self) -> int:
        """Drop all pending entries and dead letters (logout/reset)."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM mutation_queue")
            count = cursor.rowcount
            cursor.execute("DELETE FROM dead_letters")
            return count

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection
