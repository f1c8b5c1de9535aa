"""Local store - persistent cache of remote rows with dirty/tombstone bookkeeping."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from ..config import Config

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_at"


@dataclass
class LocalRecord:
    """One cached entity instance.

    A record that is neither dirty nor tombstoned mirrors the last state
    pulled from (or confirmed by) the remote.
    """

    entity_type: str
    id: str
    payload: dict
    remote_version: Any = None
    dirty: bool = False
    tombstone: bool = False
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LocalRecord":
        """Create from database row."""
        return cls(
            entity_type=row["entity_type"],
            id=row["id"],
            payload=json.loads(row["payload"]),
            remote_version=row["remote_version"],
            dirty=bool(row["dirty"]),
            tombstone=bool(row["tombstone"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class LocalStore:
    """SQLite-backed local cache, keyed by (entity_type, id)."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "offline_cache.db"

        self.db_path = db_path
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
            # remote_version has no declared type so ints stay ints and
            # timestamps stay text
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS local_records (
                    entity_type TEXT NOT NULL,
                    id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    remote_version,
                    dirty INTEGER NOT NULL DEFAULT 0,
                    tombstone INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (entity_type, id)
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_local_records_dirty
                ON local_records(dirty)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def get(self, entity_type: str, entity_id: str) -> Optional[LocalRecord]:
        """Get one record, tombstoned or not. None if never cached."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM local_records
                WHERE entity_type = ? AND id = ?
                """,
                (entity_type, entity_id),
            )
            row = cursor.fetchone()
            return LocalRecord.from_row(row) if row else None

    def query(
        self,
        entity_type: str,
        predicate: Optional[Callable[[dict], bool]] = None,
        include_deleted: bool = False,
    ) -> list[LocalRecord]:
        """Read all records of a type matching ``predicate``.

        Each call is a fresh read. An entity type that was never populated
        yields an empty list.
        """
        sql = "SELECT * FROM local_records WHERE entity_type = ?"
        if not include_deleted:
            sql += " AND tombstone = 0"
        sql += " ORDER BY id"

        with self._cursor() as cursor:
            cursor.execute(sql, (entity_type,))
            records = [LocalRecord.from_row(row) for row in cursor.fetchall()]

        if predicate is None:
            return records
        return [r for r in records if predicate(r.payload)]

    def put(
        self,
        entity_type: str,
        entity_id: str,
        payload: dict,
        dirty: bool = True,
        remote_version: Any = None,
    ) -> LocalRecord:
        """Upsert a record.

        Any put clears the tombstone. With ``dirty=False`` the payload is
        taken as confirmed remote state and ``remote_version`` is recorded;
        a dirty put keeps the last confirmed version as it was.
        """
        now = datetime.now(timezone.utc).isoformat()
        data = json.dumps(payload)
        with self._cursor() as cursor:
            if dirty:
                cursor.execute(
                    """
                    INSERT INTO local_records
                        (entity_type, id, payload, remote_version, dirty, tombstone, updated_at)
                    VALUES (?, ?, ?, NULL, 1, 0, ?)
                    ON CONFLICT(entity_type, id) DO UPDATE SET
                        payload = excluded.payload,
                        dirty = 1,
                        tombstone = 0,
                        updated_at = excluded.updated_at
                    """,
                    (entity_type, entity_id, data, now),
                )
            else:
                cursor.execute(
                    """
                    INSERT INTO local_records
                        (entity_type, id, payload, remote_version, dirty, tombstone, updated_at)
                    VALUES (?, ?, ?, ?, 0, 0, ?)
                    ON CONFLICT(entity_type, id) DO UPDATE SET
                        payload = excluded.payload,
                        remote_version = excluded.remote_version,
                        dirty = 0,
                        tombstone = 0,
                        updated_at = excluded.updated_at
                    """,
                    (entity_type, entity_id, data, remote_version, now),
                )
        return self.get(entity_type, entity_id)

    def mark_deleted(self, entity_type: str, entity_id: str) -> bool:
        """Tombstone a record pending remote confirmation.

        Returns False if the record is not cached.
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE local_records
                SET tombstone = 1, dirty = 1, updated_at = ?
                WHERE entity_type = ? AND id = ?
                """,
                (now, entity_type, entity_id),
            )
            return cursor.rowcount > 0

    def mark_clean(self, entity_type: str, entity_id: str) -> bool:
        """Drop the pending-change flags once nothing is queued for a record.

        The payload stays as it is until the next remote read overwrites it.
        Returns False if the record is not cached.
        """
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE local_records SET dirty = 0, tombstone = 0
                WHERE entity_type = ? AND id = ?
                """,
                (entity_type, entity_id),
            )
            return cursor.rowcount > 0

    def set_remote_version(self, entity_type: str, entity_id: str, version: Any) -> None:
        """Record a confirmed remote version without touching the dirty flag."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE local_records SET remote_version = ?
                WHERE entity_type = ? AND id = ?
                """,
                (version, entity_type, entity_id),
            )

    def purge(self, entity_type: str, entity_id: str) -> bool:
        """Remove a record entirely (confirmed delete or re-keyed temp id)."""
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM local_records WHERE entity_type = ? AND id = ?",
                (entity_type, entity_id),
            )
            return cursor.rowcount > 0

    def sync_status_snapshot(self) -> dict:
        """Counts for UI polling: records awaiting push and records cached."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN dirty = 1 OR tombstone = 1 THEN 1 ELSE 0 END), 0)
                        AS unsynced
                FROM local_records
                """
            )
            row = cursor.fetchone()
            return {
                "unsynced_records": row["unsynced"],
                "total_records": row["total"],
            }

    # Sync metadata

    def get_last_sync_at(self) -> Optional[datetime]:
        """Time of the last fully completed pull, or None if never synced."""
        with self._cursor() as cursor:
            cursor.execute("SELECT value FROM sync_meta WHERE key = ?", (LAST_SYNC_KEY,))
            row = cursor.fetchone()
            return datetime.fromisoformat(row["value"]) if row else None

    def set_last_sync_at(self, timestamp: datetime) -> None:
        """Persist the time of the last fully completed pull."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO sync_meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (LAST_SYNC_KEY, timestamp.isoformat()),
            )

    def clear(self) -> int:
        """Drop every cached record and the sync metadata (logout/reset)."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM local_records")
            count = cursor.rowcount
            cursor.execute("DELETE FROM sync_meta")
        logger.info(f"Cleared {count} cached records")
        return count

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection
