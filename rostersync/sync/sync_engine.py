"""Sync engine - drains the mutation queue and pulls remote changes.

One pass (a "cycle") is:

1. Bail out to idle if the connectivity signal says offline.
2. Push every queued mutation. Confirmed writes leave the queue and the
   local record becomes clean; conflicts go to the ConflictResolver;
   transient failures stay queued for the next cycle without blocking the
   rest of the batch.
3. Pull rows changed since the last completed pull, table by table, never
   overwriting a record with a pending local change.

The engine is the only writer of the session status. At most one cycle
runs at a time: the ``syncing`` flag is checked and set before the first
``await``, so a trigger arriving mid-cycle is a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..config import SyncSettings
from .broadcaster import StatusBroadcaster
from .conflict import ConflictResolver, DiscardReport
from .http_client import (
    RemoteAuthError,
    RemoteConflictError,
    RemoteError,
    RemoteRejectedError,
)
from .protocols import (
    ConnectivityProtocol,
    LocalStoreProtocol,
    MutationQueueProtocol,
    RemoteAuthorityProtocol,
)
from .queue import MutationOperation, MutationQueueEntry
from .schemas import RemoteRecord, SchemaError, is_temp_id

logger = logging.getLogger(__name__)

# Overlap re-read on every pull so rows committed with a slightly skewed
# server clock are not missed
PULL_LOOKBACK = timedelta(minutes=2)

_BASE_VERSION = object()


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class SyncSession:
    """Process-wide sync state. Only the SyncEngine mutates it."""

    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class SyncStats:
    """Statistics from a sync cycle."""

    reason: str = "manual"
    pushed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    pulled: int = 0
    skipped_dirty: int = 0
    discarded: list[DiscardReport] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    offline: bool = False
    pull_completed: bool = False
    session_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.session_error is None and self.pull_completed and self.failed == 0


class SyncEngine:
    """Orchestrates push/pull cycles and owns the sync state machine."""

    def __init__(
        self,
        remote: RemoteAuthorityProtocol,
        store: LocalStoreProtocol,
        queue: MutationQueueProtocol,
        connectivity: ConnectivityProtocol,
        settings: Optional[SyncSettings] = None,
        resolver: Optional[ConflictResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.remote = remote
        self.store = store
        self.queue = queue
        self.connectivity = connectivity
        self.settings = settings or SyncSettings()
        self.resolver = resolver or ConflictResolver()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.status_broadcaster: StatusBroadcaster[SyncStatus] = StatusBroadcaster("sync-status")
        self.discard_broadcaster: StatusBroadcaster[DiscardReport] = StatusBroadcaster(
            "sync-discard"
        )
        # Status never survives a restart; the last pull time does
        self.session = SyncSession(last_sync_at=store.get_last_sync_at())

        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe_connectivity: Optional[Callable[[], None]] = None

    @property
    def entity_types(self) -> list[str]:
        return self.settings.entity_types

    # -- UI-facing exports -------------------------------------------------

    def get_sync_status(self) -> SyncStatus:
        return self.session.status

    def subscribe_sync_status(
        self, listener: Callable[[SyncStatus], None]
    ) -> Callable[[], None]:
        """Subscribe to status transitions; returns an unsubscribe function."""
        return self.status_broadcaster.subscribe(listener)

    def on_sync_complete(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` whenever the status enters idle after a cycle."""
        return self.status_broadcaster.on_enter(SyncStatus.IDLE, callback)

    def on_discard(self, listener: Callable[[DiscardReport], None]) -> Callable[[], None]:
        """Subscribe to local changes discarded by conflict resolution."""
        return self.discard_broadcaster.subscribe(listener)

    def get_last_sync_time(self) -> Optional[datetime]:
        return self.session.last_sync_at

    def get_unsynced_count(self) -> int:
        return self.queue.size()

    def get_status(self) -> dict:
        """Get current sync status."""
        return {
            "status": self.session.status.value,
            "online": self.connectivity.is_online(),
            "last_sync": (
                self.session.last_sync_at.isoformat() if self.session.last_sync_at else None
            ),
            "last_error": self.session.last_error,
            "unsynced_count": self.queue.size(),
            "dead_letters": len(self.queue.dead_letters()),
        }

    def requeue_dead_letter(
        self, entity_type: str, entity_id: str
    ) -> Optional[MutationQueueEntry]:
        """Put a dead-lettered mutation back in the queue and reapply it locally.

        Returns None if there was no such dead letter or a newer write for
        the entity is already queued.
        """
        entry = self.queue.requeue_dead_letter(entity_type, entity_id)
        if entry is None:
            return None
        self.store.put(entity_type, entity_id, entry.payload, dirty=True)
        if entry.operation is MutationOperation.DELETE:
            self.store.mark_deleted(entity_type, entity_id)
        logger.info(f"Requeued {entry.operation.value} {entity_type}/{entity_id}")
        return entry

    # -- Triggers ----------------------------------------------------------

    def attach(self) -> None:
        """Start a sync whenever connectivity comes back."""
        if self._unsubscribe_connectivity is None:
            self._unsubscribe_connectivity = self.connectivity.on_change(
                self._on_connectivity_change
            )

    def detach(self) -> None:
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Network back online - triggering sync to flush queue")
            self.trigger("connectivity")

    def trigger(self, reason: str = "manual") -> Optional[asyncio.Task]:
        """Schedule a sync cycle from synchronous code.

        Returns the scheduled task, or None if a cycle is already running or
        there is no running event loop.
        """
        if self.session.status is SyncStatus.SYNCING:
            logger.debug(f"Sync already running, ignoring {reason} trigger")
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropping {reason} trigger")
            return None

        task = loop.create_task(self.sync(reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Stop listening for triggers and wait for a running cycle to finish."""
        self.detach()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # -- Cycle -------------------------------------------------------------

    async def sync(self, reason: str = "manual") -> Optional[SyncStats]:
        """Perform a sync cycle.

        Never raises: failures end up in the returned stats and the session
        status. Returns None if another cycle was already in flight.
        """
        # Check-and-set with no await in between
        if self.session.status is SyncStatus.SYNCING:
            logger.debug(f"Sync already running, ignoring {reason} trigger")
            return None
        self._set_status(SyncStatus.SYNCING)

        stats = SyncStats(reason=reason)
        try:
            if not self.connectivity.is_online():
                logger.info("Offline - skipping sync")
                stats.offline = True
                self._set_status(SyncStatus.IDLE)
                return stats

            started_at = self._clock()
            await self._push(stats)
            stats.pull_completed = await self._pull(stats)
            if stats.pull_completed:
                self.session.last_sync_at = started_at
                self.store.set_last_sync_at(started_at)
            self._set_status(SyncStatus.IDLE)

        except RemoteAuthError as e:
            logger.warning(f"Auth error during sync: {e} - re-authentication required")
            self._fail(stats, f"Authentication error: {e}")
        except SchemaError as e:
            logger.error(f"Remote returned malformed data: {e}")
            self._fail(stats, f"Schema error: {e}")
        except Exception as e:
            logger.exception(f"Sync error: {e}")
            self._fail(stats, f"Sync error: {e}")

        self._log_summary(stats)
        return stats

    def _set_status(self, status: SyncStatus, error: Optional[str] = None) -> None:
        self.session.status = status
        self.session.last_error = error
        self.status_broadcaster.publish(status)

    def _fail(self, stats: SyncStats, message: str) -> None:
        stats.session_error = message
        stats.errors.append(message)
        self._set_status(SyncStatus.ERROR, message)

    # -- Push phase --------------------------------------------------------

    async def _push(self, stats: SyncStats) -> None:
        exhausted = self.queue.dead_letter_exhausted(self.settings.max_attempts)
        stats.dead_lettered += len(exhausted)
        for entry in exhausted:
            await self._release_local(entry.entity_type, entry.entity_id)

        for snapshot in self.queue.peek_all():
            # Re-read: the entry may have been replaced or dropped while an
            # earlier push was awaited
            entry = self.queue.get(snapshot.entity_type, snapshot.entity_id)
            if entry is None:
                continue
            await self._push_entry(entry, stats)

    async def _push_entry(
        self,
        entry: MutationQueueEntry,
        stats: SyncStats,
        expected_version: Any = _BASE_VERSION,
    ) -> None:
        resolving = expected_version is not _BASE_VERSION
        if not resolving:
            expected_version = entry.base_version
        label = f"{entry.operation.value} {entry.entity_type}/{entry.entity_id}"

        try:
            record = await self._send(entry, expected_version)
        except RemoteConflictError as e:
            if resolving:
                # Remote moved again between resolution and retry
                self._record_failure(entry, stats, f"Conflict persisted: {e}")
                return
            await self._resolve_conflict(entry, e.current, stats)
            return
        except RemoteAuthError:
            raise
        except RemoteRejectedError as e:
            stats.errors.append(f"{label}: {e}")
            if self.queue.dead_letter(
                entry.entity_type, entry.entity_id, f"Rejected: {e}", seq=entry.seq
            ):
                stats.dead_lettered += 1
                await self._release_local(entry.entity_type, entry.entity_id)
            return
        except RemoteError as e:
            self._record_failure(entry, stats, str(e))
            return

        self._confirm(entry, record)
        stats.pushed += 1

    async def _send(
        self, entry: MutationQueueEntry, expected_version: Any
    ) -> Optional[RemoteRecord]:
        if entry.operation is MutationOperation.CREATE:
            return await self.remote.create(entry.entity_type, entry.payload)
        if entry.operation is MutationOperation.UPDATE:
            return await self.remote.update(
                entry.entity_type, entry.entity_id, entry.payload, expected_version
            )
        await self.remote.delete(entry.entity_type, entry.entity_id, expected_version)
        return None

    def _record_failure(self, entry: MutationQueueEntry, stats: SyncStats, error: str) -> None:
        logger.warning(
            f"Push of {entry.operation.value} {entry.entity_type}/{entry.entity_id} "
            f"failed (attempt {entry.attempts + 1}): {error}"
        )
        self.queue.record_failure(entry.entity_type, entry.entity_id, error)
        stats.failed += 1

    async def _release_local(self, entity_type: str, entity_id: str) -> None:
        """Return a record to remote state after its mutation was dead-lettered.

        Nothing is queued for the record any more, so it must not stay dirty
        or every pull would keep skipping it.
        """
        if is_temp_id(entity_id):
            # Never reached the server
            self.store.purge(entity_type, entity_id)
            return
        self.store.mark_clean(entity_type, entity_id)

        try:
            current = await self.remote.fetch_one(entity_type, entity_id)
        except RemoteAuthError:
            raise
        except RemoteError as e:
            logger.warning(
                f"Could not refresh {entity_type}/{entity_id} after dead-lettering: {e}"
            )
            return

        if self.queue.get(entity_type, entity_id) is not None:
            # Written again while the refresh was in flight
            return
        if current is None:
            self.store.purge(entity_type, entity_id)
        else:
            self.store.put(
                entity_type, entity_id, current.payload, dirty=False,
                remote_version=current.version,
            )

    def _confirm(self, entry: MutationQueueEntry, record: Optional[RemoteRecord]) -> None:
        """Apply a server-confirmed mutation to the queue and the local store."""
        entity_type, entity_id = entry.entity_type, entry.entity_id

        if self.queue.remove(entity_type, entity_id, seq=entry.seq):
            if record is None:
                self.store.purge(entity_type, entity_id)
                return
            if record.id != entity_id:
                self.store.purge(entity_type, entity_id)
            self.store.put(
                entity_type, record.id, record.payload, dirty=False, remote_version=record.version
            )
            return

        # A newer local write for this entity was queued while we awaited
        # the server; keep it and base it on the version just confirmed
        if record is None:
            return
        pending = self.queue.get(entity_type, entity_id)
        if pending is None:
            if entry.operation is MutationOperation.CREATE:
                self._queue_delete_of_created(entry, record)
            return

        next_op = (
            MutationOperation.UPDATE
            if pending.operation is MutationOperation.CREATE
            else pending.operation
        )
        self.queue.rekey(entity_type, entity_id, record.id, next_op, record.version)
        if record.id != entity_id:
            self._move_local(entity_type, entity_id, record.id)
        self.store.set_remote_version(entity_type, record.id, record.version)

    def _queue_delete_of_created(self, entry: MutationQueueEntry, record: RemoteRecord) -> None:
        # Created and deleted locally while the create was in flight: the
        # row now exists remotely, so it needs a real delete
        self.store.put(
            entry.entity_type, record.id, record.payload, dirty=False,
            remote_version=record.version,
        )
        self.store.mark_deleted(entry.entity_type, record.id)
        self.queue.enqueue(
            MutationQueueEntry(
                entity_type=entry.entity_type,
                entity_id=record.id,
                operation=MutationOperation.DELETE,
                payload=record.payload,
                base_version=record.version,
            )
        )

    def _move_local(self, entity_type: str, old_id: str, new_id: str) -> None:
        local = self.store.get(entity_type, old_id)
        if local is None:
            return
        self.store.purge(entity_type, old_id)
        payload = dict(local.payload)
        if "id" in payload:
            payload["id"] = new_id
        self.store.put(entity_type, new_id, payload, dirty=True)
        if local.tombstone:
            self.store.mark_deleted(entity_type, new_id)

    async def _resolve_conflict(
        self,
        entry: MutationQueueEntry,
        current: Optional[RemoteRecord],
        stats: SyncStats,
    ) -> None:
        outcome = self.resolver.resolve(entry, current)
        logger.info(
            f"Conflict on {entry.entity_type}/{entry.entity_id}: "
            f"{outcome.resolution.value} ({outcome.reason})"
        )

        if not outcome.remote_wins:
            if current is None:
                # Delete of a row that is already gone
                self._confirm(entry, None)
                stats.pushed += 1
                return
            await self._push_entry(entry, stats, expected_version=current.version)
            return

        if not self.queue.remove(entry.entity_type, entry.entity_id, seq=entry.seq):
            # Superseded by a newer write; that one gets its own resolution
            return
        if current is None:
            self.store.purge(entry.entity_type, entry.entity_id)
        else:
            self.store.put(
                entry.entity_type,
                entry.entity_id,
                current.payload,
                dirty=False,
                remote_version=current.version,
            )

        report = DiscardReport.from_outcome(outcome)
        stats.discarded.append(report)
        logger.warning(
            f"Discarded local {entry.operation.value} of "
            f"{entry.entity_type}/{entry.entity_id}: {outcome.reason}"
        )
        self.discard_broadcaster.publish(report)

    # -- Pull phase --------------------------------------------------------

    async def _pull(self, stats: SyncStats) -> bool:
        """Pull remote changes into the store.

        Returns False if a fetch failed; the remaining tables are skipped
        and the last sync time is not advanced.
        """
        since = self.session.last_sync_at
        if since is not None:
            since -= PULL_LOOKBACK

        for entity_type in self.entity_types:
            try:
                records = await self.remote.fetch_changed_since(entity_type, since)
            except RemoteAuthError:
                raise
            except RemoteError as e:
                logger.warning(f"Pull of {entity_type} failed: {e} - aborting pull phase")
                stats.errors.append(f"Pull {entity_type}: {e}")
                return False

            for record in records:
                local = self.store.get(entity_type, record.id)
                if local is not None and local.dirty:
                    # A push is still pending for this record
                    stats.skipped_dirty += 1
                    continue
                self.store.put(
                    entity_type,
                    record.id,
                    record.payload,
                    dirty=False,
                    remote_version=record.version,
                )
                stats.pulled += 1

        return True

    def _log_summary(self, stats: SyncStats) -> None:
        if stats.offline:
            return
        if stats.session_error:
            logger.info(f"Sync ({stats.reason}) stopped: {stats.session_error}")
            return
        if stats.pushed or stats.pulled or stats.failed or stats.discarded or stats.dead_lettered:
            logger.info(
                f"Sync complete ({stats.reason}): {stats.pushed} pushed, "
                f"{stats.failed} failed, {len(stats.discarded)} discarded, "
                f"{stats.dead_lettered} dead-lettered, {stats.pulled} pulled, "
                f"{stats.skipped_dirty} kept local"
            )
