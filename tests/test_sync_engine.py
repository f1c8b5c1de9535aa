"""Tests for sync engine."""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from rostersync.config import SyncSettings
from rostersync.sync.connectivity import ConnectivityMonitor
from rostersync.sync.http_client import (
    RemoteAuthError,
    RemoteConflictError,
    RemoteRejectedError,
    RemoteTransientError,
)
from rostersync.sync.local_store import LocalStore
from rostersync.sync.queue import MutationOperation, MutationQueue, MutationQueueEntry
from rostersync.sync.schemas import RemoteRecord, SchemaError
from rostersync.sync.sync_engine import PULL_LOOKBACK, SyncEngine, SyncStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def player(entity_id, name):
    return {"id": entity_id, "name": name, "created_by": "coach-1"}


def remote_player(entity_id, name, version):
    return RemoteRecord("players", entity_id, player(entity_id, name), version)


class TestSyncEngine:
    """Tests for SyncEngine."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        db_path = Path(self.temp_dir) / "test_cache.db"
        self.store = LocalStore(db_path=db_path)
        self.queue = MutationQueue(db_path=db_path)
        self.connectivity = ConnectivityMonitor(online=True)

        self.remote = AsyncMock()
        self.remote.fetch_changed_since.return_value = []
        self.remote.fetch_one.return_value = None

        self.settings = SyncSettings(entity_types=["players"], max_attempts=3)
        self.engine = self._make_engine()

    def teardown_method(self):
        """Clean up."""
        self.queue.close()
        self.store.close()

    def _make_engine(self):
        return SyncEngine(
            remote=self.remote,
            store=self.store,
            queue=self.queue,
            connectivity=self.connectivity,
            settings=self.settings,
            clock=lambda: NOW,
        )

    def seed(self, entity_id="p1", name="Al", version=6):
        """Cache a clean record as if pulled from the remote."""
        self.store.put(
            "players", entity_id, player(entity_id, name), dirty=False, remote_version=version
        )

    def local_write(self, entity_id, name, operation=MutationOperation.UPDATE, base=None):
        """Write locally and queue the mutation, as the repository does."""
        payload = player(entity_id, name)
        self.store.put("players", entity_id, payload)
        return self.queue.enqueue(
            MutationQueueEntry("players", entity_id, operation, payload, base_version=base)
        )

    # -- Push phase ---------------------------------------------------------

    @pytest.mark.asyncio
    async def test_confirmed_update(self):
        """Test that a confirmed push cleans the record and empties the queue."""
        self.seed(version=6)
        self.local_write("p1", "Alice", base=6)
        self.remote.update.return_value = remote_player("p1", "Alice", 7)

        stats = await self.engine.sync()

        self.remote.update.assert_awaited_once_with(
            "players", "p1", player("p1", "Alice"), 6
        )
        record = self.store.get("players", "p1")
        assert record.dirty is False
        assert record.remote_version == 7
        assert record.payload["name"] == "Alice"
        assert self.queue.is_empty()
        assert self.engine.get_sync_status() is SyncStatus.IDLE
        assert stats.pushed == 1
        assert stats.success

    @pytest.mark.asyncio
    async def test_offline_returns_to_idle_without_remote_calls(self):
        """Test that an offline trigger leaves queue and last sync time untouched."""
        self.connectivity.set_online(False)
        self.local_write("p1", "Alice", base=6)
        statuses = []
        self.engine.subscribe_sync_status(statuses.append)

        stats = await self.engine.sync()

        assert stats.offline is True
        assert self.engine.get_sync_status() is SyncStatus.IDLE
        assert statuses == [SyncStatus.SYNCING, SyncStatus.IDLE]
        assert self.queue.size() == 1
        assert self.engine.get_last_sync_time() is None
        assert self.store.get_last_sync_at() is None
        self.remote.update.assert_not_awaited()
        self.remote.fetch_changed_since.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_confirmed_delete_purges_record(self):
        """Test that a confirmed delete removes the tombstoned record."""
        self.seed(version=3)
        self.store.mark_deleted("players", "p1")
        self.queue.enqueue(
            MutationQueueEntry(
                "players", "p1", MutationOperation.DELETE, player("p1", "Al"), base_version=3
            )
        )
        self.remote.delete.return_value = None

        await self.engine.sync()

        self.remote.delete.assert_awaited_once_with("players", "p1", 3)
        assert self.store.get("players", "p1") is None
        assert self.queue.is_empty()

    @pytest.mark.asyncio
    async def test_create_with_temp_id_is_rekeyed(self):
        """Test that a confirmed create moves the record to the server id."""
        self.local_write("temp_abc", "New", operation=MutationOperation.CREATE)
        self.remote.create.return_value = remote_player("srv-1", "New", 1)

        await self.engine.sync()

        assert self.store.get("players", "temp_abc") is None
        record = self.store.get("players", "srv-1")
        assert record.dirty is False
        assert record.remote_version == 1
        assert self.queue.is_empty()

    @pytest.mark.asyncio
    async def test_partial_failure_isolation(self):
        """Test that one failing mutation does not block the rest of the batch."""
        self.seed("p1", version=1)
        self.seed("p2", version=1)
        self.local_write("p1", "Alice", base=1)
        self.local_write("p2", "Bob", base=1)

        async def update(entity_type, entity_id, payload, expected_version):
            if entity_id == "p1":
                raise RemoteTransientError("Connection error")
            return remote_player(entity_id, payload["name"], 2)

        self.remote.update.side_effect = update

        stats = await self.engine.sync()

        assert stats.pushed == 1
        assert stats.failed == 1
        assert not stats.success
        assert self.store.get("players", "p2").dirty is False
        entry = self.queue.get("players", "p1")
        assert entry.attempts == 1
        assert entry.last_error == "Connection error"
        assert self.engine.get_sync_status() is SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_eventual_consistency(self):
        """Test that repeated cycles drain the queue once the remote recovers."""
        for i in range(3):
            self.seed(f"p{i}", version=1)
            self.local_write(f"p{i}", f"Name {i}", base=1)

        failures = {"p1": 1}

        async def update(entity_type, entity_id, payload, expected_version):
            if failures.get(entity_id):
                failures[entity_id] -= 1
                raise RemoteTransientError("Request timed out")
            return remote_player(entity_id, payload["name"], 2)

        self.remote.update.side_effect = update

        await self.engine.sync()
        assert self.engine.get_unsynced_count() == 1
        await self.engine.sync()

        assert self.engine.get_unsynced_count() == 0
        assert self.engine.get_sync_status() is SyncStatus.IDLE
        assert self.store.sync_status_snapshot()["unsynced_records"] == 0

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(self):
        """Test that a mutation failing every cycle is eventually dead-lettered."""
        self.seed(version=1)
        self.local_write("p1", "Alice", base=1)
        self.remote.update.side_effect = RemoteTransientError("Server error: 503")
        self.remote.fetch_one.side_effect = RemoteTransientError("Server error: 503")

        for _ in range(3):
            await self.engine.sync()
        stats = await self.engine.sync()

        assert self.remote.update.await_count == 3
        assert stats.dead_lettered == 1
        assert self.queue.is_empty()
        letters = self.queue.dead_letters()
        assert len(letters) == 1
        assert "503" in letters[0].reason
        # Remote unreachable for the refresh: the record is still released
        record = self.store.get("players", "p1")
        assert record.dirty is False
        assert self.store.sync_status_snapshot()["unsynced_records"] == 0

    @pytest.mark.asyncio
    async def test_rejected_mutation_is_dead_lettered_at_once(self):
        """Test that a permanently invalid mutation leaves the retry loop."""
        self.seed(version=1)
        self.local_write("p1", "Alice", base=1)
        self.remote.update.side_effect = RemoteRejectedError("invalid input", 422)
        self.remote.fetch_one.return_value = remote_player("p1", "Al", 1)

        stats = await self.engine.sync()

        assert stats.dead_lettered == 1
        assert self.queue.is_empty()
        assert self.queue.dead_letters()[0].reason == "Rejected: invalid input"
        assert self.engine.get_sync_status() is SyncStatus.IDLE
        record = self.store.get("players", "p1")
        assert record.dirty is False
        assert record.payload["name"] == "Al"
        assert record.remote_version == 1

    @pytest.mark.asyncio
    async def test_dead_lettered_record_takes_later_remote_changes(self):
        """Test that pulls update a record once its mutation is dead-lettered."""
        self.seed(version=1)
        self.local_write("p1", "bad", base=1)
        self.remote.update.side_effect = RemoteRejectedError("invalid input", 422)
        self.remote.fetch_one.side_effect = RemoteTransientError("Request timed out")
        await self.engine.sync()

        self.remote.fetch_changed_since.return_value = [remote_player("p1", "Server", 9)]
        stats = await self.engine.sync()

        assert stats.skipped_dirty == 0
        record = self.store.get("players", "p1")
        assert record.dirty is False
        assert record.payload["name"] == "Server"
        assert record.remote_version == 9
        assert self.engine.get_unsynced_count() == 0
        assert self.store.sync_status_snapshot()["unsynced_records"] == 0

    @pytest.mark.asyncio
    async def test_dead_lettered_temp_create_is_dropped_locally(self):
        """Test that a rejected offline create does not linger in the cache."""
        self.local_write("temp_abc", "Ghost", operation=MutationOperation.CREATE)
        self.remote.create.side_effect = RemoteRejectedError("invalid input", 422)

        await self.engine.sync()

        assert self.store.get("players", "temp_abc") is None
        self.remote.fetch_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dead_lettered_delete_restores_record(self):
        """Test that a rejected delete brings the remote row back."""
        self.seed(version=2)
        self.store.mark_deleted("players", "p1")
        self.queue.enqueue(
            MutationQueueEntry(
                "players", "p1", MutationOperation.DELETE, player("p1", "Al"), base_version=2
            )
        )
        self.remote.delete.side_effect = RemoteRejectedError("not allowed", 400)
        self.remote.fetch_one.return_value = remote_player("p1", "Al", 2)

        await self.engine.sync()

        record = self.store.get("players", "p1")
        assert record.tombstone is False
        assert record.dirty is False

    @pytest.mark.asyncio
    async def test_rejection_of_superseded_write_keeps_newer_write(self):
        """Test that a write made during a rejected push is not dead-lettered."""
        self.seed(version=1)
        self.local_write("p1", "bad", base=1)

        async def reject_after_new_write(*args):
            self.local_write("p1", "Better", base=1)
            raise RemoteRejectedError("invalid input", 422)

        self.remote.update.side_effect = reject_after_new_write

        stats = await self.engine.sync()

        assert stats.dead_lettered == 0
        assert self.queue.dead_letters() == []
        assert self.queue.get("players", "p1").payload["name"] == "Better"
        assert self.store.get("players", "p1").dirty is True

    @pytest.mark.asyncio
    async def test_requeue_dead_letter_restores_local_write(self):
        """Test that requeueing makes the record dirty again and pushes it."""
        self.seed(version=1)
        self.local_write("p1", "Alice", base=1)
        self.remote.update.side_effect = RemoteRejectedError("invalid input", 422)
        self.remote.fetch_one.return_value = remote_player("p1", "Al", 1)
        await self.engine.sync()

        entry = self.engine.requeue_dead_letter("players", "p1")

        assert entry.payload["name"] == "Alice"
        record = self.store.get("players", "p1")
        assert record.dirty is True
        assert record.payload["name"] == "Alice"
        assert self.engine.get_unsynced_count() == 1

        self.remote.update.side_effect = None
        self.remote.update.return_value = remote_player("p1", "Alice", 2)
        await self.engine.sync()

        record = self.store.get("players", "p1")
        assert record.dirty is False
        assert record.remote_version == 2
        assert self.queue.is_empty()

    def test_requeue_unknown_dead_letter(self):
        """Test requeueing something that was never dead-lettered."""
        assert self.engine.requeue_dead_letter("players", "p1") is None
        assert self.store.get("players", "p1") is None

    # -- Conflicts ----------------------------------------------------------

    @pytest.mark.asyncio
    async def test_remote_wins_conflict(self):
        """Test that a remote change past the base version replaces the local write."""
        self.seed(version=3)
        self.local_write("p1", "Local", base=3)
        self.remote.update.side_effect = RemoteConflictError(
            "changed", current=remote_player("p1", "Remote", 5)
        )
        discards = []
        self.engine.on_discard(discards.append)

        stats = await self.engine.sync()

        record = self.store.get("players", "p1")
        assert record.payload["name"] == "Remote"
        assert record.remote_version == 5
        assert record.dirty is False
        assert self.queue.is_empty()
        assert len(stats.discarded) == 1
        assert discards[0].discarded_payload["name"] == "Local"
        assert discards[0].remote_version == 5
        assert self.remote.update.await_count == 1

    @pytest.mark.asyncio
    async def test_conflict_without_remote_change_reissues_local(self):
        """Test that the local write is retried against the current version."""
        self.seed(version=3)
        self.local_write("p1", "Local", base=3)
        self.remote.update.side_effect = [
            RemoteConflictError("changed", current=remote_player("p1", "Al", 3)),
            remote_player("p1", "Local", 4),
        ]

        stats = await self.engine.sync()

        assert self.remote.update.await_count == 2
        assert stats.pushed == 1
        assert stats.discarded == []
        assert self.store.get("players", "p1").remote_version == 4
        assert self.queue.is_empty()

    @pytest.mark.asyncio
    async def test_update_of_remotely_deleted_row(self):
        """Test that an update to a vanished row is discarded and the record purged."""
        self.seed(version=3)
        self.local_write("p1", "Local", base=3)
        self.remote.update.side_effect = RemoteConflictError("gone", current=None)

        stats = await self.engine.sync()

        assert self.store.get("players", "p1") is None
        assert self.queue.is_empty()
        assert stats.discarded[0].reason == "deleted remotely"

    @pytest.mark.asyncio
    async def test_write_during_push_survives_confirmation(self):
        """Test that a local write made while its push was in flight is kept."""
        self.seed(version=6)
        self.local_write("p1", "Alice", base=6)

        async def update(entity_type, entity_id, payload, expected_version):
            self.local_write("p1", "Alicia")
            return remote_player("p1", "Alice", 7)

        self.remote.update.side_effect = update

        await self.engine.sync()

        entry = self.queue.get("players", "p1")
        assert entry.payload["name"] == "Alicia"
        assert entry.base_version == 7
        record = self.store.get("players", "p1")
        assert record.dirty is True
        assert record.payload["name"] == "Alicia"
        assert record.remote_version == 7

    @pytest.mark.asyncio
    async def test_write_during_temp_create_moves_to_server_id(self):
        """Test that an edit made while a create was in flight follows the new id."""
        self.local_write("temp_abc", "New", operation=MutationOperation.CREATE)

        async def create(entity_type, payload):
            self.local_write("temp_abc", "Renamed")
            return remote_player("srv-1", "New", 1)

        self.remote.create.side_effect = create

        await self.engine.sync()

        assert self.queue.get("players", "temp_abc") is None
        entry = self.queue.get("players", "srv-1")
        assert entry.operation is MutationOperation.UPDATE
        assert entry.base_version == 1
        assert entry.payload["id"] == "srv-1"
        assert entry.payload["name"] == "Renamed"
        assert self.store.get("players", "temp_abc") is None
        record = self.store.get("players", "srv-1")
        assert record.dirty is True
        assert record.remote_version == 1

    # -- Pull phase ---------------------------------------------------------

    @pytest.mark.asyncio
    async def test_pull_skips_dirty_records(self):
        """Test that pulled rows never clobber a pending local change."""
        self.store.put("players", "p1", player("p1", "Local edit"))
        self.remote.fetch_changed_since.return_value = [
            remote_player("p1", "Remote", 9),
            remote_player("p2", "Bob", 9),
        ]

        stats = await self.engine.sync()

        assert self.store.get("players", "p1").payload["name"] == "Local edit"
        pulled = self.store.get("players", "p2")
        assert pulled.dirty is False
        assert pulled.remote_version == 9
        assert stats.pulled == 1
        assert stats.skipped_dirty == 1

    @pytest.mark.asyncio
    async def test_last_sync_time_and_incremental_pull(self):
        """Test that a completed pull advances the last sync time."""
        await self.engine.sync()

        assert self.engine.get_last_sync_time() == NOW
        assert self.store.get_last_sync_at() == NOW
        self.remote.fetch_changed_since.assert_awaited_with("players", None)

        await self.engine.sync()

        self.remote.fetch_changed_since.assert_awaited_with("players", NOW - PULL_LOOKBACK)

    @pytest.mark.asyncio
    async def test_pull_failure_aborts_remaining_pulls(self):
        """Test that a failed fetch stops the pull without advancing last sync time."""
        self.settings.entity_types = ["players", "teams"]
        self.remote.fetch_changed_since.side_effect = RemoteTransientError("Connection error")

        stats = await self.engine.sync()

        assert self.remote.fetch_changed_since.await_count == 1
        assert stats.pull_completed is False
        assert self.engine.get_last_sync_time() is None
        assert self.engine.get_sync_status() is SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_last_sync_time_loaded_from_store(self):
        """Test that a new engine resumes from the persisted last sync time."""
        self.store.set_last_sync_at(NOW)

        engine = self._make_engine()

        assert engine.get_last_sync_time() == NOW
        assert engine.get_sync_status() is SyncStatus.IDLE

    # -- Session errors -----------------------------------------------------

    @pytest.mark.asyncio
    async def test_auth_error_moves_to_error_and_keeps_queue(self):
        """Test that an auth rejection is a session error, not an exception."""
        self.seed(version=1)
        self.local_write("p1", "Alice", base=1)
        self.remote.update.side_effect = RemoteAuthError("Authentication failed")
        statuses = []
        self.engine.subscribe_sync_status(statuses.append)

        stats = await self.engine.sync()

        assert self.engine.get_sync_status() is SyncStatus.ERROR
        assert statuses[-1] is SyncStatus.ERROR
        assert "Authentication" in stats.session_error
        assert self.queue.size() == 1
        assert self.queue.get("players", "p1").attempts == 0
        assert self.engine.get_last_sync_time() is None

    @pytest.mark.asyncio
    async def test_error_state_retries_on_next_trigger(self):
        """Test that any trigger moves out of the error state."""
        self.remote.fetch_changed_since.side_effect = RemoteAuthError("expired")
        await self.engine.sync()
        assert self.engine.get_sync_status() is SyncStatus.ERROR

        self.remote.fetch_changed_since.side_effect = None
        self.remote.fetch_changed_since.return_value = []
        stats = await self.engine.sync()

        assert stats.success
        assert self.engine.get_sync_status() is SyncStatus.IDLE
        assert self.engine.session.last_error is None

    @pytest.mark.asyncio
    async def test_malformed_remote_rows_are_a_session_error(self):
        """Test that a schema failure during pull moves the session to error."""
        self.remote.fetch_changed_since.side_effect = SchemaError("players: row without a valid 'id'")

        stats = await self.engine.sync()

        assert self.engine.get_sync_status() is SyncStatus.ERROR
        assert stats.session_error.startswith("Schema error")

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_captured(self):
        """Test that the engine never raises into its callers."""
        self.remote.fetch_changed_since.side_effect = RuntimeError("boom")

        stats = await self.engine.sync()

        assert self.engine.get_sync_status() is SyncStatus.ERROR
        assert "boom" in stats.session_error

    # -- Triggers -----------------------------------------------------------

    @pytest.mark.asyncio
    async def test_at_most_one_cycle_in_flight(self):
        """Test that back-to-back triggers never overlap push phases."""
        self.seed(version=1)
        self.local_write("p1", "Alice", base=1)
        gate = asyncio.Event()
        in_flight = {"now": 0, "max": 0}

        async def update(entity_type, entity_id, payload, expected_version):
            in_flight["now"] += 1
            in_flight["max"] = max(in_flight["max"], in_flight["now"])
            await gate.wait()
            in_flight["now"] -= 1
            return remote_player(entity_id, payload["name"], 2)

        self.remote.update.side_effect = update

        first = self.engine.trigger("timer")
        second = self.engine.trigger("manual")
        await asyncio.sleep(0.01)
        third = await self.engine.sync("manual")
        gate.set()
        results = await asyncio.gather(first, second)

        assert third is None
        assert results[1] is None
        assert results[0].pushed == 1
        assert self.remote.update.await_count == 1
        assert in_flight["max"] == 1

    @pytest.mark.asyncio
    async def test_reconnect_triggers_sync(self):
        """Test that regaining connectivity starts a cycle."""
        self.engine.attach()
        self.connectivity.set_online(False)
        self.connectivity.set_online(True)

        await self.engine.shutdown()

        self.remote.fetch_changed_since.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_detach_stops_reconnect_trigger(self):
        """Test that a detached engine ignores connectivity changes."""
        self.engine.attach()
        self.engine.detach()

        self.connectivity.set_online(False)
        self.connectivity.set_online(True)
        await asyncio.sleep(0)

        self.remote.fetch_changed_since.assert_not_awaited()

    def test_trigger_without_event_loop(self):
        """Test that a trigger outside an event loop is dropped."""
        assert self.engine.trigger("manual") is None

    @pytest.mark.asyncio
    async def test_on_sync_complete(self):
        """Test the reload hook fires on each transition into idle."""
        callback = Mock()
        self.engine.on_sync_complete(callback)

        await self.engine.sync()
        await self.engine.sync()

        assert callback.call_count == 2

    @pytest.mark.asyncio
    async def test_get_status(self):
        """Test the status dict for polling consumers."""
        self.local_write("p1", "Alice", base=1)
        self.connectivity.set_online(False)

        status = self.engine.get_status()

        assert status["status"] == "idle"
        assert status["online"] is False
        assert status["last_sync"] is None
        assert status["unsynced_count"] == 1
        assert status["dead_letters"] == 0
