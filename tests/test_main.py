"""Tests for application wiring and the periodic trigger."""

import asyncio
import tempfile
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from rostersync.config import Config
from rostersync.main import RosterSyncApp, SyncCoordinator


class FakeEngine:
    def __init__(self):
        self.reasons = []

    async def sync(self, reason="manual"):
        self.reasons.append(reason)


class TestSyncCoordinator:
    """Tests for SyncCoordinator."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = Config()
        self.engine = FakeEngine()
        self.coordinator = SyncCoordinator(self.config, self.engine)

    def teardown_method(self):
        """Clean up."""
        self.coordinator.stop()

    @pytest.mark.asyncio
    async def test_start_registers_sync_job(self):
        """Test that the periodic job uses the configured interval."""
        self.coordinator.start()

        job = self.coordinator.scheduler.get_job("sync_job")
        assert job is not None
        assert job.trigger.interval == timedelta(seconds=60)
        self.coordinator.stop()

    @pytest.mark.asyncio
    async def test_reschedule(self):
        """Test changing the interval of a running scheduler."""
        self.coordinator.start()

        self.coordinator.reschedule(300)

        job = self.coordinator.scheduler.get_job("sync_job")
        assert job.trigger.interval == timedelta(seconds=300)
        assert self.config.sync.interval_seconds == 300
        self.coordinator.stop()

    @pytest.mark.asyncio
    async def test_trigger_sync_runs_once(self):
        """Test that a one-off sync runs on the event loop."""
        self.coordinator.start()

        self.coordinator.trigger_sync()
        for _ in range(50):
            if self.engine.reasons:
                break
            await asyncio.sleep(0.02)
        self.coordinator.stop()

        assert self.engine.reasons == ["manual"]

    def test_trigger_sync_when_stopped(self):
        """Test that triggering a stopped coordinator does nothing."""
        self.coordinator.trigger_sync()

        assert self.engine.reasons == []


class TestRosterSyncApp:
    """Tests for RosterSyncApp wiring."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.patches = [
            patch.object(Config, "get_data_dir", return_value=self.temp_dir / "data"),
            patch.object(Config, "get_log_dir", return_value=self.temp_dir / "logs"),
        ]
        for p in self.patches:
            p.start()

    def teardown_method(self):
        """Clean up."""
        for p in self.patches:
            p.stop()

    @pytest.mark.asyncio
    async def test_components_share_collaborators(self):
        """Test that the repository and engine work on the same store and queue."""
        config = Config(api_url="https://db.example.test/rest/v1", user_id="coach-1")
        app = RosterSyncApp(config)

        try:
            assert app.repository.store is app.sync_engine.store
            assert app.repository.queue is app.sync_engine.queue
            assert app.remote.user_id == "coach-1"
            assert app.store.db_path == self.temp_dir / "data" / "offline_cache.db"
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_local_write_triggers_sync_when_online(self):
        """Test that a local write schedules a sync while online."""
        app = RosterSyncApp(Config())
        try:
            with patch.object(app.sync_engine, "trigger") as trigger:
                app.connectivity.set_online(True)
                app.repository.create("players", {"name": "Alice", "created_by": "coach-1"})
                trigger.assert_called_once_with("local-write")

                trigger.reset_mock()
                app.connectivity.set_online(False)
                app.repository.create("players", {"name": "Bob", "created_by": "coach-1"})
                trigger.assert_not_called()
        finally:
            await app.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        """Test that shutting down twice is safe."""
        app = RosterSyncApp(Config())

        await app.shutdown()
        await app.shutdown()
