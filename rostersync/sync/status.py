"""UI-facing view of the sync state, polled by status indicators."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .protocols import ConnectivityProtocol
from .sync_engine import SyncEngine, SyncStatus


@dataclass
class StatusSnapshot:
    synced: bool
    syncing: bool
    error: bool
    offline: bool
    pending_count: int
    last_sync: Optional[datetime]
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "synced": self.synced,
            "syncing": self.syncing,
            "error": self.error,
            "offline": self.offline,
            "pending_count": self.pending_count,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "last_sync_formatted": format_last_sync(self.last_sync),
            "last_error": self.last_error,
        }


class SyncStatusView:
    """Combines engine state, queue size and connectivity for display."""

    def __init__(self, engine: SyncEngine, connectivity: Optional[ConnectivityProtocol] = None):
        self.engine = engine
        self.connectivity = connectivity or engine.connectivity

    def snapshot(self) -> StatusSnapshot:
        status = self.engine.get_sync_status()
        pending = self.engine.get_unsynced_count()
        return StatusSnapshot(
            synced=status is SyncStatus.IDLE and pending == 0,
            syncing=status is SyncStatus.SYNCING,
            error=status is SyncStatus.ERROR,
            offline=not self.connectivity.is_online(),
            pending_count=pending,
            last_sync=self.engine.get_last_sync_time(),
            last_error=self.engine.session.last_error,
        )


def format_last_sync(last_sync: Optional[datetime], now: Optional[datetime] = None) -> Optional[str]:
    """Human-readable age of the last sync, e.g. "5 minutes ago"."""
    if last_sync is None:
        return None
    now = now or datetime.now(timezone.utc)
    if last_sync.tzinfo is None:
        last_sync = last_sync.replace(tzinfo=timezone.utc)

    seconds = max(0, int((now - last_sync).total_seconds()))
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return _ago(seconds // 60, "minute")
    if seconds < 86400:
        return _ago(seconds // 3600, "hour")
    return _ago(seconds // 86400, "day")


def _ago(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'} ago"
