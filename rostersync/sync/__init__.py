"""Sync module - offline cache, mutation queue and the push/pull engine."""

from .broadcaster import StatusBroadcaster
from .conflict import ConflictOutcome, ConflictResolver, DiscardReport, Resolution
from .connectivity import ConnectivityMonitor, LinkStatePoller
from .http_client import (
    RemoteAuthError,
    RemoteConflictError,
    RemoteError,
    RemoteRejectedError,
    RemoteTransientError,
)
from .local_store import LocalRecord, LocalStore
from .protocols import (
    ConnectivityProtocol,
    LocalStoreProtocol,
    MutationQueueProtocol,
    RemoteAuthorityProtocol,
)
from .queue import DeadLetter, MutationOperation, MutationQueue, MutationQueueEntry
from .remote import PostgrestClient, RemoteAuthority
from .repository import OfflineRepository, RecordNotFoundError
from .retry import RetryConfig, retry_with_backoff
from .schemas import RemoteRecord, SchemaError
from .status import StatusSnapshot, SyncStatusView, format_last_sync
from .sync_engine import SyncEngine, SyncSession, SyncStats, SyncStatus

__all__ = [
    "StatusBroadcaster",
    "ConflictOutcome",
    "ConflictResolver",
    "DiscardReport",
    "Resolution",
    "ConnectivityMonitor",
    "LinkStatePoller",
    "RemoteAuthError",
    "RemoteConflictError",
    "RemoteError",
    "RemoteRejectedError",
    "RemoteTransientError",
    "LocalRecord",
    "LocalStore",
    "ConnectivityProtocol",
    "LocalStoreProtocol",
    "MutationQueueProtocol",
    "RemoteAuthorityProtocol",
    "DeadLetter",
    "MutationOperation",
    "MutationQueue",
    "MutationQueueEntry",
    "PostgrestClient",
    "RemoteAuthority",
    "OfflineRepository",
    "RecordNotFoundError",
    "RetryConfig",
    "retry_with_backoff",
    "RemoteRecord",
    "SchemaError",
    "StatusSnapshot",
    "SyncStatusView",
    "format_last_sync",
    "SyncEngine",
    "SyncSession",
    "SyncStats",
    "SyncStatus",
]
