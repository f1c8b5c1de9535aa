"""Protocol types for SyncEngine dependencies.

Defines the interfaces that SyncEngine requires from its collaborators,
enabling easier testing and looser coupling.
"""

from datetime import datetime
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from .local_store import LocalRecord
from .queue import DeadLetter, MutationQueueEntry
from .schemas import RemoteRecord


@runtime_checkable
class RemoteAuthorityProtocol(Protocol):
    """Interface to the remote source of truth, one table at a time."""

    async def fetch_changed_since(
        self, entity_type: str, since: Optional[datetime]
    ) -> list[RemoteRecord]: ...

    async def fetch_one(self, entity_type: str, entity_id: str) -> Optional[RemoteRecord]: ...

    async def create(self, entity_type: str, payload: dict) -> RemoteRecord: ...

    async def update(
        self, entity_type: str, entity_id: str, payload: dict, expected_version: Any
    ) -> RemoteRecord: ...

    async def delete(self, entity_type: str, entity_id: str, expected_version: Any) -> None: ...


@runtime_checkable
class LocalStoreProtocol(Protocol):
    """Interface for the persistent local cache."""

    def get(self, entity_type: str, entity_id: str) -> Optional[LocalRecord]: ...

    def query(
        self,
        entity_type: str,
        predicate: Optional[Callable[[dict], bool]] = None,
        include_deleted: bool = False,
    ) -> list[LocalRecord]: ...

    def put(
        self,
        entity_type: str,
        entity_id: str,
        payload: dict,
        dirty: bool = True,
        remote_version: Any = None,
    ) -> LocalRecord: ...

    def mark_deleted(self, entity_type: str, entity_id: str) -> bool: ...

    def mark_clean(self, entity_type: str, entity_id: str) -> bool: ...

    def set_remote_version(self, entity_type: str, entity_id: str, version: Any) -> None: ...

    def purge(self, entity_type: str, entity_id: str) -> bool: ...

    def sync_status_snapshot(self) -> dict: ...

    def get_last_sync_at(self) -> Optional[datetime]: ...

    def set_last_sync_at(self, timestamp: datetime) -> None: ...


@runtime_checkable
class MutationQueueProtocol(Protocol):
    """Interface for the durable queue of unconfirmed writes."""

    def enqueue(self, entry: MutationQueueEntry) -> Optional[MutationQueueEntry]: ...

    def peek_all(self) -> list[MutationQueueEntry]: ...

    def get(self, entity_type: str, entity_id: str) -> Optional[MutationQueueEntry]: ...

    def remove(self, entity_type: str, entity_id: str, seq: Optional[int] = None) -> bool: ...

    def record_failure(self, entity_type: str, entity_id: str, error: str) -> None: ...

    def rekey(
        self, entity_type: str, old_id: str, new_id: str, operation: Any, base_version: Any
    ) -> Optional[MutationQueueEntry]: ...

    def dead_letter(
        self, entity_type: str, entity_id: str, reason: str, seq: Optional[int] = None
    ) -> bool: ...

    def dead_letter_exhausted(self, max_attempts: int) -> list[MutationQueueEntry]: ...

    def dead_letters(self) -> list[DeadLetter]: ...

    def requeue_dead_letter(
        self, entity_type: str, entity_id: str
    ) -> Optional[MutationQueueEntry]: ...

    def size(self) -> int: ...


@runtime_checkable
class ConnectivityProtocol(Protocol):
    """Interface for the network presence signal."""

    def is_online(self) -> bool: ...

    def on_change(self, listener: Callable[[bool], None]) -> Callable[[], None]: ...
