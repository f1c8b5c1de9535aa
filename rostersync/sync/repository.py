"""Offline-first repository - the read/write surface for domain code.

Writes always land in the local store first and are queued for the sync
engine; they are provisional until a push confirms them. Reads that need
the freshest data go to the remote authority while online and fall back
to the local cache otherwise.
"""

import logging
import uuid
from typing import Any, Callable, Optional

from .http_client import RemoteAuthError, RemoteError
from .local_store import LocalRecord
from .protocols import (
    ConnectivityProtocol,
    LocalStoreProtocol,
    MutationQueueProtocol,
    RemoteAuthorityProtocol,
)
from .queue import MutationOperation, MutationQueueEntry
from .schemas import TEMP_ID_PREFIX, SchemaError, get_schema

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """The entity is not in the local cache (or is pending deletion)."""

    pass


def new_temp_id() -> str:
    """Generate an id for an entity created before the server has seen it."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class OfflineRepository:
    """Local-first CRUD over the cached tables."""

    def __init__(
        self,
        store: LocalStoreProtocol,
        queue: MutationQueueProtocol,
        connectivity: ConnectivityProtocol,
        remote: Optional[RemoteAuthorityProtocol] = None,
        prefer_remote_reads: bool = True,
        on_write: Optional[Callable[[MutationQueueEntry], None]] = None,
    ):
        self.store = store
        self.queue = queue
        self.connectivity = connectivity
        self.remote = remote
        self.prefer_remote_reads = prefer_remote_reads
        self._on_write = on_write

    # -- Reads -------------------------------------------------------------

    def get(self, entity_type: str, entity_id: str) -> Optional[dict]:
        """Local view of one entity; None if unknown or pending deletion."""
        record = self.store.get(entity_type, entity_id)
        if record is None or record.tombstone:
            return None
        return record.payload

    def query(
        self, entity_type: str, predicate: Optional[Callable[[dict], bool]] = None
    ) -> list[dict]:
        """Local view of every live entity of a type matching ``predicate``."""
        return [r.payload for r in self.store.query(entity_type, predicate)]

    async def read(self, entity_type: str, entity_id: str) -> Optional[dict]:
        """Read one entity, preferring the remote authority while online.

        A record with an unpushed local change is always served from the
        cache so the caller sees its own write, including one made while
        the remote read was in flight. A successful remote read refreshes
        the cache (or purges it if the row is gone); a failed one falls
        back to it.
        """
        local = self.store.get(entity_type, entity_id)
        if local is not None and local.dirty:
            return None if local.tombstone else local.payload

        if self._should_read_remote():
            try:
                remote = await self.remote.fetch_one(entity_type, entity_id)
            except (RemoteAuthError, SchemaError):
                raise
            except RemoteError as e:
                logger.debug(f"Remote read of {entity_type}/{entity_id} failed: {e}")
            else:
                # A local write may have landed while the fetch was awaited
                latest = self.store.get(entity_type, entity_id)
                if latest is not None and latest.dirty:
                    return None if latest.tombstone else latest.payload
                if remote is None:
                    # Deleted remotely; drop the stale clean copy
                    if latest is not None:
                        self.store.purge(entity_type, entity_id)
                    return None
                self.store.put(
                    entity_type,
                    remote.id,
                    remote.payload,
                    dirty=False,
                    remote_version=remote.version,
                )
                return remote.payload

        if local is None or local.tombstone:
            return None
        return local.payload

    def _should_read_remote(self) -> bool:
        return (
            self.remote is not None
            and self.prefer_remote_reads
            and self.connectivity.is_online()
        )

    # -- Writes ------------------------------------------------------------

    def create(self, entity_type: str, payload: dict) -> LocalRecord:
        """Create an entity locally and queue it for the server.

        Without an explicit id the entity gets a temp id, replaced by the
        server-assigned id once the create is confirmed.
        """
        schema = get_schema(entity_type)
        data = schema.validate_local(payload)
        entity_id = data.get(schema.id_field) or new_temp_id()
        data[schema.id_field] = entity_id

        record = self.store.put(entity_type, entity_id, data, dirty=True)
        self._enqueue(entity_type, entity_id, MutationOperation.CREATE, data, None)
        return record

    def update(self, entity_type: str, entity_id: str, changes: dict) -> LocalRecord:
        """Apply ``changes`` on top of the current local state and queue the result."""
        schema = get_schema(entity_type)
        current = self._require(entity_type, entity_id)

        merged = {**current.payload, **changes, schema.id_field: entity_id}
        data = schema.validate_local(merged)

        record = self.store.put(entity_type, entity_id, data, dirty=True)
        self._enqueue(
            entity_type, entity_id, MutationOperation.UPDATE, data, current.remote_version
        )
        return record

    def delete(self, entity_type: str, entity_id: str) -> bool:
        """Delete an entity locally and queue the remote delete.

        An entity that was created offline and never pushed simply
        disappears. Returns False if the entity is not cached.
        """
        get_schema(entity_type)
        current = self.store.get(entity_type, entity_id)
        if current is None or current.tombstone:
            return False

        self.store.mark_deleted(entity_type, entity_id)
        stored = self._enqueue(
            entity_type,
            entity_id,
            MutationOperation.DELETE,
            current.payload,
            current.remote_version,
        )
        if stored is None:
            self.store.purge(entity_type, entity_id)
        return True

    def _require(self, entity_type: str, entity_id: str) -> LocalRecord:
        record = self.store.get(entity_type, entity_id)
        if record is None or record.tombstone:
            raise RecordNotFoundError(f"{entity_type}/{entity_id} not found")
        return record

    def _enqueue(
        self,
        entity_type: str,
        entity_id: str,
        operation: MutationOperation,
        payload: dict,
        base_version: Any,
    ) -> Optional[MutationQueueEntry]:
        stored = self.queue.enqueue(
            MutationQueueEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                payload=payload,
                base_version=base_version,
            )
        )
        logger.debug(f"Queued {operation.value} {entity_type}/{entity_id}")
        if stored is not None and self._on_write is not None:
            try:
                self._on_write(stored)
            except Exception:
                logger.exception("Error in write hook")
        return stored
