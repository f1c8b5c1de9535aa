"""Conflict resolution between queued local mutations and remote state.

Policy is remote-authoritative: when the remote row moved past the version
a local mutation was based on, the remote state survives and the local
mutation is dropped (and reported, never silently swallowed).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .queue import MutationOperation, MutationQueueEntry
from .schemas import RemoteRecord

logger = logging.getLogger(__name__)


class Resolution(str, Enum):
    APPLY_LOCAL = "apply_local"
    ACCEPT_REMOTE = "accept_remote"


@dataclass
class ConflictOutcome:
    """Decision for one conflicting mutation."""

    resolution: Resolution
    entry: MutationQueueEntry
    remote: Optional[RemoteRecord]
    reason: str

    @property
    def remote_wins(self) -> bool:
        return self.resolution is Resolution.ACCEPT_REMOTE


@dataclass
class DiscardReport:
    """A local change that lost to the remote and will not be retried.

    Carries the discarded intent so the caller can re-apply it by hand.
    """

    entity_type: str
    entity_id: str
    operation: MutationOperation
    discarded_payload: dict
    remote_payload: Optional[dict]
    remote_version: Any
    reason: str
    discarded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_outcome(cls, outcome: ConflictOutcome) -> "DiscardReport":
        remote = outcome.remote
        return cls(
            entity_type=outcome.entry.entity_type,
            entity_id=outcome.entry.entity_id,
            operation=outcome.entry.operation,
            discarded_payload=outcome.entry.payload,
            remote_payload=remote.payload if remote else None,
            remote_version=remote.version if remote else None,
            reason=outcome.reason,
        )


def version_key(version: Any) -> tuple:
    """Sort key for remote versions.

    Numbers compare numerically and ISO-8601 strings chronologically; any
    other string falls back to plain text order.
    """
    if isinstance(version, (int, float)) and not isinstance(version, bool):
        return (0, float(version))
    if isinstance(version, str):
        parsed = parse_timestamp(version)
        if parsed is not None:
            return (1, parsed.timestamp())
        try:
            return (0, float(version))
        except ValueError:
            return (2, version)
    return (3, str(version))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as aware UTC, or None if it isn't one."""
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_newer(version: Any, than: Any) -> bool:
    """True if ``version`` is strictly newer than ``than``.

    A mutation with no base version was never confirmed against the
    remote, so any existing remote version counts as newer.
    """
    if version is None:
        return False
    if than is None:
        return True
    return version_key(version) > version_key(than)


class ConflictResolver:
    """Decides which state survives when local and remote disagree."""

    def resolve(
        self, entry: MutationQueueEntry, remote: Optional[RemoteRecord]
    ) -> ConflictOutcome:
        """Resolve a conflict reported for ``entry``.

        Args:
            entry: The queued mutation the remote refused
            remote: The row as the remote has it now, or None if it is gone
        """
        if remote is None:
            return self._resolve_missing(entry)
        if entry.operation is MutationOperation.DELETE:
            return self._resolve_delete(entry, remote)

        if is_newer(remote.version, entry.base_version):
            return ConflictOutcome(
                Resolution.ACCEPT_REMOTE,
                entry,
                remote,
                f"remote version {remote.version} is newer than base {entry.base_version}",
            )
        return ConflictOutcome(
            Resolution.APPLY_LOCAL,
            entry,
            remote,
            f"remote unchanged since base {entry.base_version}",
        )

    def _resolve_delete(
        self, entry: MutationQueueEntry, remote: RemoteRecord
    ) -> ConflictOutcome:
        # The delete survives a remote update only if it was queued after it
        remote_time = parse_timestamp(remote.version)
        if remote_time is not None:
            queued_after = entry.created_at > remote_time
        else:
            queued_after = not is_newer(remote.version, entry.base_version)

        if queued_after:
            return ConflictOutcome(
                Resolution.APPLY_LOCAL,
                entry,
                remote,
                f"delete queued after remote version {remote.version}",
            )
        return ConflictOutcome(
            Resolution.ACCEPT_REMOTE,
            entry,
            remote,
            f"remote updated at {remote.version} after the delete was based",
        )

    def _resolve_missing(self, entry: MutationQueueEntry) -> ConflictOutcome:
        if entry.operation is MutationOperation.DELETE:
            return ConflictOutcome(
                Resolution.APPLY_LOCAL, entry, None, "already deleted remotely"
            )
        return ConflictOutcome(
            Resolution.ACCEPT_REMOTE, entry, None, "deleted remotely"
        )
