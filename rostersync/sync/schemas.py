"""Per-table record shapes validated at the remote boundary.

Rows coming back from the remote authority are loosely typed JSON. Every
row is checked against the schema of its table before it reaches the local
cache: a row missing its id, its version column or a required field, or
carrying a value of the wrong type, raises ``SchemaError`` instead of being
stored. Columns the schema does not know about are dropped.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

__all__ = [
    "SchemaError",
    "EntitySchema",
    "RemoteRecord",
    "SCHEMAS",
    "get_schema",
    "TEMP_ID_PREFIX",
    "is_temp_id",
]

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp_"

# Columns the server fills in on insert/update
SERVER_MANAGED_FIELDS = frozenset({"created_at", "updated_at"})

_STR = (str,)
_BOOL = (bool,)
_INT = (int,)
_LIST = (list,)
_NUM = (int, float)


class SchemaError(ValueError):
    """A record does not match the shape expected for its table."""

    pass


@dataclass(frozen=True)
class RemoteRecord:
    """A validated row received from the remote authority."""

    entity_type: str
    id: str
    payload: dict
    version: Any


@dataclass(frozen=True)
class EntitySchema:
    """Shape of one remote table.

    ``required`` maps column name to accepted Python types; ``optional``
    columns may be missing or null. ``owner_field`` names the column used to
    scope pulls to the current user, if the table is private to its author.
    """

    name: str
    required: dict = field(default_factory=dict)
    optional: dict = field(default_factory=dict)
    id_field: str = "id"
    version_field: str = "updated_at"
    owner_field: Optional[str] = None

    @property
    def known_fields(self) -> frozenset:
        return frozenset(self.required) | frozenset(self.optional) | {
            self.id_field,
            self.version_field,
        } | SERVER_MANAGED_FIELDS

    def validate_remote(self, row: Any) -> RemoteRecord:
        """Validate a pulled row and wrap it as a RemoteRecord."""
        if not isinstance(row, dict):
            raise SchemaError(f"{self.name}: expected an object, got {type(row).__name__}")

        record_id = row.get(self.id_field)
        if not isinstance(record_id, str) or not record_id:
            raise SchemaError(f"{self.name}: row without a valid '{self.id_field}'")

        version = row.get(self.version_field)
        if version is None or isinstance(version, bool) or not isinstance(version, (str, int, float)):
            raise SchemaError(
                f"{self.name}/{record_id}: missing or invalid '{self.version_field}'"
            )

        payload = self._check_fields(row, record_id, partial=False)
        return RemoteRecord(
            entity_type=self.name,
            id=record_id,
            payload=payload,
            version=version,
        )

    def validate_local(self, payload: dict, partial: bool = False) -> dict:
        """Validate a payload written by the domain layer.

        Server-managed columns are not required. With ``partial`` only the
        columns present are type-checked.
        """
        if not isinstance(payload, dict):
            raise SchemaError(f"{self.name}: payload must be a dict")
        record_id = payload.get(self.id_field, "<new>")
        return self._check_fields(payload, record_id, partial=partial, local=True)

    def _check_fields(
        self, row: dict, record_id: str, partial: bool, local: bool = False
    ) -> dict:
        for name, types in self.required.items():
            value = row.get(name)
            if value is None:
                if partial and name not in row:
                    continue
                raise SchemaError(f"{self.name}/{record_id}: missing required field '{name}'")
            if not _matches(value, types):
                raise SchemaError(
                    f"{self.name}/{record_id}: field '{name}' has type "
                    f"{type(value).__name__}"
                )

        for name, types in self.optional.items():
            value = row.get(name)
            if value is not None and not _matches(value, types):
                raise SchemaError(
                    f"{self.name}/{record_id}: field '{name}' has type "
                    f"{type(value).__name__}"
                )

        known = self.known_fields
        unknown = [k for k in row if k not in known]
        if unknown:
            logger.debug(f"{self.name}/{record_id}: dropping unknown fields {unknown}")

        cleaned = {k: v for k, v in row.items() if k in known}
        if local:
            for name in SERVER_MANAGED_FIELDS:
                cleaned.pop(name, None)
        return cleaned


def _matches(value: Any, types: tuple) -> bool:
    # bool is a subclass of int; don't let True pass as a number
    if isinstance(value, bool) and bool not in types:
        return False
    return isinstance(value, types)


SCHEMAS: dict[str, EntitySchema] = {
    schema.name: schema
    for schema in (
        EntitySchema(
            name="seasons",
            required={"name": _STR, "start_date": _STR, "end_date": _STR,
                      "is_active": _BOOL, "archived": _BOOL},
        ),
        EntitySchema(
            name="teams",
            required={"name": _STR, "season_id": _STR},
            optional={"invite_code": _STR},
        ),
        EntitySchema(
            name="players",
            required={"name": _STR, "created_by": _STR},
            optional={"email": _STR, "phone": _STR, "birth_date": _STR,
                      "positions": _LIST, "photo_url": _STR, "user_id": _STR},
        ),
        EntitySchema(
            name="team_memberships",
            required={"player_id": _STR, "team_id": _STR, "role": _STR,
                      "is_active": _BOOL},
            optional={"jersey_number": _INT, "joined_at": _STR, "left_at": _STR,
                      "departure_reason": _STR, "status": _STR},
        ),
        EntitySchema(
            name="events",
            required={"team_id": _STR, "type": _STR, "title": _STR,
                      "start_time": _STR, "end_time": _STR, "created_by": _STR},
            optional={"location": _STR, "opponent": _STR, "opponent_tier": _INT,
                      "notes": _STR, "practice_plan_id": _STR, "sets_won": _INT,
                      "sets_lost": _INT, "set_scores": _LIST, "is_finalized": _BOOL,
                      "finalized_at": _STR, "finalized_by": _STR},
        ),
        EntitySchema(
            name="rsvps",
            required={"event_id": _STR, "player_id": _STR, "status": _STR},
            optional={"responded_by": _STR, "responded_at": _STR, "note": _STR},
        ),
        EntitySchema(
            name="attendance_records",
            required={"event_id": _STR, "player_id": _STR, "status": _STR,
                      "recorded_by": _STR},
            optional={"arrived_at": _STR, "left_at": _STR, "notes": _STR},
        ),
        EntitySchema(
            name="drills",
            required={"name": _STR, "created_by": _STR},
            optional={"description": _STR, "skill_tags": _LIST, "custom_tags": _LIST,
                      "progression_level": _INT, "parent_drill_id": _STR,
                      "min_players": _INT, "max_players": _INT,
                      "equipment_needed": _LIST, "duration_minutes": _NUM,
                      "video_url": _STR, "is_system_drill": _BOOL},
        ),
        EntitySchema(
            name="practice_plans",
            required={"name": _STR, "team_id": _STR, "created_by": _STR},
            optional={"date": _STR, "notes": _STR},
            owner_field="created_by",
        ),
        EntitySchema(
            name="practice_blocks",
            required={"practice_plan_id": _STR, "order_index": _INT, "type": _STR,
                      "duration_minutes": _NUM},
            optional={"drill_id": _STR, "custom_title": _STR, "notes": _STR},
        ),
        EntitySchema(
            name="coach_notes",
            required={"player_id": _STR, "author_id": _STR, "content": _STR},
            optional={"tags": _LIST},
            owner_field="author_id",
        ),
    )
}


def get_schema(entity_type: str) -> EntitySchema:
    """Look up the schema for a table, rejecting unknown tables."""
    try:
        return SCHEMAS[entity_type]
    except KeyError:
        raise SchemaError(f"Unknown entity type: {entity_type}") from None


def is_temp_id(entity_id: str) -> bool:
    """True for ids generated locally for records created offline."""
    return entity_id.startswith(TEMP_ID_PREFIX)
