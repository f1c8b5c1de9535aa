"""Remote authority client - reads and writes rows on the hosted database.

The backend exposes each table through a PostgREST-style API. Optimistic
concurrency uses the ``updated_at`` column: writes carry an
``updated_at=eq.<expected>`` filter, and an empty representation in the
response means the row moved on (or disappeared) since that version.
"""

import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Optional

from .http_client import BaseApiClient, RemoteConflictError, RemoteRejectedError
from .schemas import RemoteRecord, SERVER_MANAGED_FIELDS, get_schema, is_temp_id

__all__ = ["PostgrestClient", "RemoteAuthority"]

logger = logging.getLogger(__name__)

RETURN_REPRESENTATION = "return=representation"
DEFAULT_PAGE_SIZE = 1000


class PostgrestClient(BaseApiClient):
    """Blocking row-level operations against the REST endpoint."""

    def __init__(self, *args, page_size: int = DEFAULT_PAGE_SIZE, **kwargs):
        super().__init__(*args, **kwargs)
        self.page_size = page_size

    def fetch_rows(
        self,
        table: str,
        version_field: str,
        since: Optional[str] = None,
        filters: Optional[dict] = None,
    ) -> list[dict]:
        """Fetch all rows changed after ``since``, oldest change first.

        Pages through the table so large first pulls are not truncated by the
        server's row cap.
        """
        rows: list[dict] = []
        offset = 0
        while True:
            params = {
                "select": "*",
                "order": f"{version_field}.asc",
                "limit": str(self.page_size),
                "offset": str(offset),
            }
            if since:
                params[version_field] = f"gt.{since}"
            if filters:
                params.update(filters)

            page = self._request("GET", table, params=params) or []
            rows.extend(page)
            if len(page) < self.page_size:
                return rows
            offset += self.page_size

    def fetch_row(self, table: str, row_id: str) -> Optional[dict]:
        """Fetch a single row by id, or None if it does not exist."""
        rows = self._request(
            "GET", table, params={"select": "*", "id": f"eq.{row_id}"}
        ) or []
        return rows[0] if rows else None

    def insert_row(self, table: str, payload: dict) -> Optional[dict]:
        """Insert a row and return it as stored by the server."""
        rows = self._request("POST", table, data=payload, prefer=RETURN_REPRESENTATION)
        return rows[0] if rows else None

    def update_row(
        self,
        table: str,
        row_id: str,
        payload: dict,
        version_field: str,
        expected_version: Any = None,
    ) -> Optional[dict]:
        """Update a row if it is still at ``expected_version``.

        Returns the updated row, or None when no row matched the filters.
        """
        params = {"id": f"eq.{row_id}"}
        if expected_version is not None:
            params[version_field] = f"eq.{expected_version}"
        rows = self._request(
            "PATCH", table, params=params, data=payload, prefer=RETURN_REPRESENTATION
        )
        return rows[0] if rows else None

    def delete_row(
        self,
        table: str,
        row_id: str,
        version_field: str,
        expected_version: Any = None,
    ) -> Optional[dict]:
        """Delete a row if it is still at ``expected_version``.

        Returns the deleted row, or None when no row matched the filters.
        """
        params = {"id": f"eq.{row_id}"}
        if expected_version is not None:
            params[version_field] = f"eq.{expected_version}"
        rows = self._request("DELETE", table, params=params, prefer=RETURN_REPRESENTATION)
        return rows[0] if rows else None


class RemoteAuthority:
    """Async facade over PostgrestClient speaking in RemoteRecords.

    Every blocking HTTP call runs in the event loop's default executor, so
    a slow server never stalls the loop. Rows are validated against their
    table schema before being handed back.
    """

    def __init__(self, client: PostgrestClient, user_id: Optional[str] = None):
        self.client = client
        self.user_id = user_id

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def fetch_changed_since(
        self, entity_type: str, since: Optional[datetime]
    ) -> list[RemoteRecord]:
        """Fetch rows of ``entity_type`` changed after ``since`` (all rows if None)."""
        schema = get_schema(entity_type)
        filters = {}
        if schema.owner_field and self.user_id:
            filters[schema.owner_field] = f"eq.{self.user_id}"

        rows = await self._call(
            self.client.fetch_rows,
            entity_type,
            schema.version_field,
            since.isoformat() if since else None,
            filters or None,
        )
        return [schema.validate_remote(row) for row in rows]

    async def fetch_one(self, entity_type: str, entity_id: str) -> Optional[RemoteRecord]:
        """Fetch the current remote state of one entity."""
        schema = get_schema(entity_type)
        row = await self._call(self.client.fetch_row, entity_type, entity_id)
        return schema.validate_remote(row) if row is not None else None

    async def create(self, entity_type: str, payload: dict) -> RemoteRecord:
        """Insert a new row; the server assigns the id for temp-id records."""
        schema = get_schema(entity_type)
        body = self._outgoing(payload)
        if is_temp_id(str(body.get(schema.id_field, ""))):
            body.pop(schema.id_field)

        try:
            row = await self._call(self.client.insert_row, entity_type, body)
        except RemoteConflictError:
            # Client-chosen id already taken, e.g. a retried insert whose
            # first response was lost
            entity_id = body.get(schema.id_field)
            current = await self.fetch_one(entity_type, entity_id) if entity_id else None
            raise RemoteConflictError(
                f"{entity_type}/{entity_id}: row already exists", current=current
            )
        if row is None:
            raise RemoteRejectedError(f"{entity_type}: insert returned no row")
        return schema.validate_remote(row)

    async def update(
        self, entity_type: str, entity_id: str, payload: dict, expected_version: Any
    ) -> RemoteRecord:
        """Update a row, raising RemoteConflictError if it moved past ``expected_version``."""
        schema = get_schema(entity_type)
        body = self._outgoing(payload)
        body.pop(schema.id_field, None)

        try:
            row = await self._call(
                self.client.update_row,
                entity_type,
                entity_id,
                body,
                schema.version_field,
                expected_version,
            )
        except RemoteConflictError:
            row = None
        if row is None:
            current = await self.fetch_one(entity_type, entity_id)
            raise RemoteConflictError(
                f"{entity_type}/{entity_id}: remote changed since {expected_version}",
                current=current,
            )
        return schema.validate_remote(row)

    async def delete(self, entity_type: str, entity_id: str, expected_version: Any) -> None:
        """Delete a row, raising RemoteConflictError if it moved past ``expected_version``.

        Deleting a row that is already gone counts as success.
        """
        schema = get_schema(entity_type)
        try:
            row = await self._call(
                self.client.delete_row,
                entity_type,
                entity_id,
                schema.version_field,
                expected_version,
            )
        except RemoteConflictError:
            row = None
        if row is not None:
            return

        current = await self.fetch_one(entity_type, entity_id)
        if current is None:
            logger.debug(f"{entity_type}/{entity_id} already deleted remotely")
            return
        raise RemoteConflictError(
            f"{entity_type}/{entity_id}: remote changed since {expected_version}",
            current=current,
        )

    @staticmethod
    def _outgoing(payload: dict) -> dict:
        """Strip columns the server owns from an outgoing body."""
        return {k: v for k, v in payload.items() if k not in SERVER_MANAGED_FIELDS}
