"""Persistent store contract over the ``cases`` and ``deferral_history`` tables.

Every successful write is committed and then published on the event bus as
``{"event_type": "INSERT" | "UPDATE" | "DELETE", "table": ..., "row": {...}}``
so other sessions can mirror it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from otlist.database import DatabaseAdapter
from otlist.services.event_bus import RecordEventBus, event_bus
from otlist.services.exceptions import PersistenceFailure

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({"INSERT", "UPDATE", "DELETE"})

TABLE_COLUMNS: dict[str, frozenset[str]] = {
    "cases": frozenset({
        "id", "patient_name", "age", "sex", "origin", "place_of_residence",
        "diagnosis", "procedure", "doctor", "specialty", "date", "time",
        "fasting_time", "contact_details", "is_referral", "referral_details",
        "patient_type", "ward_number", "admission_source", "priority", "status",
        "confirmed_on_ot_list", "case_type", "cancellation_reason",
        "cancellation_history", "deferral_reason", "original_date",
        "rebook_count", "notes", "created_at", "updated_at",
    }),
    "deferral_history": frozenset({
        "id", "case_id", "reason", "original_date", "deferred_at", "created_at",
    }),
}


def _quote(name: str) -> str:
    return f'"{name}"'


def _check_columns(table: str, columns) -> None:
    allowed = TABLE_COLUMNS.get(table)
    if allowed is None:
        raise ValueError(f"Unknown table {table!r}")
    unknown = [c for c in columns if c not in allowed]
    if unknown:
        raise ValueError(f"Unknown columns for {table}: {', '.join(sorted(unknown))}")


def _parse_order(table: str, order: str | None) -> str:
    if not order:
        return ""
    parts = order.split()
    column = parts[0]
    direction = parts[1].upper() if len(parts) > 1 else "ASC"
    if direction not in ("ASC", "DESC"):
        raise ValueError(f"Invalid sort direction {direction!r}")
    _check_columns(table, [column])
    return f" ORDER BY {_quote(column)} {direction}"


class RecordStore:
    def __init__(self, db: DatabaseAdapter, bus: RecordEventBus | None = None) -> None:
        self._db = db
        self._bus = bus or event_bus

    async def _write(self, operation: str, table: str, query: str, params: list) -> dict | None:
        try:
            # fetch_all drains RETURNING so the statement is finished before commit
            rows = await self._db.fetch_all(query, params)
            await self._db.commit()
        except Exception as exc:
            logger.error("Store %s on %s failed: %s", operation, table, exc)
            try:
                await self._db.rollback()
            except Exception:
                logger.debug("Rollback after failed %s on %s also failed", operation, table)
            raise PersistenceFailure(operation, table, exc) from exc
        return dict(rows[0]) if rows else None

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict:
        _check_columns(table, row)
        columns = list(row)
        query = (
            f"INSERT INTO {table} ({', '.join(_quote(c) for c in columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) RETURNING *"
        )
        stored = await self._write("insert", table, query, [row[c] for c in columns])
        if stored is None:
            raise PersistenceFailure("insert", table)
        await self._bus.publish(table, {"event_type": "INSERT", "row": stored})
        return stored

    async def update(self, table: str, record_id: Any, fields: Mapping[str, Any]) -> dict | None:
        """Apply ``fields`` to one row. Returns the stored row, or None when it does not exist."""
        _check_columns(table, fields)
        columns = [c for c in fields if c != "id"]
        if not columns:
            rows = await self.query(table, {"id": record_id})
            return rows[0] if rows else None
        assignments = ", ".join(f"{_quote(c)} = ?" for c in columns)
        query = f"UPDATE {table} SET {assignments} WHERE id = ? RETURNING *"
        params = [fields[c] for c in columns] + [record_id]
        stored = await self._write("update", table, query, params)
        if stored is not None:
            await self._bus.publish(table, {"event_type": "UPDATE", "row": stored})
        return stored

    async def delete(self, table: str, record_id: Any) -> bool:
        _check_columns(table, ["id"])
        query = f"DELETE FROM {table} WHERE id = ? RETURNING id"
        stored = await self._write("delete", table, query, [record_id])
        if stored is None:
            return False
        await self._bus.publish(table, {"event_type": "DELETE", "row": {"id": record_id}})
        return True

    async def query(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order: str | None = None,
    ) -> list[dict]:
        filters = filters or {}
        _check_columns(table, filters)
        where = ""
        if filters:
            where = " WHERE " + " AND ".join(f"{_quote(c)} = ?" for c in filters)
        query = f"SELECT * FROM {table}{where}{_parse_order(table, order)}"
        try:
            rows = await self._db.fetch_all(query, list(filters.values()))
        except Exception as exc:
            logger.error("Store query on %s failed: %s", table, exc)
            raise PersistenceFailure("query", table, exc) from exc
        return [dict(row) for row in rows]

    def subscribe(
        self,
        tables: list[str] | tuple[str, ...],
        event_types: list[str] | tuple[str, ...] | None = None,
    ) -> asyncio.Queue:
        for table in tables:
            _check_columns(table, [])
        unknown = set(event_types or ()) - EVENT_TYPES
        if unknown:
            raise ValueError(f"Unknown event types: {', '.join(sorted(unknown))}")
        return self._bus.subscribe(tables, event_types)

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._bus.unsubscribe(queue)
