from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Mapping

from otlist.config import ACTIVITY_LOG_LIMIT
from otlist.database import DatabaseAdapter
from otlist.models.activity import ActivityAction, ActivityLogEntry
from otlist.models.case import SurgicalCase
from otlist.services.transitions import utc_now

logger = logging.getLogger(__name__)


def _plain(value: Any) -> str:
    if value is None or value == "":
        return "none"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value) or "none"
    return str(value)


def _yes_no(value: Any) -> str:
    return "Yes" if value else "No"


def _confirmed(value: Any) -> str:
    return "Confirmed" if value else "Not confirmed"


# (field, label, formatter); order is the order changes are listed in
_DIFFED_FIELDS: list[tuple[str, str, Callable[[Any], str]]] = [
    ("patient_name", "Name", _plain),
    ("age", "Age", _plain),
    ("status", "Status", _plain),
    ("date", "Date", _plain),
    ("time", "Time", _plain),
    ("doctor", "Doctor", _plain),
    ("specialty", "Specialty", _plain),
    ("case_type", "Case type", _plain),
    ("diagnoses", "Diagnosis", _plain),
    ("procedures", "Procedure", _plain),
    ("priority", "Priority", _yes_no),
    ("confirmed_on_ot_list", "OT List", _confirmed),
    ("rebook_count", "Rebook count", _plain),
]

# Reasons are reported as the new value only, and only when set
_REASON_FIELDS = [
    ("cancellation_reason", "Cancellation reason"),
    ("deferral_reason", "Deferral reason"),
]


def describe_changes(original: SurgicalCase, changes: Mapping[str, Any]) -> str:
    """One-line summary of the fields in ``changes`` that differ from ``original``."""
    parts = []
    for name, label, fmt in _DIFFED_FIELDS:
        if name not in changes:
            continue
        before, after = fmt(getattr(original, name)), fmt(changes[name])
        if before == after:
            continue
        parts.append(f"{label}: {before} → {after}")

    added = len(changes.get("cancellation_history") or []) - len(original.cancellation_history)
    if added > 0:
        parts.append(f"Rebooked after cancellation: {changes['cancellation_history'][-1].reason}")

    for name, label in _REASON_FIELDS:
        after = changes.get(name)
        if after and after != getattr(original, name):
            parts.append(f"{label}: {after}")

    return ", ".join(parts) if parts else "Minor updates"


class ActivityLog:
    """Capped, newest-first activity trail for one session owner."""

    def __init__(self, db: DatabaseAdapter, owner: str, limit: int = ACTIVITY_LOG_LIMIT) -> None:
        self._db = db
        self.owner = owner
        self.limit = limit
        self._entries: list[ActivityLogEntry] = []

    async def load(self) -> None:
        rows = await self._db.fetch_all(
            'SELECT id, action, patient_name, changes, timestamp, "user" FROM activity_log'
            " WHERE owner = ? ORDER BY timestamp DESC LIMIT ?",
            (self.owner, self.limit),
        )
        self._entries = [ActivityLogEntry(**dict(row)) for row in rows]

    def entries(self) -> list[ActivityLogEntry]:
        return list(self._entries)

    async def record(
        self,
        action: ActivityAction,
        patient_name: str,
        changes: str,
        user: str,
    ) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            id=uuid.uuid4().hex,
            action=action,
            patient_name=patient_name,
            changes=changes,
            timestamp=utc_now(),
            user=user,
        )
        self._entries = [entry, *self._entries][: self.limit]

        # The case write already succeeded; a log write failure is reported, not raised
        try:
            await self._db.execute(
                'INSERT INTO activity_log (id, owner, action, patient_name, changes, timestamp, "user")'
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (entry.id, self.owner, entry.action, entry.patient_name, entry.changes, entry.timestamp, entry.user),
            )
            await self._db.execute(
                "DELETE FROM activity_log WHERE owner = ? AND id NOT IN"
                " (SELECT id FROM activity_log WHERE owner = ? ORDER BY timestamp DESC LIMIT ?)",
                (self.owner, self.owner, self.limit),
            )
            await self._db.commit()
        except Exception as exc:
            logger.warning("Failed to persist activity log entry for %s: %s", self.owner, exc)
            try:
                await self._db.rollback()
            except Exception:
                logger.debug("Rollback after failed activity log write also failed")
        return entry

    async def clear(self) -> None:
        self._entries = []
        await self._db.execute("DELETE FROM activity_log WHERE owner = ?", (self.owner,))
        await self._db.commit()
