"""Identity provider adapter: one ``CaseStore`` per authenticated user.

Authentication itself happens elsewhere; the register only needs the display
name of the signed-in user to attribute activity log entries.
"""

from __future__ import annotations

import logging

from otlist.config import DEFAULT_USERNAME
from otlist.database import DatabaseAdapter, get_db
from otlist.services.audit import ActivityLog
from otlist.services.case_store import CaseStore
from otlist.services.event_bus import RecordEventBus, event_bus
from otlist.services.record_store import RecordStore

logger = logging.getLogger(__name__)


def username_from_email(email: str) -> str:
    """``jane.doe@hospital.org`` -> ``Jane.doe``."""
    local = (email or "").split("@")[0].strip() or DEFAULT_USERNAME
    return local[:1].upper() + local[1:]


class SessionRegistry:
    def __init__(self, bus: RecordEventBus | None = None) -> None:
        self._bus = bus or event_bus
        self._sessions: dict[str, CaseStore] = {}

    async def open(self, email: str, db: DatabaseAdapter | None = None) -> CaseStore:
        username = username_from_email(email)
        existing = self._sessions.get(username)
        if existing is not None:
            return existing

        db = db or await get_db()
        activity_log = ActivityLog(db, owner=username)
        await activity_log.load()
        store = CaseStore(RecordStore(db, self._bus), activity_log, current_user=username)
        await store.load()
        store.start_sync()

        self._sessions[username] = store
        logger.info("Session opened for %s", username)
        return store

    def get(self, username: str | None) -> CaseStore | None:
        if not username:
            return None
        return self._sessions.get(username)

    async def close(self, username: str) -> bool:
        """End a session: stop mirroring and clear the user's activity log."""
        store = self._sessions.pop(username, None)
        if store is None:
            return False
        await store.stop_sync()
        await store.activity_log.clear()
        logger.info("Session closed for %s", username)
        return True

    async def shutdown(self) -> None:
        """Stop every session's sync task without clearing activity logs."""
        for store in self._sessions.values():
            await store.stop_sync()
        self._sessions.clear()


sessions = SessionRegistry()
