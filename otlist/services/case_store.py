from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict

from otlist.models.case import (
    CaseCreate,
    CaseStatus,
    CaseUpdate,
    DeferralEntry,
    SurgicalCase,
    case_from_row,
    case_to_row,
    changes_to_row,
    deferral_from_row,
    deferral_to_row,
)
from otlist.services.audit import ActivityLog, describe_changes
from otlist.services.exceptions import NotFound, PersistenceFailure
from otlist.services.record_store import RecordStore
from otlist.services.transitions import (
    is_confirmation_only,
    resolve_update,
    utc_now,
    validate_new_case,
    validate_update,
)

logger = logging.getLogger(__name__)

SYNCED_TABLES = ("cases", "deferral_history")


class CaseStore:
    """In-memory case collection for one session, mirrored against the record store.

    The store is the only writer of its own memory: local writes replace the
    entry once the remote write has succeeded, and changes made by other
    sessions arrive through the record store subscription (``start_sync``).
    Applying a change is idempotent, so echoes of this store's own writes
    are harmless.
    """

    def __init__(self, records: RecordStore, activity_log: ActivityLog, current_user: str) -> None:
        self._records = records
        self.activity_log = activity_log
        self.current_user = current_user
        self._cases: dict[str, SurgicalCase] = {}
        self._sync_queue: asyncio.Queue | None = None
        self._sync_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def load(self) -> None:
        case_rows, deferral_rows = await asyncio.gather(
            self._records.query("cases", order="created_at DESC"),
            self._records.query("deferral_history", order="deferred_at DESC"),
        )
        history: dict[str, list[DeferralEntry]] = defaultdict(list)
        for row in deferral_rows:
            history[row["case_id"]].append(deferral_from_row(row))

        self._cases = {row["id"]: case_from_row(row, history.get(row["id"])) for row in case_rows}
        logger.info("Loaded %d cases for %s", len(self._cases), self.current_user)

    def list(self) -> list[SurgicalCase]:
        return list(self._cases.values())

    def get(self, case_id: str) -> SurgicalCase:
        case = self._cases.get(case_id)
        if case is None:
            raise NotFound(case_id)
        return case

    async def _deferrals_for(self, case_id: str) -> list[DeferralEntry]:
        rows = await self._records.query(
            "deferral_history", {"case_id": case_id}, order="deferred_at DESC"
        )
        return [deferral_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def create(self, data: CaseCreate) -> SurgicalCase:
        validate_new_case(data)
        now = utc_now()
        case = SurgicalCase(
            id=str(uuid.uuid4()),
            **data.model_dump(),
            created_at=now,
            updated_at=now,
        )
        if case.patient_type == "ward":
            case.admission_source = None

        stored = await self._records.insert("cases", case_to_row(case))
        deferrals: list[DeferralEntry] = []
        if case.status == CaseStatus.DEFERRED:
            entry = DeferralEntry(reason=case.deferral_reason, original_date=case.date, deferred_at=now)
            try:
                await self._records.insert("deferral_history", deferral_to_row(case.id, entry))
            except PersistenceFailure:
                # Undo the case row; its DELETE event also drops any mirrored copy
                try:
                    await self._records.delete("cases", case.id)
                except PersistenceFailure:
                    logger.error("Case %s was written but its deferral history was not", case.id)
                raise
            deferrals.append(entry)

        created = case_from_row(stored, deferrals)
        self._cases[created.id] = created
        logger.info("Created case %s (%s)", created.id, created.status)
        await self.activity_log.record("created", created.patient_name, "New case created", self.current_user)
        return created

    async def update(self, case_id: str, update: CaseUpdate) -> SurgicalCase:
        original = self.get(case_id)
        if is_confirmation_only(original, update):
            return await self.set_ot_list_confirmation(case_id, update.confirmed_on_ot_list)

        validate_update(original, update)
        now = utc_now()
        resolved = resolve_update(original, update, now=now)

        # Two separate writes: a failure between them leaves the deferral row in place
        if resolved.deferral_entry is not None:
            await self._records.insert(
                "deferral_history", deferral_to_row(case_id, resolved.deferral_entry)
            )
        try:
            stored = await self._records.update(
                "cases", case_id, changes_to_row({**resolved.changes, "updated_at": now})
            )
        except PersistenceFailure:
            if resolved.deferral_entry is not None:
                logger.warning(
                    "Deferral history for case %s was written but the case update failed", case_id
                )
            raise
        if stored is None:
            self._cases.pop(case_id, None)
            raise NotFound(case_id)

        updated = case_from_row(stored, await self._deferrals_for(case_id))
        self._cases[case_id] = updated
        logger.info(
            "Updated case %s: %s -> %s (rebook_count=%d)",
            case_id, original.status, updated.status, updated.rebook_count,
        )
        await self.activity_log.record(
            "updated",
            updated.patient_name,
            describe_changes(original, resolved.changes),
            self.current_user,
        )
        return updated

    async def set_ot_list_confirmation(self, case_id: str, confirmed: bool) -> SurgicalCase:
        """Flip the OT list flag without going through the edit workflow."""
        original = self.get(case_id)
        if original.confirmed_on_ot_list == confirmed:
            return original

        changes = {"confirmed_on_ot_list": confirmed}
        stored = await self._records.update(
            "cases", case_id, changes_to_row({**changes, "updated_at": utc_now()})
        )
        if stored is None:
            self._cases.pop(case_id, None)
            raise NotFound(case_id)

        updated = case_from_row(stored, original.deferral_history)
        self._cases[case_id] = updated
        await self.activity_log.record(
            "updated", updated.patient_name, describe_changes(original, changes), self.current_user
        )
        return updated

    async def delete(self, case_id: str) -> None:
        case = self.get(case_id)
        deleted = await self._records.delete("cases", case_id)
        self._cases.pop(case_id, None)
        if not deleted:
            raise NotFound(case_id)
        logger.info("Deleted case %s", case_id)
        await self.activity_log.record("deleted", case.patient_name, "Case deleted", self.current_user)

    # ------------------------------------------------------------------
    # Realtime mirroring
    # ------------------------------------------------------------------
    async def apply_change(self, event: dict) -> None:
        """Merge one record store change event into memory."""
        table = event.get("table")
        kind = event.get("event_type")
        row = event.get("row") or {}

        if table == "cases":
            if kind == "DELETE":
                self._cases.pop(row["id"], None)
            elif kind in ("INSERT", "UPDATE"):
                self._cases[row["id"]] = case_from_row(row, await self._deferrals_for(row["id"]))
        elif table == "deferral_history" and kind == "INSERT":
            case = self._cases.get(row["case_id"])
            if case is not None:
                history = await self._deferrals_for(case.id)
                self._cases[case.id] = case.model_copy(update={"deferral_history": history})

    async def _sync_loop(self) -> None:
        while True:
            event = await self._sync_queue.get()
            try:
                await self.apply_change(event)
            except Exception:
                logger.exception("Failed to apply %s change from store", event.get("table"))

    def start_sync(self) -> None:
        if self._sync_task is not None:
            return
        self._sync_queue = self._records.subscribe(SYNCED_TABLES)
        self._sync_task = asyncio.create_task(self._sync_loop())

    async def stop_sync(self) -> None:
        if self._sync_task is None:
            return
        self._sync_task.cancel()
        try:
            await self._sync_task
        except asyncio.CancelledError:
            pass
        self._records.unsubscribe(self._sync_queue)
        self._sync_task = None
        self._sync_queue = None
