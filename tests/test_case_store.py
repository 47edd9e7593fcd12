"""Tests for the case store: persistence, deferral history, failures, mirroring."""

import asyncio
import datetime as dt
import sqlite3

import pytest
import pytest_asyncio

from otlist.models.case import CaseStatus, CaseUpdate
from otlist.services.audit import ActivityLog
from otlist.services.case_store import CaseStore
from otlist.services.exceptions import NotFound, PersistenceFailure, ValidationFailure
from otlist.services.record_store import RecordStore


class FlakyAdapter:
    """Wraps a database adapter and fails statements starting with ``fail_on``."""

    def __init__(self, inner):
        self.inner = inner
        self.engine = inner.engine
        self.fail_on: str | None = None

    async def fetch_all(self, query, params=None):
        if self.fail_on and query.lstrip().startswith(self.fail_on):
            raise sqlite3.OperationalError("simulated outage")
        return await self.inner.fetch_all(query, params)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.fixture
def flaky(db):
    return FlakyAdapter(db)


@pytest_asyncio.fixture
async def flaky_store(db, flaky, bus):
    case_store = CaseStore(RecordStore(flaky, bus), ActivityLog(db, owner="Tester"), current_user="Tester")
    await case_store.load()
    yield case_store
    await case_store.stop_sync()


async def _wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestCreate:
    async def test_create_assigns_identity_and_defaults(self, store, case_data):
        case = await store.create(case_data())
        assert case.id
        assert case.status == CaseStatus.SCHEDULED
        assert case.rebook_count == 0
        assert case.cancellation_history == []
        assert case.deferral_history == []
        assert case.confirmed_on_ot_list is False
        assert case.created_at == case.updated_at
        assert store.list() == [case]

    async def test_create_logs_activity(self, store, case_data):
        await store.create(case_data())
        entries = store.activity_log.entries()
        assert len(entries) == 1
        assert entries[0].action == "created"
        assert entries[0].changes == "New case created"
        assert entries[0].user == "Tester"

    async def test_create_persists_round_trip(self, store, records, db, case_data):
        case = await store.create(case_data(diagnoses=["Gallstones", "Obesity"], time="08:30"))
        reloaded = CaseStore(records, ActivityLog(db, owner="Other"), current_user="Other")
        await reloaded.load()
        assert reloaded.get(case.id) == case

    async def test_create_rejects_missing_diagnosis(self, store, case_data):
        with pytest.raises(ValidationFailure):
            await store.create(case_data(diagnoses=[]))
        assert store.list() == []
        assert store.activity_log.entries() == []

    async def test_create_failure_leaves_memory_empty(self, flaky_store, flaky, case_data):
        flaky.fail_on = "INSERT INTO cases"
        with pytest.raises(PersistenceFailure):
            await flaky_store.create(case_data())
        assert flaky_store.list() == []
        assert flaky_store.activity_log.entries() == []

    async def test_create_deferred_writes_history_row(self, store, records, case_data):
        case = await store.create(case_data(status="deferred", deferral_reason="Patient request"))
        assert case.status == CaseStatus.DEFERRED
        assert len(case.deferral_history) == 1
        assert case.deferral_history[0].reason == "Patient request"
        assert case.deferral_history[0].original_date == case.date

        rows = await records.query("deferral_history", {"case_id": case.id})
        assert len(rows) == 1
        assert rows[0]["reason"] == "Patient request"

    async def test_failed_history_write_undoes_deferred_create(self, flaky_store, flaky, records, case_data):
        flaky_store.start_sync()
        flaky.fail_on = "INSERT INTO deferral_history"
        with pytest.raises(PersistenceFailure):
            await flaky_store.create(case_data(status="deferred", deferral_reason="Patient request"))
        await asyncio.sleep(0.05)
        assert flaky_store.list() == []
        assert flaky_store.activity_log.entries() == []
        assert await records.query("cases") == []


class TestUpdate:
    async def test_cancel_with_rebook_date(self, store, case_data):
        case = await store.create(case_data(date=dt.date(2025, 6, 1)))
        updated = await store.update(
            case.id,
            CaseUpdate(status="cancelled", cancellation_reason="Surgeon unavailable", new_date=dt.date(2025, 6, 15)),
        )
        assert updated.status == CaseStatus.SCHEDULED
        assert updated.date == dt.date(2025, 6, 15)
        assert updated.rebook_count == 1
        assert updated.cancellation_reason is None
        assert len(updated.cancellation_history) == 1
        entry = updated.cancellation_history[0]
        assert entry.reason == "Surgeon unavailable"
        assert entry.original_date == dt.date(2025, 6, 1)
        assert entry.cancelled_at
        assert store.get(case.id) == updated

    async def test_date_only_change(self, store, case_data):
        case = await store.create(case_data(date=dt.date(2025, 7, 1)))
        await store.update(case.id, CaseUpdate(date=dt.date(2025, 7, 3)))
        await store.update(case.id, CaseUpdate(date=dt.date(2025, 7, 5)))
        updated = await store.update(case.id, CaseUpdate(date=dt.date(2025, 7, 10)))
        assert updated.rebook_count == 3
        assert updated.cancellation_history == []
        assert updated.deferral_history == []

    async def test_deferral_writes_one_history_row(self, store, records, case_data):
        case = await store.create(case_data())
        deferred = await store.update(
            case.id, CaseUpdate(status="deferred", deferral_reason="Medical optimization required")
        )
        assert deferred.deferral_reason == "Medical optimization required"
        assert len(deferred.deferral_history) == 1
        assert deferred.deferral_history[0].original_date == case.date

        rows = await records.query("deferral_history", {"case_id": case.id})
        assert len(rows) == 1

        restored = await store.update(case.id, CaseUpdate(status="scheduled"))
        assert restored.deferral_reason is None
        assert len(restored.deferral_history) == 1
        assert len(await records.query("deferral_history", {"case_id": case.id})) == 1

    async def test_update_refreshes_updated_at(self, store, case_data):
        case = await store.create(case_data())
        updated = await store.update(case.id, CaseUpdate(notes="Bring imaging"))
        assert updated.updated_at >= case.updated_at
        assert updated.notes == "Bring imaging"
        assert updated.rebook_count == 0

    async def test_update_logs_changes(self, store, case_data):
        case = await store.create(case_data())
        await store.update(case.id, CaseUpdate(status="cancelled", cancellation_reason="Patient request"))
        entry = store.activity_log.entries()[0]
        assert entry.action == "updated"
        assert entry.changes == "Status: scheduled → cancelled, Cancellation reason: Patient request"

    async def test_update_unknown_case(self, store):
        with pytest.raises(NotFound):
            await store.update("missing", CaseUpdate(notes="x"))

    async def test_invalid_update_changes_nothing(self, store, case_data):
        case = await store.create(case_data())
        with pytest.raises(ValidationFailure):
            await store.update(case.id, CaseUpdate(status="deferred"))
        assert store.get(case.id) == case
        assert len(store.activity_log.entries()) == 1

    async def test_failed_update_leaves_memory_unchanged(self, flaky_store, flaky, case_data):
        flaky_store.start_sync()
        case = await flaky_store.create(case_data())
        flaky.fail_on = "UPDATE cases"
        with pytest.raises(PersistenceFailure):
            await flaky_store.update(case.id, CaseUpdate(date=dt.date(2025, 6, 9)))
        await asyncio.sleep(0.05)
        assert flaky_store.get(case.id) == case
        assert len(flaky_store.activity_log.entries()) == 1

    async def test_failed_case_write_after_deferral_row(self, flaky_store, flaky, records, case_data):
        flaky_store.start_sync()
        case = await flaky_store.create(case_data())
        flaky.fail_on = "UPDATE cases"
        with pytest.raises(PersistenceFailure):
            await flaky_store.update(case.id, CaseUpdate(status="deferred", deferral_reason="Patient request"))
        await asyncio.sleep(0.05)
        # The two writes are not atomic: the history row stays behind
        assert len(await records.query("deferral_history", {"case_id": case.id})) == 1
        current = flaky_store.get(case.id)
        assert current.status == CaseStatus.SCHEDULED
        assert current.deferral_reason is None
        assert current.rebook_count == 0


class TestOTListConfirmation:
    async def test_toggle_only_touches_flag(self, store, case_data):
        case = await store.create(case_data())
        case = await store.update(case.id, CaseUpdate(date=dt.date(2025, 6, 4)))
        confirmed = await store.set_ot_list_confirmation(case.id, True)
        assert confirmed.confirmed_on_ot_list is True
        assert confirmed.rebook_count == case.rebook_count
        assert confirmed.status == case.status
        assert confirmed.cancellation_history == case.cancellation_history
        assert confirmed.deferral_history == case.deferral_history
        assert confirmed.updated_at >= case.updated_at

    async def test_flag_only_edit_goes_through_toggle(self, store, case_data):
        case = await store.create(case_data())
        updated = await store.update(case.id, CaseUpdate(confirmed_on_ot_list=True, doctor=case.doctor))
        assert updated.confirmed_on_ot_list is True
        assert updated.rebook_count == 0
        assert store.activity_log.entries()[0].changes == "OT List: Not confirmed → Confirmed"

    async def test_same_value_is_a_no_op(self, store, case_data):
        case = await store.create(case_data())
        assert await store.set_ot_list_confirmation(case.id, False) == case
        assert len(store.activity_log.entries()) == 1


class TestDelete:
    async def test_delete_removes_case_and_logs_once(self, store, records, case_data):
        case = await store.create(case_data())
        await store.update(case.id, CaseUpdate(status="deferred", deferral_reason="Patient request"))
        await store.delete(case.id)
        assert store.list() == []
        deleted = [e for e in store.activity_log.entries() if e.action == "deleted"]
        assert len(deleted) == 1
        assert deleted[0].patient_name == case.patient_name
        assert await records.query("cases") == []
        assert await records.query("deferral_history") == []

    async def test_failed_delete_keeps_case(self, flaky_store, flaky, case_data):
        case = await flaky_store.create(case_data())
        flaky.fail_on = "DELETE FROM cases"
        with pytest.raises(PersistenceFailure):
            await flaky_store.delete(case.id)
        assert flaky_store.list() == [case]
        assert [e.action for e in flaky_store.activity_log.entries()] == ["created"]

    async def test_delete_unknown_case(self, store):
        with pytest.raises(NotFound):
            await store.delete("missing")


class TestMirroring:
    async def test_changes_from_another_session_are_mirrored(self, db, records, store, case_data):
        other = CaseStore(records, ActivityLog(db, owner="Nurse"), current_user="Nurse")
        await other.load()
        store.start_sync()

        case = await other.create(case_data())
        await _wait_for(lambda: any(c.id == case.id for c in store.list()))

        await other.update(case.id, CaseUpdate(status="deferred", deferral_reason="Patient request"))
        await _wait_for(lambda: len(store.get(case.id).deferral_history) == 1)
        assert store.get(case.id).status == CaseStatus.DEFERRED

        await other.delete(case.id)
        await _wait_for(lambda: store.list() == [])
        # Activity is attributed to the session that made the change
        assert store.activity_log.entries() == []

    async def test_own_echo_is_idempotent(self, store, case_data):
        store.start_sync()
        case = await store.create(case_data())
        updated = await store.update(case.id, CaseUpdate(date=dt.date(2025, 6, 8)))
        await asyncio.sleep(0.05)
        assert store.list() == [updated]

    async def test_stop_sync_unsubscribes(self, store, bus):
        store.start_sync()
        assert bus.subscriber_count() == 1
        await store.stop_sync()
        assert bus.subscriber_count() == 0
