"""Case lifecycle transitions.

Given the stored case and a requested edit, work out the full set of field
changes to persist: cancellation and deferral reasons, the cancellation
history, the deferral-history entry to write, and the rebook counter.
Nothing here performs I/O or mutates the original case.

Rebook counting: an edit increments ``rebook_count`` at most once, whether
the date moved through a cancellation rebook, a deferral with a new date, or
a plain date/time change.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterable

from otlist.config import PUBLIC_HOLIDAYS
from otlist.models.case import (
    CancellationEntry,
    CaseCreate,
    CaseStatus,
    CaseUpdate,
    DeferralEntry,
    SurgicalCase,
)
from otlist.services.exceptions import ValidationFailure

REQUIRED_FIELDS = (
    "patient_name", "age", "sex", "diagnoses", "procedures",
    "doctor", "specialty", "date", "case_type", "status",
)
FLAG_FIELDS = ("priority", "is_referral", "confirmed_on_ot_list")
# Handled by the cancellation/deferral rules rather than copied verbatim
REASON_FIELDS = {"cancellation_reason", "deferral_reason"}
REBOOK_STATUSES = (CaseStatus.CANCELLED, CaseStatus.DEFERRED)


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ResolvedUpdate:
    changes: dict[str, Any] = field(default_factory=dict)
    # Entry for the deferral_history table, written alongside the case row
    deferral_entry: DeferralEntry | None = None
    rebooked: bool = False
    confirmation_only: bool = False


def _holiday_problem(target: dt.date, case_type: str, holidays: Iterable[str]) -> str | None:
    if case_type == "elective" and target.isoformat() in holidays:
        return f"Elective cases cannot be booked on public holiday {target.isoformat()}"
    return None


def validate_new_case(data: CaseCreate, holidays: Iterable[str] = PUBLIC_HOLIDAYS) -> None:
    problems = []
    if not data.patient_name.strip():
        problems.append("Patient name is required")
    if not data.diagnoses:
        problems.append("At least one diagnosis is required")
    if not data.procedures:
        problems.append("At least one procedure is required")
    if data.status == CaseStatus.CANCELLED and not data.cancellation_reason:
        problems.append("A cancellation reason is required")
    if data.status == CaseStatus.DEFERRED and not data.deferral_reason:
        problems.append("A deferral reason is required")
    holiday = _holiday_problem(data.date, data.case_type, holidays)
    if holiday:
        problems.append(holiday)
    if problems:
        raise ValidationFailure(problems)


def validate_update(
    original: SurgicalCase,
    update: CaseUpdate,
    holidays: Iterable[str] = PUBLIC_HOLIDAYS,
) -> None:
    """Reject an edit before it reaches ``resolve_update``."""
    requested = update.set_fields()
    problems = []

    for name in REQUIRED_FIELDS:
        if name in requested and requested[name] is None:
            problems.append(f"{name} is required")
    for name in FLAG_FIELDS:
        if name in requested and requested[name] is None:
            problems.append(f"{name} must be true or false")
    if "patient_name" in requested and requested["patient_name"] is not None:
        if not requested["patient_name"].strip():
            problems.append("Patient name is required")
    if requested.get("diagnoses") == []:
        problems.append("At least one diagnosis is required")
    if requested.get("procedures") == []:
        problems.append("At least one procedure is required")

    status = requested.get("status") or original.status
    if status == CaseStatus.CANCELLED:
        reason = requested.get("cancellation_reason", original.cancellation_reason)
        if not reason:
            problems.append("A cancellation reason is required")
    elif status == CaseStatus.DEFERRED:
        reason = requested.get("deferral_reason", original.deferral_reason)
        if not reason:
            problems.append("A deferral reason is required")

    case_type = requested.get("case_type") or original.case_type
    new_date = requested.get("new_date")
    if new_date is not None:
        if status not in REBOOK_STATUSES:
            problems.append("A rebook date is only accepted when cancelling or deferring")
        holiday = _holiday_problem(new_date, case_type, holidays)
        if holiday:
            problems.append(holiday)
    moved_to = requested.get("date")
    if moved_to is not None and moved_to != original.date:
        holiday = _holiday_problem(moved_to, case_type, holidays)
        if holiday:
            problems.append(holiday)

    if problems:
        raise ValidationFailure(problems)


def is_confirmation_only(original: SurgicalCase, update: CaseUpdate) -> bool:
    """True when the edit flips ``confirmed_on_ot_list`` and changes nothing else."""
    requested = update.set_fields()
    confirmed = requested.get("confirmed_on_ot_list")
    if confirmed is None or confirmed == original.confirmed_on_ot_list:
        return False
    for name, value in requested.items():
        if name == "confirmed_on_ot_list":
            continue
        if name == "new_date":
            if value is not None:
                return False
            continue
        if getattr(original, name) != value:
            return False
    return True


def resolve_confirmation(original: SurgicalCase, confirmed: bool) -> ResolvedUpdate:
    return ResolvedUpdate(
        changes={"confirmed_on_ot_list": confirmed},
        confirmation_only=True,
    )


def resolve_update(
    original: SurgicalCase,
    update: CaseUpdate,
    now: str | None = None,
) -> ResolvedUpdate:
    """Resolve a validated edit into the field changes to persist."""
    if is_confirmation_only(original, update):
        return resolve_confirmation(original, update.confirmed_on_ot_list)

    now = now or utc_now()
    requested = update.set_fields()
    new_date = requested.pop("new_date", None)
    resolved = ResolvedUpdate()
    changes = resolved.changes

    for name, value in requested.items():
        if name not in REASON_FIELDS:
            changes[name] = value

    status = requested.get("status") or original.status
    if status == CaseStatus.CANCELLED:
        reason = requested.get("cancellation_reason", original.cancellation_reason)
        if new_date is None:
            changes["cancellation_reason"] = reason
        else:
            # Rebooked: the cancellation moves to history and the case is active again
            changes["cancellation_history"] = [
                *original.cancellation_history,
                CancellationEntry(reason=reason, original_date=original.date, cancelled_at=now),
            ]
            changes["date"] = new_date
            changes["status"] = CaseStatus.SCHEDULED
            changes["cancellation_reason"] = None
            resolved.rebooked = True
        if original.deferral_reason is not None:
            changes["deferral_reason"] = None
    elif status == CaseStatus.DEFERRED:
        reason = requested.get("deferral_reason", original.deferral_reason)
        changes["deferral_reason"] = reason
        if new_date is not None:
            changes["date"] = new_date
            resolved.rebooked = True
        if original.status != CaseStatus.DEFERRED:
            resolved.deferral_entry = DeferralEntry(
                reason=reason,
                original_date=original.date,
                deferred_at=now,
            )
        if original.cancellation_reason is not None:
            changes["cancellation_reason"] = None
    elif status in (CaseStatus.SCHEDULED, CaseStatus.COMPLETED):
        # deferral_history stays; only the current reason is cleared
        if original.deferral_reason is not None:
            changes["deferral_reason"] = None
        if original.cancellation_reason is not None:
            changes["cancellation_reason"] = None
    else:
        raise ValueError(f"Unhandled case status {status!r}")

    if not resolved.rebooked and changes.get("status", original.status) != CaseStatus.DEFERRED:
        moved = changes.get("date", original.date) != original.date
        retimed = (changes.get("time", original.time) or "") != (original.time or "")
        resolved.rebooked = moved or retimed

    if resolved.rebooked:
        changes["rebook_count"] = original.rebook_count + 1
        if original.original_date is None:
            changes["original_date"] = original.date

    # Admission source only applies to admissions and day cases
    if changes.get("patient_type", original.patient_type) == "ward":
        if changes.get("admission_source", original.admission_source) is not None:
            changes["admission_source"] = None

    return resolved
