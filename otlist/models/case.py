from __future__ import annotations

import datetime as dt
import json
from enum import StrEnum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, field_validator

Sex = Literal["male", "female"]
CaseType = Literal["elective", "emergency"]
PatientType = Literal["admission", "daycase", "ward"]
AdmissionSource = Literal["sopc", "oncology"]

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class CaseStatus(StrEnum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"
    COMPLETED = "completed"


class CancellationEntry(BaseModel):
    reason: str
    original_date: dt.date
    cancelled_at: str


class DeferralEntry(BaseModel):
    reason: str
    original_date: dt.date
    deferred_at: str


def _clean_items(items: list[str] | None) -> list[str] | None:
    if items is None:
        return None
    return [item.strip() for item in items if item and item.strip()]


class CaseFields(BaseModel):
    """Clinical and scheduling attributes shared by create payloads and records."""

    patient_name: str
    age: int = Field(ge=0)
    sex: Sex
    diagnoses: list[str]
    procedures: list[str]
    doctor: str
    specialty: str
    date: dt.date
    time: str | None = Field(default=None, pattern=TIME_PATTERN)
    case_type: CaseType = "elective"
    notes: str = ""

    origin: str | None = None
    place_of_residence: str | None = None
    fasting_time: str | None = None
    contact_details: str = ""
    is_referral: bool = False
    referral_details: str | None = None
    patient_type: PatientType = "admission"
    ward_number: str | None = None
    admission_source: AdmissionSource | None = None
    priority: bool = False

    @field_validator("diagnoses", "procedures")
    @classmethod
    def clean_lists(cls, items: list[str] | None) -> list[str] | None:
        return _clean_items(items)


class CaseCreate(CaseFields):
    status: CaseStatus = CaseStatus.SCHEDULED
    cancellation_reason: str | None = None
    deferral_reason: str | None = None


class SurgicalCase(CaseFields):
    id: str
    status: CaseStatus = CaseStatus.SCHEDULED
    confirmed_on_ot_list: bool = False
    rebook_count: int = Field(default=0, ge=0)
    cancellation_reason: str | None = None
    cancellation_history: list[CancellationEntry] = Field(default_factory=list)
    deferral_reason: str | None = None
    deferral_history: list[DeferralEntry] = Field(default_factory=list)
    original_date: dt.date | None = None
    created_at: str
    updated_at: str


class CaseUpdate(BaseModel):
    """Partial edit of a case. Only explicitly set fields take part."""

    patient_name: str | None = None
    age: int | None = Field(default=None, ge=0)
    sex: Sex | None = None
    diagnoses: list[str] | None = None
    procedures: list[str] | None = None
    doctor: str | None = None
    specialty: str | None = None
    date: dt.date | None = None
    time: str | None = Field(default=None, pattern=TIME_PATTERN)
    case_type: CaseType | None = None
    notes: str | None = None

    origin: str | None = None
    place_of_residence: str | None = None
    fasting_time: str | None = None
    contact_details: str | None = None
    is_referral: bool | None = None
    referral_details: str | None = None
    patient_type: PatientType | None = None
    ward_number: str | None = None
    admission_source: AdmissionSource | None = None
    priority: bool | None = None

    status: CaseStatus | None = None
    confirmed_on_ot_list: bool | None = None
    cancellation_reason: str | None = None
    deferral_reason: str | None = None
    # Proposed rebooking date for a cancellation or deferral
    new_date: dt.date | None = None

    @field_validator("diagnoses", "procedures")
    @classmethod
    def clean_lists(cls, items: list[str] | None) -> list[str] | None:
        return _clean_items(items)

    def set_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class OTListConfirmation(BaseModel):
    confirmed: bool


# --- Storage mapping ---------------------------------------------------------

# In-memory field -> column, where the names differ
FIELD_COLUMNS = {
    "diagnoses": "diagnosis",
    "procedures": "procedure",
}
LIST_SEPARATOR = ", "
BOOL_FIELDS = {"is_referral", "priority", "confirmed_on_ot_list"}
# Fields that are not columns on the cases table
UNSTORED_FIELDS = {"deferral_history"}


def column_for(field: str) -> str:
    return FIELD_COLUMNS.get(field, field)


def column_value(field: str, value: Any) -> Any:
    """Convert one in-memory field value to its stored representation."""
    if value is None:
        return None
    if field in FIELD_COLUMNS:
        return LIST_SEPARATOR.join(value)
    if field in BOOL_FIELDS:
        return int(bool(value))
    if field == "cancellation_history":
        return json.dumps([
            entry.model_dump(mode="json") if isinstance(entry, BaseModel) else entry
            for entry in value
        ])
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, StrEnum):
        return value.value
    return value


def changes_to_row(changes: Mapping[str, Any]) -> dict[str, Any]:
    return {
        column_for(field): column_value(field, value)
        for field, value in changes.items()
        if field not in UNSTORED_FIELDS
    }


def case_to_row(case: SurgicalCase) -> dict[str, Any]:
    return changes_to_row({name: getattr(case, name) for name in SurgicalCase.model_fields})


def _split_items(text: str | None) -> list[str]:
    if not text:
        return []
    return [item.strip() for item in text.split(",") if item.strip()]


def case_from_row(row: Mapping[str, Any], deferrals: list[DeferralEntry] | None = None) -> SurgicalCase:
    data = dict(row)
    history = data.get("cancellation_history") or "[]"
    if isinstance(history, str):
        history = json.loads(history)

    return SurgicalCase(
        id=data["id"],
        patient_name=data["patient_name"],
        age=data["age"],
        sex=data["sex"],
        origin=data.get("origin"),
        place_of_residence=data.get("place_of_residence"),
        diagnoses=_split_items(data.get("diagnosis")),
        procedures=_split_items(data.get("procedure")),
        doctor=data["doctor"],
        specialty=data["specialty"],
        date=data["date"],
        time=data.get("time"),
        fasting_time=data.get("fasting_time"),
        contact_details=data.get("contact_details") or "",
        is_referral=bool(data.get("is_referral")),
        referral_details=data.get("referral_details"),
        patient_type=data.get("patient_type") or "admission",
        ward_number=data.get("ward_number"),
        admission_source=data.get("admission_source"),
        priority=bool(data.get("priority")),
        status=data["status"],
        confirmed_on_ot_list=bool(data.get("confirmed_on_ot_list")),
        case_type=data.get("case_type") or "elective",
        cancellation_reason=data.get("cancellation_reason"),
        cancellation_history=history,
        deferral_reason=data.get("deferral_reason"),
        deferral_history=deferrals or [],
        original_date=data.get("original_date"),
        rebook_count=data.get("rebook_count") or 0,
        notes=data.get("notes") or "",
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


def deferral_from_row(row: Mapping[str, Any]) -> DeferralEntry:
    return DeferralEntry(
        reason=row["reason"],
        original_date=row["original_date"],
        deferred_at=row["deferred_at"],
    )


def deferral_to_row(case_id: str, entry: DeferralEntry) -> dict[str, Any]:
    return {
        "case_id": case_id,
        "reason": entry.reason,
        "original_date": entry.original_date.isoformat(),
        "deferred_at": entry.deferred_at,
    }
