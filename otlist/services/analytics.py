from __future__ import annotations

import datetime as dt
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Iterable

from otlist.models.analytics import CaseAnalytics, SpecialtyCount
from otlist.models.case import CaseStatus, SurgicalCase

PAEDIATRIC_MAX_AGE = 18
ELDERLY_MIN_AGE = 65
RECENT_DAYS = 30


def filter_by_date(
    cases: Iterable[SurgicalCase],
    start: dt.date | None = None,
    end: dt.date | None = None,
) -> list[SurgicalCase]:
    return [
        c for c in cases
        if (start is None or c.date >= start) and (end is None or c.date <= end)
    ]


def _created_after(case: SurgicalCase, cutoff: datetime) -> bool:
    try:
        created = datetime.fromisoformat(case.created_at)
    except ValueError:
        return False
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return created >= cutoff


def summarize(cases: Iterable[SurgicalCase], now: datetime | None = None) -> CaseAnalytics:
    """Counts shown on the analytics dashboard."""
    cases = list(cases)
    now = now or datetime.now(UTC)

    by_status = {status.value: 0 for status in CaseStatus}
    by_status.update(Counter(c.status.value for c in cases))

    specialties: dict[str, SpecialtyCount] = {}
    for c in cases:
        entry = specialties.setdefault(
            c.specialty, SpecialtyCount(specialty=c.specialty, count=0, scheduled=0, completed=0)
        )
        entry.count += 1
        if c.status == CaseStatus.SCHEDULED:
            entry.scheduled += 1
        elif c.status == CaseStatus.COMPLETED:
            entry.completed += 1

    cutoff = now - timedelta(days=RECENT_DAYS)
    return CaseAnalytics(
        total=len(cases),
        by_status=by_status,
        priority=sum(1 for c in cases if c.priority),
        confirmed_on_ot_list=sum(1 for c in cases if c.confirmed_on_ot_list),
        paediatric=sum(1 for c in cases if c.age < PAEDIATRIC_MAX_AGE),
        adult=sum(1 for c in cases if c.age >= PAEDIATRIC_MAX_AGE),
        elderly=sum(1 for c in cases if c.age >= ELDERLY_MIN_AGE),
        by_patient_type=dict(Counter(c.patient_type for c in cases)),
        by_specialty=sorted(specialties.values(), key=lambda s: s.count, reverse=True),
        total_rebooks=sum(c.rebook_count for c in cases),
        created_last_30_days=sum(1 for c in cases if _created_after(c, cutoff)),
    )
