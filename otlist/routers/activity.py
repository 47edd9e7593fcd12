import datetime as dt

from fastapi import APIRouter, Depends

from otlist.models.activity import ActivityLogEntry
from otlist.models.analytics import CaseAnalytics
from otlist.routers.session import current_store
from otlist.services.analytics import filter_by_date, summarize
from otlist.services.case_store import CaseStore

router = APIRouter(prefix="/api", tags=["activity"])


@router.get("/activity", response_model=list[ActivityLogEntry])
async def list_activity(store: CaseStore = Depends(current_store)):
    """Most recent activity first, capped at the configured limit."""
    return store.activity_log.entries()


@router.get("/analytics", response_model=CaseAnalytics)
async def case_analytics(
    start: dt.date | None = None,
    end: dt.date | None = None,
    store: CaseStore = Depends(current_store),
):
    """Dashboard counts, optionally limited to cases booked within [start, end]."""
    return summarize(filter_by_date(store.list(), start, end))
