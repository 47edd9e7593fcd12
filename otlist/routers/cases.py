import logging

from fastapi import APIRouter, Depends, HTTPException

from otlist.models.case import CaseCreate, CaseUpdate, DeferralEntry, OTListConfirmation, SurgicalCase
from otlist.routers.session import current_store
from otlist.services.case_store import CaseStore
from otlist.services.exceptions import (
    CaseLifecycleError,
    NotFound,
    PersistenceFailure,
    ValidationFailure,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cases", tags=["cases"])


def _http_error(exc: CaseLifecycleError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail="Case not found")
    if isinstance(exc, ValidationFailure):
        return HTTPException(status_code=422, detail=exc.problems)
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=400, detail=exc.message)


@router.get("", response_model=list[SurgicalCase])
async def list_cases(store: CaseStore = Depends(current_store)):
    """List all cases. Ordering and filtering are left to the client."""
    return store.list()


@router.post("", response_model=SurgicalCase)
async def create_case(body: CaseCreate, store: CaseStore = Depends(current_store)):
    """Book a new surgical case."""
    try:
        return await store.create(body)
    except CaseLifecycleError as exc:
        raise _http_error(exc) from None


@router.get("/{case_id}", response_model=SurgicalCase)
async def get_case(case_id: str, store: CaseStore = Depends(current_store)):
    try:
        return store.get(case_id)
    except NotFound as exc:
        raise _http_error(exc) from None


@router.get("/{case_id}/deferrals", response_model=list[DeferralEntry])
async def get_case_deferrals(case_id: str, store: CaseStore = Depends(current_store)):
    """Deferral history for a case, newest first."""
    try:
        return store.get(case_id).deferral_history
    except NotFound as exc:
        raise _http_error(exc) from None


@router.patch("/{case_id}", response_model=SurgicalCase)
async def update_case(case_id: str, body: CaseUpdate, store: CaseStore = Depends(current_store)):
    """Edit a case.

    Cancelling or deferring with ``new_date`` rebooks the case; any change of
    date or time counts as one rebook.
    """
    try:
        return await store.update(case_id, body)
    except CaseLifecycleError as exc:
        raise _http_error(exc) from None


@router.put("/{case_id}/ot-list", response_model=SurgicalCase)
async def set_ot_list_confirmation(
    case_id: str,
    body: OTListConfirmation,
    store: CaseStore = Depends(current_store),
):
    """Mark a case as confirmed (or not) on the operating theatre list."""
    try:
        return await store.set_ot_list_confirmation(case_id, body.confirmed)
    except CaseLifecycleError as exc:
        raise _http_error(exc) from None


@router.delete("/{case_id}")
async def delete_case(case_id: str, store: CaseStore = Depends(current_store)):
    try:
        await store.delete(case_id)
    except CaseLifecycleError as exc:
        raise _http_error(exc) from None
    return {"id": case_id, "deleted": True}
