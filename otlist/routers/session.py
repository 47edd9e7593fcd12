import logging

from fastapi import APIRouter, Header, HTTPException

from otlist.models.activity import SessionCreate, SessionResponse
from otlist.services.case_store import CaseStore
from otlist.services.sessions import sessions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])


async def current_store(x_user: str | None = Header(default=None)) -> CaseStore:
    """Resolve the signed-in user's case store from the ``X-User`` header."""
    store = sessions.get(x_user)
    if store is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return store


@router.post("", response_model=SessionResponse)
async def open_session(body: SessionCreate):
    """Start a session for an authenticated user and load the case register."""
    store = await sessions.open(body.email)
    return SessionResponse(username=store.current_user, email=body.email)


@router.delete("")
async def close_session(x_user: str | None = Header(default=None)):
    """End the session; the user's activity log is cleared."""
    if not x_user or not await sessions.close(x_user):
        raise HTTPException(status_code=401, detail="Not signed in")
    return {"username": x_user, "closed": True}
