import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from otlist.config import EVENT_PING_SECONDS
from otlist.services.event_bus import event_bus
from otlist.services.sessions import sessions

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws/cases")
async def case_changes_ws(websocket: WebSocket, user: str | None = None):
    """Stream record store changes (case inserts, updates, deletes and deferrals).

    Clients identify with ``?user=<username>`` for an open session and get
    ``{"type": "ping"}`` after a quiet period.
    """
    await websocket.accept()
    if sessions.get(user) is None:
        await websocket.send_json({"type": "error", "message": "Not signed in"})
        await websocket.close()
        return

    queue = event_bus.subscribe_all()
    logger.info("Change stream client connected for %s", user)

    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=EVENT_PING_SECONDS)
                message = {"type": "change", **event}
            except asyncio.TimeoutError:
                message = {"type": "ping"}

            try:
                await websocket.send_json(message)
            except Exception:
                logger.debug("Failed to send change event to %s", user)
                break
    except WebSocketDisconnect:
        logger.info("Change stream client disconnected for %s", user)
    except asyncio.CancelledError:
        pass
    finally:
        event_bus.unsubscribe_all(queue)
