from fastapi import APIRouter, Depends, Request

from feedrelay.core.logging import api_logger
from feedrelay.core.security import get_current_user

router = APIRouter()


@router.get("/stats")
async def realtime_stats(request: Request, current_user: dict = Depends(get_current_user)):
    """Connected users, live connections and calls in progress on this process."""
    hub = request.app.state.realtime
    stats = hub.stats()
    stats["you"] = {
        "userId": current_user["user_id"],
        "connections": hub.presence.get_socket_count(current_user["user_id"]),
        "calls": [s.summary() for s in hub.coordinator.sessions_for(current_user["user_id"])],
    }
    api_logger.debug("Realtime stats served", user_id=current_user["user_id"])
    return stats
