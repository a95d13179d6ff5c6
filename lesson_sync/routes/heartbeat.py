from fastapi import APIRouter, Depends
from pydantic import BaseModel

from lesson_sync.auth import SessionUser, session_required
from lesson_sync.dependencies import get_heartbeat
from lesson_sync.services.heartbeat import HeartbeatService

router = APIRouter(prefix="/api/heartbeat", tags=["heartbeat"])


class NetworkStatus(BaseModel):
    online: bool


@router.get("/status")
def heartbeat_status(heartbeat: HeartbeatService = Depends(get_heartbeat)) -> dict:
    return {
        **heartbeat.get_status(),
        "oldestUpdateAgeSeconds": heartbeat.oldest_age_seconds(),
    }


@router.post("/flush")
def flush_heartbeat(
    _user: SessionUser = Depends(session_required),
    heartbeat: HeartbeatService = Depends(get_heartbeat),
) -> dict:
    """Manual retry. Blocking HTTP, so this runs in the threadpool."""
    result = heartbeat.flush()
    body = {
        "status": "flushed" if result.success else "failed",
        "sent": result.sent,
        "queueSize": heartbeat.queue_size,
    }
    if result.error:
        body["error"] = result.error
    return body


@router.post("/online")
def set_network_status(
    body: NetworkStatus,
    heartbeat: HeartbeatService = Depends(get_heartbeat),
) -> dict:
    heartbeat.set_online(body.online)
    return heartbeat.get_status()
