import hmac

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from lesson_sync.auth import SessionUser, session_required
from lesson_sync.config import Settings
from lesson_sync.dependencies import get_interaction_buffer, get_settings
from lesson_sync.models import FlashcardInteraction
from lesson_sync.services.interaction_buffer import InteractionBuffer

router = APIRouter(prefix="/api/flashcards", tags=["flashcards"])


class FlashcardReview(BaseModel):
    flashcard_id: str | None = Field(default=None, alias="flashcardId")
    result: str | None = None  # "mastered" or anything else
    lesson_id: str | None = Field(default=None, alias="lessonId")

    model_config = {"populate_by_name": True}


def difficulty_for(result: str) -> str:
    """Map the study screen's verdict onto the backend's difficulty level."""
    return "EASY" if result == "mastered" else "HARD"


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


@router.post("/progress")
async def record_review(
    body: FlashcardReview,
    user: SessionUser = Depends(session_required),
    buffer: InteractionBuffer = Depends(get_interaction_buffer),
) -> dict:
    """Buffer one flashcard review; flushes when the batch is full."""
    if not body.flashcard_id or not body.result:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: flashcardId and result",
        )

    interaction = FlashcardInteraction(
        flashcard_id=body.flashcard_id,
        difficulty_level=difficulty_for(body.result),
        lesson_id=body.lesson_id,
    )
    result = await buffer.record(user.user_id, user.token, interaction)
    return result.to_dict()


@router.put("/progress")
async def force_flush(
    user: SessionUser = Depends(session_required),
    buffer: InteractionBuffer = Depends(get_interaction_buffer),
) -> dict:
    """Flush the caller's buffer now (page hide / unload)."""
    result = await buffer.flush(user.user_id, user.token)
    body = {"status": "flushed" if result.success else "failed"}
    if result.error:
        body["error"] = result.error
    return body


@router.get("/progress")
async def sweep_stale_buffers(
    x_cron_secret: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
    buffer: InteractionBuffer = Depends(get_interaction_buffer),
) -> dict:
    """Time-based sweep for an external cron. Disabled when no secret is set."""
    if not config.cron_secret or not x_cron_secret or not hmac.compare_digest(
        x_cron_secret, config.cron_secret
    ):
        raise HTTPException(status_code=401, detail="Unauthorized")

    report = await buffer.time_sweep()
    return {
        "status": "completed",
        "totalDropped": report.total_dropped,
        "totalFailed": report.total_failed,
        "activeUsers": report.active_users,
    }
