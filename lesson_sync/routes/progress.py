from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from lesson_sync.auth import SessionUser, session_required
from lesson_sync.config import Settings
from lesson_sync.dependencies import get_progress_stores, get_settings
from lesson_sync.models import LessonContext
from lesson_sync.services.progress_store import ProgressStoreRegistry
from lesson_sync.services.tracking import advance

router = APIRouter(prefix="/api", tags=["progress"])

# The store does blocking storage I/O under thread locks, so these are
# plain ``def`` endpoints and run in FastAPI's threadpool.


class PlayerTick(BaseModel):
    current_time: float = Field(alias="currentTime", ge=0, allow_inf_nan=False)
    duration: float = Field(ge=0, allow_inf_nan=False)
    course_id: str | None = Field(default=None, alias="courseId")
    module_id: str | None = Field(default=None, alias="moduleId")
    lesson_title: str | None = Field(default=None, alias="lessonTitle")
    course_title: str | None = Field(default=None, alias="courseTitle")
    course_slug: str | None = Field(default=None, alias="courseSlug")
    module_title: str | None = Field(default=None, alias="moduleTitle")
    module_slug: str | None = Field(default=None, alias="moduleSlug")
    lesson_image_url: str | None = Field(default=None, alias="lessonImageUrl")

    model_config = {"populate_by_name": True}

    def context(self) -> LessonContext | None:
        ctx = LessonContext(
            course_id=self.course_id,
            module_id=self.module_id,
            lesson_title=self.lesson_title,
            course_title=self.course_title,
            course_slug=self.course_slug,
            module_title=self.module_title,
            module_slug=self.module_slug,
            lesson_image_url=self.lesson_image_url,
        )
        return ctx if ctx.to_dict() else None


@router.get("/lessons/{lesson_id}/progress")
def get_lesson_progress(
    lesson_id: str,
    stores: ProgressStoreRegistry = Depends(get_progress_stores),
) -> dict:
    store = stores.get(lesson_id)
    progress = store.progress
    if progress is None:
        raise HTTPException(
            status_code=404, detail=f"No progress saved for lesson {lesson_id}"
        )
    return {
        "lessonId": lesson_id,
        **progress.to_dict(),
        "pendingWrite": store.has_pending_write,
    }


@router.post("/lessons/{lesson_id}/progress")
def report_tick(
    lesson_id: str,
    tick: PlayerTick,
    _user: SessionUser = Depends(session_required),
    stores: ProgressStoreRegistry = Depends(get_progress_stores),
    config: Settings = Depends(get_settings),
) -> dict:
    """Fold one player tick into the lesson's progress (debounced save)."""
    store = stores.get(lesson_id, tick.context())
    progress = advance(
        store.progress, tick.current_time, tick.duration, gap=config.segment_gap_seconds
    )
    store.update(progress)
    return {"lessonId": lesson_id, **progress.to_dict()}


@router.post("/lessons/{lesson_id}/progress/flush")
def flush_lesson_progress(
    lesson_id: str,
    _user: SessionUser = Depends(session_required),
    stores: ProgressStoreRegistry = Depends(get_progress_stores),
) -> dict:
    """Persist now instead of waiting out the debounce (page hide)."""
    written = stores.get(lesson_id).flush_now()
    return {"lessonId": lesson_id, "written": written}


@router.delete("/lessons/{lesson_id}/progress")
def clear_lesson_progress(
    lesson_id: str,
    stores: ProgressStoreRegistry = Depends(get_progress_stores),
) -> dict:
    stores.get(lesson_id).clear()
    return {"lessonId": lesson_id, "status": "cleared"}


@router.get("/progress/storage")
def progress_storage_info(
    stores: ProgressStoreRegistry = Depends(get_progress_stores),
) -> dict:
    return stores.storage_info()
