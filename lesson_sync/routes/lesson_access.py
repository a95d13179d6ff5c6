from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from lesson_sync.dependencies import get_lesson_access
from lesson_sync.services.lesson_access import LessonAccessTracker

router = APIRouter(prefix="/api/lesson-access", tags=["lesson-access"])


class LessonVisit(BaseModel):
    lesson_id: str = Field(alias="lessonId")
    lesson_title: str = Field(alias="lessonTitle")
    course_title: str = Field(alias="courseTitle")
    course_slug: str = Field(alias="courseSlug")
    module_title: str = Field(alias="moduleTitle")
    module_slug: str = Field(alias="moduleSlug")
    course_id: str | None = Field(default=None, alias="courseId")
    module_id: str | None = Field(default=None, alias="moduleId")
    lesson_image_url: str | None = Field(default=None, alias="lessonImageUrl")
    has_video: bool = Field(default=False, alias="hasVideo")
    locale: str = "pt"

    model_config = {"populate_by_name": True}


@router.post("")
def track_lesson_access(
    body: LessonVisit,
    tracker: LessonAccessTracker = Depends(get_lesson_access),
) -> dict:
    return tracker.track(
        body.lesson_id,
        body.lesson_title,
        course_title=body.course_title,
        course_slug=body.course_slug,
        module_title=body.module_title,
        module_slug=body.module_slug,
        course_id=body.course_id,
        module_id=body.module_id,
        lesson_image_url=body.lesson_image_url,
        has_video=body.has_video,
        locale=body.locale,
    )


@router.get("/last")
def last_lesson_access(
    tracker: LessonAccessTracker = Depends(get_lesson_access),
) -> dict:
    entry = tracker.get_last()
    if entry is None:
        raise HTTPException(status_code=404, detail="No lesson accessed yet")
    return entry


@router.delete("")
def clear_lesson_access(
    tracker: LessonAccessTracker = Depends(get_lesson_access),
) -> dict:
    tracker.clear()
    return {"status": "cleared"}
