import json
import logging
from datetime import datetime, timezone

from lesson_sync.services.storage import LAST_LESSON_ACCESS_KEY, STORAGE_ERRORS, KeyValueStore

logger = logging.getLogger(__name__)


def lesson_url(locale: str, course_slug: str, module_slug: str, lesson_id: str) -> str:
    return f"/{locale}/courses/{course_slug}/modules/{module_slug}/lessons/{lesson_id}"


class LessonAccessTracker:
    """Remembers the last lesson the learner opened, for "continue learning"."""

    def __init__(self, storage: KeyValueStore) -> None:
        self.storage = storage

    def track(
        self,
        lesson_id: str,
        lesson_title: str,
        *,
        course_title: str,
        course_slug: str,
        module_title: str,
        module_slug: str,
        course_id: str | None = None,
        module_id: str | None = None,
        lesson_image_url: str | None = None,
        has_video: bool = False,
        locale: str = "pt",
    ) -> dict:
        """Record a visit to a lesson page and return the stored entry.

        Lessons without a video count as fully seen; video lessons start at
        0% with a placeholder one-second duration until the player reports.
        """
        entry = {
            "lessonId": lesson_id,
            "lessonTitle": lesson_title,
            "courseId": course_id,
            "courseTitle": course_title,
            "courseSlug": course_slug,
            "moduleId": module_id,
            "moduleTitle": module_title,
            "moduleSlug": module_slug,
            "lessonImageUrl": lesson_image_url or "",
            "lessonUrl": lesson_url(locale, course_slug, module_slug, lesson_id),
            "accessedAt": datetime.now(timezone.utc).isoformat(),
            "hasVideo": has_video,
            "progress": {
                "percentage": 0 if has_video else 100,
                "currentTime": 0,
                "duration": 1 if has_video else 0,
            },
        }
        try:
            self.storage.set_item(LAST_LESSON_ACCESS_KEY, json.dumps(entry))
        except STORAGE_ERRORS:
            logger.exception("Error saving lesson access for %s", lesson_id)
            return entry
        logger.info("Lesson access saved: %s (%s)", lesson_id, entry["lessonUrl"])
        return entry

    def get_last(self) -> dict | None:
        try:
            raw = self.storage.get_item(LAST_LESSON_ACCESS_KEY)
        except STORAGE_ERRORS:
            logger.exception("Error retrieving lesson access")
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("Ignoring corrupt lesson access entry: %s", e)
            return None
        if not isinstance(data, dict) or "lessonId" not in data:
            logger.warning("Ignoring malformed lesson access entry")
            return None
        return data

    def clear(self) -> None:
        try:
            self.storage.remove_item(LAST_LESSON_ACCESS_KEY)
        except STORAGE_ERRORS:
            logger.exception("Error clearing lesson access")
            return
        logger.info("Lesson access data cleared")
