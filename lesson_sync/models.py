import time
from dataclasses import dataclass, field


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class VideoProgress:
    current_time: float
    duration: float
    percentage: float
    watched_segments: list[tuple[float, float]] = field(default_factory=list)
    completion_rate: float = 0.0

    def to_dict(self) -> dict:
        """camelCase shape shared with the player and the stored JSON."""
        return {
            "currentTime": self.current_time,
            "duration": self.duration,
            "percentage": self.percentage,
            "watchedSegments": [[start, end] for start, end in self.watched_segments],
            "completionRate": self.completion_rate,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VideoProgress":
        """Raises KeyError / TypeError / ValueError on a malformed payload."""
        segments = [
            (float(start), float(end))
            for start, end in data.get("watchedSegments") or []
        ]
        return cls(
            current_time=float(data["currentTime"]),
            duration=float(data["duration"]),
            percentage=float(data["percentage"]),
            watched_segments=segments,
            completion_rate=float(data.get("completionRate") or 0.0),
        )


@dataclass
class LessonContext:
    """Navigation context the backend wants alongside a progress report."""

    course_id: str | None = None
    module_id: str | None = None
    lesson_title: str | None = None
    course_title: str | None = None
    course_slug: str | None = None
    module_title: str | None = None
    module_slug: str | None = None
    lesson_image_url: str | None = None

    def to_dict(self) -> dict:
        pairs = {
            "courseId": self.course_id,
            "moduleId": self.module_id,
            "lessonTitle": self.lesson_title,
            "courseTitle": self.course_title,
            "courseSlug": self.course_slug,
            "moduleTitle": self.module_title,
            "moduleSlug": self.module_slug,
            "lessonImageUrl": self.lesson_image_url,
        }
        return {k: v for k, v in pairs.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "LessonContext":
        return cls(
            course_id=data.get("courseId"),
            module_id=data.get("moduleId"),
            lesson_title=data.get("lessonTitle"),
            course_title=data.get("courseTitle"),
            course_slug=data.get("courseSlug"),
            module_title=data.get("moduleTitle"),
            module_slug=data.get("moduleSlug"),
            lesson_image_url=data.get("lessonImageUrl"),
        )


@dataclass
class ProgressUpdate:
    lesson_id: str
    progress: VideoProgress
    context: LessonContext = field(default_factory=LessonContext)
    timestamp: int = field(default_factory=now_ms)
    attempts: int = 0

    def to_payload(self) -> dict:
        """Body of POST /api/v1/users/me/lesson-progress."""
        return {
            "lessonId": self.lesson_id,
            "currentTime": round(self.progress.current_time),
            "duration": round(self.progress.duration),
            "percentage": round(self.progress.percentage, 2),
            **self.context.to_dict(),
        }

    def to_dict(self) -> dict:
        return {
            "lessonId": self.lesson_id,
            "progress": self.progress.to_dict(),
            "context": self.context.to_dict(),
            "timestamp": self.timestamp,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressUpdate":
        return cls(
            lesson_id=str(data["lessonId"]),
            progress=VideoProgress.from_dict(data["progress"]),
            context=LessonContext.from_dict(data.get("context") or {}),
            timestamp=int(data.get("timestamp") or now_ms()),
            attempts=int(data.get("attempts") or 0),
        )


@dataclass
class FlashcardInteraction:
    flashcard_id: str
    difficulty_level: str  # EASY | HARD
    lesson_id: str | None = None
    timestamp: int = field(default_factory=now_ms)

    def to_payload(self) -> dict:
        payload = {
            "flashcardId": self.flashcard_id,
            "difficultyLevel": self.difficulty_level,
        }
        if self.lesson_id:
            payload["lessonId"] = self.lesson_id
        return payload


@dataclass
class UserBuffer:
    items: list[FlashcardInteraction] = field(default_factory=list)
    last_update: int = field(default_factory=now_ms)


@dataclass
class FlushResult:
    success: bool
    error: str | None = None
    sent: int = 0
