import jwt
import pytest

from lesson_sync.models import VideoProgress
from lesson_sync.services.storage import MemoryKeyValueStore


class FakeTimer:
    """Stands in for threading.Timer: never fires on its own."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self, force=False):
        if force or not self.cancelled:
            self.function(*self.args, **self.kwargs)


class TimerRecorder:
    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> list[FakeTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]


class CountingStore(MemoryKeyValueStore):
    def __init__(self):
        super().__init__()
        self.writes: list[tuple[str, str]] = []

    def set_item(self, key, value):
        self.writes.append((key, value))
        super().set_item(key, value)


class FakeBackend:
    """Records calls; raises ``fail_with`` when set."""

    def __init__(self):
        self.progress_calls: list[tuple[str, dict]] = []
        self.interaction_calls: list[tuple[str, list[dict]]] = []
        self.fail_with: Exception | None = None

    def send_lesson_progress(self, token, payload):
        self.progress_calls.append((token, payload))
        if self.fail_with is not None:
            raise self.fail_with
        return {}

    async def send_flashcard_interactions(self, token, interactions):
        self.interaction_calls.append((token, interactions))
        if self.fail_with is not None:
            raise self.fail_with
        return {"totalProcessed": len(interactions)}


def make_token(sub: str = "user-1") -> str:
    return jwt.encode({"sub": sub}, "not-the-backend-secret", algorithm="HS256")


def progress_at(current_time: float, duration: float = 60.0) -> VideoProgress:
    return VideoProgress(
        current_time=current_time,
        duration=duration,
        percentage=current_time / duration * 100,
    )


@pytest.fixture
def timers():
    return TimerRecorder()


@pytest.fixture
def storage():
    return CountingStore()


@pytest.fixture
def backend():
    return FakeBackend()
