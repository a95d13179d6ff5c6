import json
import logging
import threading
from typing import Callable

from lesson_sync.config import settings
from lesson_sync.models import LessonContext, VideoProgress
from lesson_sync.services.storage import (
    STORAGE_ERRORS,
    VIDEO_PROGRESS_PREFIX,
    KeyValueStore,
)

logger = logging.getLogger(__name__)

# threading.Timer-compatible: factory(interval, function, args=...) -> object
# with start() and cancel()
TimerFactory = Callable[..., threading.Timer]


class LocalProgressStore:
    """Per-lesson watch progress with a debounced durable write.

    ``update()`` is cheap and synchronous: the in-memory state changes at
    once and a single owned timer is (re)armed.  Only when the player has
    been quiet for the debounce window does the latest progress reach
    storage and the heartbeat queue.  ``flush_now()`` short-circuits the
    wait on teardown.

    Threading: the timer fires on its own thread.  ``_lock`` guards the
    in-memory state and the timer handle; ``_write_lock`` serializes the
    storage write and the heartbeat hand-off.  Every update gets a
    generation number: a timer that fired just as it was cancelled is a
    no-op, and a write that reaches ``_write_lock`` after a newer one has
    been persisted is dropped.
    """

    def __init__(
        self,
        lesson_id: str,
        storage: KeyValueStore,
        heartbeat=None,
        *,
        context: LessonContext | None = None,
        debounce_seconds: float | None = None,
        completion_threshold: float | None = None,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.lesson_id = lesson_id
        self.storage = storage
        self.heartbeat = heartbeat
        self.context = context or LessonContext()
        self.debounce_seconds = (
            settings.progress_debounce_ms / 1000
            if debounce_seconds is None
            else debounce_seconds
        )
        self.completion_threshold = (
            settings.completion_threshold
            if completion_threshold is None
            else completion_threshold
        )
        self._timer_factory = timer_factory

        self._progress: VideoProgress | None = None
        self._pending: VideoProgress | None = None
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._lock = threading.Lock()

        self._last_saved = ""
        self._last_saved_percentage: float | None = None
        self._persisted_generation = 0
        self._write_lock = threading.Lock()

    @property
    def storage_key(self) -> str:
        return f"{VIDEO_PROGRESS_PREFIX}{self.lesson_id}"

    @property
    def progress(self) -> VideoProgress | None:
        with self._lock:
            return self._progress

    @property
    def has_pending_write(self) -> bool:
        with self._lock:
            return self._pending is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self) -> VideoProgress | None:
        """Read the persisted progress into memory.

        Missing, unreadable or corrupt entries all come back as ``None``.
        """
        try:
            raw = self.storage.get_item(self.storage_key)
        except STORAGE_ERRORS:
            logger.exception("Error loading progress for lesson %s", self.lesson_id)
            return None
        if raw is None:
            logger.debug("No saved progress found for lesson %s", self.lesson_id)
            return None

        try:
            loaded = VideoProgress.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(
                "Ignoring corrupt progress for lesson %s: %s", self.lesson_id, e
            )
            return None

        with self._lock:
            self._progress = loaded
        with self._write_lock:
            self._last_saved = raw
            self._last_saved_percentage = loaded.percentage
        logger.info(
            "Loaded saved progress for lesson %s: %.2f%% at %.1fs",
            self.lesson_id, loaded.percentage, loaded.current_time,
        )
        return loaded

    def update(self, progress: VideoProgress) -> None:
        """Replace the in-memory progress and re-arm the debounce timer."""
        with self._lock:
            self._progress = progress
            self._pending = progress
            self._cancel_timer()
            self._generation += 1
            timer = self._timer_factory(
                self.debounce_seconds, self._on_timer, args=(self._generation,)
            )
            timer.daemon = True
            self._timer = timer
        timer.start()

    def flush_now(self) -> bool:
        """Cancel the pending timer and write synchronously.

        Returns True when something was written to storage.  With no pending
        update this is a no-op.
        """
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            generation = self._generation
            progress = self._pending
            self._pending = None
        if progress is None:
            return False
        return self._persist(progress, generation)

    def clear(self) -> None:
        """Forget this lesson's progress, in memory and in storage."""
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            generation = self._generation
            self._pending = None
            self._progress = None
        with self._write_lock:
            # a timer write already in flight must not resurrect the entry
            self._persisted_generation = generation
            self._last_saved = ""
            self._last_saved_percentage = None
            try:
                self.storage.remove_item(self.storage_key)
            except STORAGE_ERRORS:
                logger.exception("Error clearing progress for lesson %s", self.lesson_id)
                return
        logger.info("Progress cleared for lesson %s", self.lesson_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cancel_timer(self) -> None:
        # caller holds _lock
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._pending is None:
                return
            progress = self._pending
            self._pending = None
            self._timer = None
        logger.debug("Debounce timer fired for lesson %s", self.lesson_id)
        self._persist(progress, generation)

    def _persist(self, progress: VideoProgress, generation: int) -> bool:
        """Write to storage, then hand the progress to the heartbeat queue.

        Both happen under ``_write_lock`` and in generation order: a write
        older than the last persisted one is dropped entirely, so neither
        storage nor the heartbeat ever sees progress go backwards.
        """
        with self._write_lock:
            if generation < self._persisted_generation:
                logger.debug(
                    "Dropping superseded write for lesson %s (generation %d < %d)",
                    self.lesson_id, generation, self._persisted_generation,
                )
                return False
            self._persisted_generation = generation
            written = self._write(progress)
            if self.heartbeat is not None:
                self.heartbeat.enqueue_with_context(self.lesson_id, progress, self.context)
        return written

    def _write(self, progress: VideoProgress) -> bool:
        # caller holds _write_lock
        data = json.dumps(progress.to_dict())
        if data == self._last_saved:
            logger.debug("Skipping save for lesson %s (no changes)", self.lesson_id)
            return False
        try:
            self.storage.set_item(self.storage_key, data)
        except STORAGE_ERRORS:
            logger.exception("Error saving progress for lesson %s", self.lesson_id)
            return False

        previous = self._last_saved_percentage
        self._last_saved = data
        self._last_saved_percentage = progress.percentage

        logger.info(
            "Progress saved for lesson %s: %.2f%% at %.1fs of %.1fs",
            self.lesson_id, progress.percentage, progress.current_time, progress.duration,
        )
        if progress.percentage >= self.completion_threshold and (
            previous is None or previous < self.completion_threshold
        ):
            logger.info(
                "Video completed for lesson %s (%.2f%% watched)",
                self.lesson_id, progress.percentage,
            )
        return True


class ProgressStoreRegistry:
    """One ``LocalProgressStore`` per lesson, created and loaded on first use."""

    def __init__(
        self,
        storage: KeyValueStore,
        heartbeat=None,
        *,
        debounce_seconds: float | None = None,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.storage = storage
        self.heartbeat = heartbeat
        self.debounce_seconds = debounce_seconds
        self._timer_factory = timer_factory
        self._stores: dict[str, LocalProgressStore] = {}
        self._lock = threading.Lock()

    def get(self, lesson_id: str, context: LessonContext | None = None) -> LocalProgressStore:
        with self._lock:
            store = self._stores.get(lesson_id)
            if store is None:
                store = LocalProgressStore(
                    lesson_id,
                    self.storage,
                    self.heartbeat,
                    context=context,
                    debounce_seconds=self.debounce_seconds,
                    timer_factory=self._timer_factory,
                )
                store.load()
                self._stores[lesson_id] = store
            elif context is not None:
                store.context = context
        return store

    def flush_all(self) -> int:
        """``flush_now()`` every store. Returns how many wrote something."""
        with self._lock:
            stores = list(self._stores.values())
        return sum(1 for store in stores if store.flush_now())

    def storage_info(self) -> dict:
        """Number of stored lesson entries and their approximate size.

        Reports zeros when storage cannot be read.
        """
        try:
            keys = self.storage.keys(VIDEO_PROGRESS_PREFIX)
            total = 0
            for key in keys:
                value = self.storage.get_item(key)
                total += len(value) if value else 0
        except STORAGE_ERRORS:
            logger.exception("Error reading progress storage info")
            return {"totalVideoProgressKeys": 0, "approximateSizeKB": 0}
        return {
            "totalVideoProgressKeys": len(keys),
            "approximateSizeKB": round(total / 1024, 2),
        }
