import json
import logging
import threading
from typing import Callable

from lesson_sync.config import settings
from lesson_sync.errors import AuthenticationError, SyncError
from lesson_sync.models import FlushResult, LessonContext, ProgressUpdate, VideoProgress, now_ms
from lesson_sync.services.storage import HEARTBEAT_QUEUE_KEY, STORAGE_ERRORS, KeyValueStore

logger = logging.getLogger(__name__)


class HeartbeatService:
    """Debounced lesson-progress sync to the backend.

    Threading model:

    1. **Callers** (debounce timers, route handlers) only touch the queue
       under ``_lock``: ``enqueue`` is a dict assignment, never I/O beyond
       mirroring the queue to storage.

    2. **Worker loop** runs in a daemon thread.  It wakes every
       ``flush_interval`` seconds, or early when the queue reaches
       ``batch_size`` or the network comes back, and calls ``flush()``.

    3. ``flush()`` may also be called directly (teardown, manual retry).
       ``_flush_lock`` keeps at most one flush in flight; a second caller
       returns immediately instead of waiting.

    The queue is keyed by lesson id and last-write-wins: only the newest
    progress of each lesson is ever sent.
    """

    def __init__(
        self,
        backend,
        storage: KeyValueStore | None = None,
        *,
        token_provider: Callable[[], str | None] | None = None,
        flush_interval: float | None = None,
        max_retry_attempts: int | None = None,
        batch_size: int | None = None,
        min_percentage_delta: float | None = None,
    ) -> None:
        self.backend = backend
        self.storage = storage
        self.flush_interval = (
            settings.heartbeat_flush_interval_ms / 1000
            if flush_interval is None
            else flush_interval
        )
        self.max_retry_attempts = (
            settings.heartbeat_max_retry_attempts
            if max_retry_attempts is None
            else max_retry_attempts
        )
        self.batch_size = settings.heartbeat_batch_size if batch_size is None else batch_size
        self.min_percentage_delta = (
            settings.heartbeat_min_percentage_delta
            if min_percentage_delta is None
            else min_percentage_delta
        )

        # Queue, guarded by _lock
        self._queue: dict[str, ProgressUpdate] = {}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

        # Latest session token seen by the app
        self._token: str | None = None
        self._token_provider = token_provider or (lambda: self._token)

        # Lifecycle
        self._online = True
        self._running = False
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_token(self, token: str | None) -> None:
        self._token = token

    def enqueue(
        self,
        lesson_id: str,
        progress: VideoProgress,
        course_id: str | None = None,
        module_id: str | None = None,
    ) -> bool:
        """Queue *progress* for *lesson_id*, replacing any queued entry."""
        return self.enqueue_with_context(
            lesson_id, progress, LessonContext(course_id=course_id, module_id=module_id)
        )

    def enqueue_with_context(
        self,
        lesson_id: str,
        progress: VideoProgress,
        context: LessonContext | None = None,
    ) -> bool:
        """Like ``enqueue`` but carries the lesson's navigation context.

        Returns False when the update was skipped as a near-duplicate.
        """
        with self._lock:
            existing = self._queue.get(lesson_id)
            if (
                existing is not None
                and self.min_percentage_delta > 0
                and abs(existing.progress.percentage - progress.percentage)
                < self.min_percentage_delta
            ):
                logger.debug(
                    "Skipping update for lesson %s (change < %.1f%%)",
                    lesson_id, self.min_percentage_delta,
                )
                return False
            self._queue[lesson_id] = ProgressUpdate(
                lesson_id=lesson_id,
                progress=progress,
                context=context or LessonContext(),
                attempts=existing.attempts if existing else 0,
            )
            size = len(self._queue)

        logger.info(
            "Enqueued update for lesson %s: %.2f%% (queue size %d)",
            lesson_id, progress.percentage, size,
        )
        self._save_cache()
        if size >= self.batch_size:
            logger.info("Queue size reached batch limit, triggering flush")
            self._wake.set()
        return True

    def flush(self) -> FlushResult:
        """Deliver every queued update, one request per lesson.

        Delivered updates leave the queue unless a newer one replaced them
        while the request was in flight.  Failed updates stay queued with
        one more attempt on the clock and are dropped once
        ``max_retry_attempts`` is reached.
        """
        if not self._online:
            logger.info("Skip flush - offline (%d updates pending)", self.queue_size)
            return FlushResult(success=False, error="offline")

        if not self._flush_lock.acquire(blocking=False):
            logger.debug("Skip flush - already in progress")
            return FlushResult(success=False, error="flush already in progress")

        try:
            with self._lock:
                updates = list(self._queue.values())
            if not updates:
                return FlushResult(success=True)

            token = self._token_provider()
            if not token:
                # Held, not retried: nothing can be delivered until the
                # user signs in again.
                logger.warning(
                    "No auth token available, holding %d updates", len(updates)
                )
                return FlushResult(success=False, error="No auth token available")

            logger.info("Starting flush of %d updates", len(updates))
            sent = 0
            errors: list[str] = []
            for update in updates:
                try:
                    payload = update.to_payload()
                except (OverflowError, ValueError) as e:
                    # inf / NaN progress can never be sent
                    logger.error(
                        "Dropping unsendable update for lesson %s: %s", update.lesson_id, e
                    )
                    errors.append(f"Invalid progress for lesson {update.lesson_id}")
                    self._discard(update)
                    continue
                try:
                    self.backend.send_lesson_progress(token, payload)
                except AuthenticationError as e:
                    logger.warning("Backend refused credential, holding queue: %s", e)
                    errors.append(str(e))
                    break
                except SyncError as e:
                    logger.error("Failed to sync lesson %s: %s", update.lesson_id, e)
                    errors.append(str(e))
                    self._record_failure(update)
                    continue

                self._discard(update)
                sent += 1

            self._save_cache()
            if errors:
                logger.warning("Flush finished with %d failures (%d sent)", len(errors), sent)
            else:
                logger.info("Flush successful - cleared %d updates", sent)
            return FlushResult(success=not errors, error=errors[0] if errors else None, sent=sent)
        finally:
            self._flush_lock.release()

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Network online - triggering flush")
            if self._running:
                self._wake.set()
            else:
                self.flush()
        elif not online:
            logger.info("Network offline - pausing heartbeat")

    def get_status(self) -> dict:
        with self._lock:
            timestamps = [u.timestamp for u in self._queue.values()]
        return {
            "queueSize": len(timestamps),
            "isOnline": self._online,
            "isFlushing": self._flush_lock.locked(),
            "oldestUpdate": min(timestamps) if timestamps else None,
        }

    def clear_queue(self) -> int:
        with self._lock:
            size = len(self._queue)
            self._queue.clear()
        self._save_cache()
        logger.info("Queue cleared (removed %d updates)", size)
        return size

    @property
    def queue_size(self) -> int:
        with self._lock:
            return len(self._queue)

    def pending(self) -> list[ProgressUpdate]:
        with self._lock:
            return list(self._queue.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Reload the cached queue and start the worker loop."""
        if self._running:
            return
        self._load_cache()
        self._running = True
        self._thread = threading.Thread(
            target=self._worker_loop, name="heartbeat", daemon=True
        )
        self._thread.start()
        logger.info("Starting heartbeat with %.1fs interval", self.flush_interval)

    def stop(self) -> FlushResult:
        """Stop the worker loop and make one last synchronous flush."""
        self._running = False
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=self.flush_interval + 5)
            self._thread = None
        result = self.flush()
        self._save_cache()
        logger.info("Heartbeat stopped (%d updates left)", self.queue_size)
        return result

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while self._running:
            self._wake.wait(self.flush_interval)
            self._wake.clear()
            if not self._running:
                break
            try:
                self.flush()
            except Exception:
                logger.exception("Heartbeat flush crashed")

    def _discard(self, update: ProgressUpdate) -> None:
        with self._lock:
            # a newer update for the lesson replaced this one while in flight
            if self._queue.get(update.lesson_id) is update:
                del self._queue[update.lesson_id]

    def _record_failure(self, update: ProgressUpdate) -> None:
        with self._lock:
            if self._queue.get(update.lesson_id) is not update:
                return  # superseded while in flight; the new entry carries on
            update.attempts += 1
            if update.attempts >= self.max_retry_attempts:
                del self._queue[update.lesson_id]
                logger.warning(
                    "Max attempts reached, dropping update for lesson %s (%d attempts)",
                    update.lesson_id, update.attempts,
                )
            else:
                logger.info(
                    "Retry %d/%d scheduled for lesson %s",
                    update.attempts, self.max_retry_attempts, update.lesson_id,
                )

    def _save_cache(self) -> None:
        if self.storage is None:
            return
        with self._lock:
            snapshot = [u.to_dict() for u in self._queue.values()]
        try:
            if snapshot:
                self.storage.set_item(HEARTBEAT_QUEUE_KEY, json.dumps(snapshot))
            else:
                self.storage.remove_item(HEARTBEAT_QUEUE_KEY)
        except STORAGE_ERRORS:
            logger.exception("Error saving heartbeat queue")

    def _load_cache(self) -> None:
        if self.storage is None:
            return
        try:
            raw = self.storage.get_item(HEARTBEAT_QUEUE_KEY)
        except STORAGE_ERRORS:
            logger.exception("Error loading heartbeat queue")
            return
        if not raw:
            logger.debug("No cached updates found")
            return
        try:
            updates = [ProgressUpdate.from_dict(item) for item in json.loads(raw)]
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("Ignoring corrupt heartbeat queue cache: %s", e)
            return
        with self._lock:
            for update in updates:
                # anything enqueued since startup is newer than the cache
                self._queue.setdefault(update.lesson_id, update)
        logger.info("Loaded %d updates from cache", len(updates))

    def oldest_age_seconds(self) -> float | None:
        oldest = self.get_status()["oldestUpdate"]
        return None if oldest is None else (now_ms() - oldest) / 1000
