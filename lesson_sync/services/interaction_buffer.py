import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from lesson_sync.config import settings
from lesson_sync.errors import BackendRejectedError, SyncError
from lesson_sync.models import FlashcardInteraction, FlushResult, UserBuffer, now_ms

logger = logging.getLogger(__name__)


@dataclass
class RecordResult:
    status: str  # flushed | queued
    message: str
    queue_size: int | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        body = {"status": self.status, "message": self.message}
        if self.queue_size is not None:
            body["queueSize"] = self.queue_size
        if self.error is not None:
            body["error"] = self.error
        return body


@dataclass
class SweepReport:
    total_dropped: int
    total_failed: int
    active_users: int


class InteractionBuffer:
    """Per-user batching of flashcard reviews in front of the backend.

    State lives in a plain dict on this process.  Two server processes would
    each hold their own buffers and neither would see the other's items, so
    this only holds up for a single-process deployment.  Moving to several
    instances means replacing ``_buffers`` with a shared store that supports
    an atomic append-and-maybe-flush.

    Runs on the event loop: buffers are only mutated between awaits, and a
    per-user ``asyncio.Lock`` keeps two flushes of the same user from
    sending the same items twice.
    """

    def __init__(
        self,
        backend,
        *,
        batch_size: int | None = None,
        max_buffer_size: int | None = None,
        flush_time_ms: int | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.backend = backend
        self.batch_size = settings.flashcard_batch_size if batch_size is None else batch_size
        self.max_buffer_size = (
            settings.flashcard_max_buffer_size
            if max_buffer_size is None
            else max_buffer_size
        )
        self.flush_time_ms = (
            settings.flashcard_flush_time_ms if flush_time_ms is None else flush_time_ms
        )
        self._clock = clock
        self._buffers: dict[str, UserBuffer] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def record(
        self, user_id: str, token: str, interaction: FlashcardInteraction
    ) -> RecordResult:
        """Buffer one review; flush when the batch is full."""
        buffer = self._buffers.get(user_id)
        if buffer is None:
            buffer = self._buffers[user_id] = UserBuffer(last_update=self._clock())

        if len(buffer.items) >= self.max_buffer_size:
            logger.warning(
                "Buffer for user %s reached the safety limit (%d), forcing flush",
                user_id, self.max_buffer_size,
            )
            forced = await self.flush(user_id, token)
            overflow = len(buffer.items) - self.max_buffer_size + 1
            if not forced.success and overflow > 0:
                del buffer.items[:overflow]
                logger.error(
                    "Dropped %d oldest interactions for user %s: %s",
                    overflow, user_id, forced.error,
                )

        buffer.items.append(interaction)
        buffer.last_update = self._clock()
        size = len(buffer.items)

        if size >= self.batch_size:
            result = await self.flush(user_id, token)
            if result.success:
                return RecordResult(
                    status="flushed", message=f"Saved {result.sent} interactions"
                )
            return RecordResult(
                status="queued",
                message="Queued for later retry",
                queue_size=len(buffer.items),
                error=result.error,
            )

        return RecordResult(
            status="queued",
            message=f"Queued ({size}/{self.batch_size})",
            queue_size=size,
        )

    async def flush(self, user_id: str, token: str) -> FlushResult:
        """Send the user's whole buffer as one batch.

        All or nothing: on failure every item stays buffered for the next
        attempt.
        """
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            buffer = self._buffers.get(user_id)
            if buffer is None or not buffer.items:
                return FlushResult(success=True)

            batch = list(buffer.items)
            try:
                result = await self.backend.send_flashcard_interactions(
                    token, [item.to_payload() for item in batch]
                )
            except BackendRejectedError as e:
                logger.error("Failed to flush flashcard progress for user %s: %s", user_id, e)
                return FlushResult(success=False, error=e.detail)
            except SyncError as e:
                logger.error("Error flushing progress for user %s: %s", user_id, e)
                return FlushResult(success=False, error=str(e))

            # Items may have been appended (or swept) while we awaited.
            sent = {id(item) for item in batch}
            buffer.items = [item for item in buffer.items if id(item) not in sent]
            buffer.last_update = self._clock()
            logger.info(
                "Flushed %s flashcard interactions for user %s",
                result.get("totalProcessed", len(batch)), user_id,
            )
            return FlushResult(success=True, sent=len(batch))

    async def time_sweep(self, now: int | None = None) -> SweepReport:
        """Deal with buffers that have been idle longer than ``flush_time_ms``.

        No user credential is stored, so a stale buffer cannot be flushed
        from here: its items are dropped and logged as lost.  Idle empty
        buffers are evicted.
        """
        now = self._clock() if now is None else now
        dropped = 0
        for user_id, buffer in list(self._buffers.items()):
            if now - buffer.last_update <= self.flush_time_ms:
                continue
            if buffer.items:
                logger.warning(
                    "Time-based sweep dropping %d interactions for user %s "
                    "(no stored credential to flush with)",
                    len(buffer.items), user_id,
                )
                dropped += len(buffer.items)
                buffer.items = []
            else:
                lock = self._locks.get(user_id)
                if lock is None or not lock.locked():
                    del self._buffers[user_id]
                    self._locks.pop(user_id, None)

        return SweepReport(
            total_dropped=dropped, total_failed=0, active_users=len(self._buffers)
        )

    def queue_size(self, user_id: str) -> int:
        buffer = self._buffers.get(user_id)
        return len(buffer.items) if buffer else 0

    @property
    def active_users(self) -> int:
        return len(self._buffers)

    def pending_total(self) -> int:
        return sum(len(b.items) for b in self._buffers.values())
