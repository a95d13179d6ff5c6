import json
import logging
import sqlite3
import threading

from lesson_sync.models import LessonContext, VideoProgress
from lesson_sync.services.progress_store import LocalProgressStore, ProgressStoreRegistry
from lesson_sync.services.storage import MemoryKeyValueStore
from lesson_sync.services.tracking import advance

from .conftest import CountingStore, progress_at


class RecordingHeartbeat:
    def __init__(self):
        self.calls = []

    def enqueue_with_context(self, lesson_id, progress, context=None):
        self.calls.append((lesson_id, progress, context))
        return True


class BrokenStore(MemoryKeyValueStore):
    def set_item(self, key, value):
        raise sqlite3.OperationalError("disk I/O error")


def make_store(storage, timers, heartbeat=None, **kwargs):
    return LocalProgressStore(
        "lesson-1", storage, heartbeat, debounce_seconds=5.0, timer_factory=timers, **kwargs
    )


# ------------------------------------------------------------------
# Debounce
# ------------------------------------------------------------------


def test_updates_inside_window_write_once_with_latest(storage, timers):
    store = make_store(storage, timers)
    for t in (1.0, 2.0, 3.0, 4.0):
        store.update(progress_at(t))

    assert storage.writes == []
    assert len(timers.live) == 1
    assert timers.live[0].interval == 5.0

    timers.live[0].fire()

    assert len(storage.writes) == 1
    key, value = storage.writes[0]
    assert key == "revalida_video_progress_lesson-1"
    assert json.loads(value)["currentTime"] == 4.0
    assert not store.has_pending_write


def test_superseded_timer_firing_late_is_a_no_op(storage, timers):
    store = make_store(storage, timers)
    store.update(progress_at(1.0))
    first = timers.timers[0]
    store.update(progress_at(2.0))

    first.fire(force=True)  # lost the race with cancel()
    assert storage.writes == []

    timers.live[0].fire()
    assert json.loads(storage.writes[0][1])["currentTime"] == 2.0


def test_flush_now_writes_immediately_and_only_once(storage, timers):
    store = make_store(storage, timers)
    store.update(progress_at(10.0))

    assert store.flush_now() is True
    assert len(storage.writes) == 1
    assert timers.live == []

    # the cancelled timer must not write a second time
    timers.timers[0].fire(force=True)
    assert len(storage.writes) == 1


def test_flush_now_without_progress_writes_nothing(storage, timers):
    store = make_store(storage, timers)
    assert store.flush_now() is False
    assert storage.writes == []


def test_unchanged_progress_is_not_rewritten(storage, timers):
    store = make_store(storage, timers)
    store.update(progress_at(10.0))
    store.flush_now()
    store.update(progress_at(10.0))
    assert store.flush_now() is False
    assert len(storage.writes) == 1


# ------------------------------------------------------------------
# Load / clear
# ------------------------------------------------------------------


def test_load_returns_what_flush_now_wrote(storage, timers):
    progress = VideoProgress(
        current_time=42.5,
        duration=120.0,
        percentage=42.5 / 120 * 100,
        watched_segments=[(0.0, 42.5)],
        completion_rate=35.4,
    )
    store = make_store(storage, timers)
    store.update(progress)
    store.flush_now()

    reopened = make_store(storage, timers)
    assert reopened.load() == progress
    assert reopened.progress == progress


def test_load_missing_entry_returns_none(storage, timers):
    assert make_store(storage, timers).load() is None


def test_load_corrupt_entry_returns_none(storage, timers):
    storage.set_item("revalida_video_progress_lesson-1", "{not json")
    store = make_store(storage, timers)
    assert store.load() is None
    assert store.progress is None

    storage.set_item("revalida_video_progress_lesson-1", json.dumps({"duration": 10}))
    assert store.load() is None


def test_clear_removes_memory_and_storage(storage, timers):
    store = make_store(storage, timers)
    store.update(progress_at(10.0))
    store.flush_now()
    store.update(progress_at(12.0))

    store.clear()

    assert store.progress is None
    assert storage.get_item(store.storage_key) is None
    assert timers.live == []


# ------------------------------------------------------------------
# Side effects of a write
# ------------------------------------------------------------------


def test_each_write_is_handed_to_the_heartbeat(storage, timers):
    heartbeat = RecordingHeartbeat()
    context = LessonContext(course_id="c1", module_id="m1")
    store = make_store(storage, timers, heartbeat, context=context)

    store.update(progress_at(5.0))
    timers.live[0].fire()
    store.update(progress_at(6.0))
    store.flush_now()

    assert [(c[0], c[1].current_time, c[2]) for c in heartbeat.calls] == [
        ("lesson-1", 5.0, context),
        ("lesson-1", 6.0, context),
    ]


def test_storage_failure_is_logged_not_raised(timers, caplog):
    heartbeat = RecordingHeartbeat()
    store = make_store(BrokenStore(), timers, heartbeat)
    store.update(progress_at(5.0))

    with caplog.at_level(logging.ERROR):
        assert store.flush_now() is False

    assert "Error saving progress for lesson lesson-1" in caplog.text
    # the backend sync does not depend on the local write
    assert len(heartbeat.calls) == 1


def test_completion_is_logged_once(storage, timers, caplog):
    store = make_store(storage, timers, completion_threshold=95.0)
    with caplog.at_level(logging.INFO):
        store.update(progress_at(58.0))
        store.flush_now()
        store.update(progress_at(59.0))
        store.flush_now()

    assert caplog.text.count("Video completed for lesson lesson-1") == 1


def hold_timer_write(store, timers):
    """Fire the live timer on its own thread and park it just before it
    persists.  Returns (worker thread, release event)."""
    taken = threading.Event()
    release = threading.Event()
    persist = store._persist

    def parked(progress, generation):
        taken.set()
        release.wait(5)
        return persist(progress, generation)

    store._persist = parked
    worker = threading.Thread(target=timers.live[0].fire)
    worker.start()
    assert taken.wait(5)
    store._persist = persist
    return worker, release


def test_late_timer_write_never_overwrites_a_newer_flush(storage, timers):
    heartbeat = RecordingHeartbeat()
    store = make_store(storage, timers, heartbeat)
    store.update(progress_at(10.0))
    worker, release = hold_timer_write(store, timers)

    store.update(progress_at(20.0))
    assert store.flush_now() is True
    release.set()
    worker.join(5)

    assert json.loads(storage.get_item(store.storage_key))["currentTime"] == 20.0
    assert store.progress.current_time == 20.0
    assert [call[1].current_time for call in heartbeat.calls] == [20.0]


def test_late_timer_write_does_not_undo_clear(storage, timers):
    heartbeat = RecordingHeartbeat()
    store = make_store(storage, timers, heartbeat)
    store.update(progress_at(10.0))
    worker, release = hold_timer_write(store, timers)

    store.clear()
    release.set()
    worker.join(5)

    assert storage.get_item(store.storage_key) is None
    assert heartbeat.calls == []


def test_continuous_playback_lands_at_one_hundred_percent(storage, timers):
    store = make_store(storage, timers)
    for i in range(241):  # 0..60s at the player's 250ms tick
        store.update(advance(store.progress, i * 0.25, 60.0, gap=2.0))

    assert len(timers.live) == 1
    assert store.flush_now() is True

    saved = json.loads(storage.get_item(store.storage_key))
    assert saved["percentage"] == 100
    assert saved["completionRate"] == 100
    assert len(storage.writes) == 1


# ------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------


def test_registry_loads_once_and_flushes_all(timers):
    storage = CountingStore()
    storage.set_item(
        "revalida_video_progress_a",
        json.dumps(progress_at(3.0).to_dict()),
    )
    registry = ProgressStoreRegistry(storage, debounce_seconds=5.0, timer_factory=timers)

    a = registry.get("a")
    assert a.progress.current_time == 3.0
    assert registry.get("a") is a

    registry.get("b").update(progress_at(1.0))
    a.update(progress_at(4.0))

    assert registry.flush_all() == 2
    info = registry.storage_info()
    assert info["totalVideoProgressKeys"] == 2
    assert info["approximateSizeKB"] > 0


def test_registry_replaces_context_on_later_get(timers):
    registry = ProgressStoreRegistry(MemoryKeyValueStore(), timer_factory=timers)
    registry.get("a")
    context = LessonContext(course_id="c1")
    assert registry.get("a", context).context == context


def test_storage_info_reports_zeros_when_storage_fails():
    class UnreadableStore(MemoryKeyValueStore):
        def keys(self, prefix=""):
            raise sqlite3.OperationalError("database is locked")

    registry = ProgressStoreRegistry(UnreadableStore())
    assert registry.storage_info() == {
        "totalVideoProgressKeys": 0,
        "approximateSizeKB": 0,
    }
