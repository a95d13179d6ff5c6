import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from lesson_sync.clients import BackendClient
from lesson_sync.config import Settings, settings
from lesson_sync.database import init_db
from lesson_sync.routes import flashcards, heartbeat, lesson_access, progress
from lesson_sync.services.heartbeat import HeartbeatService
from lesson_sync.services.interaction_buffer import InteractionBuffer
from lesson_sync.services.lesson_access import LessonAccessTracker
from lesson_sync.services.progress_store import ProgressStoreRegistry
from lesson_sync.services.storage import KeyValueStore, create_storage

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(
    config: Settings | None = None,
    *,
    backend: BackendClient | None = None,
    storage: KeyValueStore | None = None,
) -> FastAPI:
    """Build the app. *backend* and *storage* override what *config* selects."""
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire the services on startup; persist and flush what we can on shutdown."""
        if storage is None and config.storage_backend == "sqlite":
            await init_db(config.storage_path)
        kv = storage or create_storage(config)
        client = backend or BackendClient(
            config.backend_api_url, config.request_timeout_seconds
        )

        hb = HeartbeatService(
            client,
            kv,
            flush_interval=config.heartbeat_flush_interval_ms / 1000,
            max_retry_attempts=config.heartbeat_max_retry_attempts,
            batch_size=config.heartbeat_batch_size,
            min_percentage_delta=config.heartbeat_min_percentage_delta,
        )
        buffer = InteractionBuffer(
            client,
            batch_size=config.flashcard_batch_size,
            max_buffer_size=config.flashcard_max_buffer_size,
            flush_time_ms=config.flashcard_flush_time_ms,
        )

        app.state.settings = config
        app.state.heartbeat = hb
        app.state.interaction_buffer = buffer
        app.state.lesson_access = LessonAccessTracker(kv)
        app.state.progress_stores = ProgressStoreRegistry(
            kv, hb, debounce_seconds=config.progress_debounce_ms / 1000
        )

        scheduler = AsyncIOScheduler(
            timezone="UTC", job_defaults={"coalesce": True, "max_instances": 1}
        )
        scheduler.add_job(
            buffer.time_sweep,
            trigger=IntervalTrigger(seconds=config.flashcard_flush_time_ms / 1000),
            id="flashcard_time_sweep",
            name="Flashcard buffer time sweep",
            replace_existing=True,
        )
        scheduler.start()
        hb.start()
        logger.info("lesson-sync started (backend %s)", client.base_url)

        yield

        scheduler.shutdown(wait=False)
        written = await run_in_threadpool(app.state.progress_stores.flush_all)
        result = await run_in_threadpool(hb.stop)
        if not result.success:
            logger.warning(
                "Shutting down with %d unsynced lesson updates (%s)",
                hb.queue_size, result.error,
            )
        if buffer.pending_total():
            logger.warning(
                "Shutting down with %d unsent flashcard interactions",
                buffer.pending_total(),
            )
        if backend is None:
            await client.aclose()
        logger.info("lesson-sync stopped (%d lesson stores flushed)", written)

    app = FastAPI(
        title="lesson-sync",
        description="Local lesson-progress store with batched sync to the course platform API",
        version="0.1.0",
        lifespan=lifespan,
    )
    # Available before startup too, for dependencies that only need config
    app.state.settings = config

    app.include_router(progress.router)
    app.include_router(heartbeat.router)
    app.include_router(flashcards.router)
    app.include_router(lesson_access.router)

    @app.get("/health")
    async def health_check() -> dict:
        hb: HeartbeatService = app.state.heartbeat
        return {
            "status": "ok",
            "heartbeat": {"running": hb.is_running, **hb.get_status()},
            "flashcardBuffers": app.state.interaction_buffer.active_users,
        }

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("lesson_sync.main:app", host=settings.host, port=settings.port)
