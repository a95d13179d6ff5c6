from fastapi import Request

from lesson_sync.config import Settings
from lesson_sync.services.heartbeat import HeartbeatService
from lesson_sync.services.interaction_buffer import InteractionBuffer
from lesson_sync.services.lesson_access import LessonAccessTracker
from lesson_sync.services.progress_store import ProgressStoreRegistry

# Services are built once in the app lifespan and hung off app.state;
# routes receive them through these dependencies.


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_heartbeat(request: Request) -> HeartbeatService:
    return request.app.state.heartbeat


def get_progress_stores(request: Request) -> ProgressStoreRegistry:
    return request.app.state.progress_stores


def get_interaction_buffer(request: Request) -> InteractionBuffer:
    return request.app.state.interaction_buffer


def get_lesson_access(request: Request) -> LessonAccessTracker:
    return request.app.state.lesson_access
