from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Backend API
    backend_api_url: str = "http://localhost:3333"
    request_timeout_seconds: float = 10.0
    auth_cookie_name: str = "token"

    # Local progress store
    progress_debounce_ms: int = 5000
    completion_threshold: float = 95.0
    segment_gap_seconds: float = 2.0

    # Heartbeat queue
    heartbeat_flush_interval_ms: int = 30000
    heartbeat_max_retry_attempts: int = 3
    heartbeat_batch_size: int = 10
    heartbeat_min_percentage_delta: float = 0.0

    # Flashcard interaction buffer
    flashcard_batch_size: int = 5
    flashcard_max_buffer_size: int = 100
    flashcard_flush_time_ms: int = 10000
    cron_secret: str = ""

    # Storage
    storage_backend: str = "sqlite"  # sqlite | memory
    storage_path: str = "lesson_sync.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
