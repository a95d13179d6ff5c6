from lesson_sync.clients.backend_client import BackendClient

__all__ = ["BackendClient"]
