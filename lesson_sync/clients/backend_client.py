import logging

import httpx

from lesson_sync.config import settings
from lesson_sync.errors import (
    AuthenticationError,
    BackendRejectedError,
    BackendUnavailableError,
)

logger = logging.getLogger(__name__)

LESSON_PROGRESS_PATH = "/api/v1/users/me/lesson-progress"
FLASHCARD_INTERACTIONS_PATH = "/api/v1/flashcard-interactions"


class BackendClient:
    """Thin wrapper around the course platform's REST API.

    Usage::

        backend = BackendClient()                       # base URL from env
        backend.send_lesson_progress(token, payload)    # blocking, worker threads
        await backend.send_flashcard_interactions(token, items)  # route handlers

    Progress heartbeats are delivered from a background thread, so they use a
    blocking ``httpx.Client``; flashcard batches are flushed from request
    handlers and use ``httpx.AsyncClient``.  Both share the base URL and the
    timeout.  Every failure is raised as a ``SyncError`` subclass.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        async_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.backend_api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._client = httpx.Client(
            base_url=self._base_url, timeout=self._timeout, transport=transport
        )
        self._async_client = httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=async_transport
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    # ------------------------------------------------------------------
    # Lesson progress
    # ------------------------------------------------------------------
    def send_lesson_progress(self, token: str, payload: dict) -> dict:
        """POST one lesson's progress. Returns the decoded response body."""
        if not token:
            raise AuthenticationError("No auth token available")
        try:
            resp = self._client.post(
                LESSON_PROGRESS_PATH, json=payload, headers=_auth_headers(token)
            )
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Network error while saving progress: {e}") from e
        _raise_for_status(resp)
        return _json_or_empty(resp)

    # ------------------------------------------------------------------
    # Flashcard interactions
    # ------------------------------------------------------------------
    async def send_flashcard_interactions(
        self, token: str, interactions: list[dict]
    ) -> dict:
        """POST a batch of interactions. Returns ``{"totalProcessed": int, ...}``."""
        if not token:
            raise AuthenticationError("No auth token available")
        try:
            resp = await self._async_client.post(
                FLASHCARD_INTERACTIONS_PATH,
                json={"interactions": interactions},
                headers=_auth_headers(token),
            )
        except httpx.HTTPError as e:
            raise BackendUnavailableError("Network error while saving progress") from e
        _raise_for_status(resp)
        return _json_or_empty(resp)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        self._client.close()

    async def aclose(self) -> None:
        await self._async_client.aclose()
        self.close()


def _auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _json_or_empty(resp: httpx.Response) -> dict:
    # 204 and plain-text acknowledgements are still successes
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.is_success:
        return
    try:
        body = resp.json()
        detail = body.get("detail") if isinstance(body, dict) else None
    except ValueError:
        detail = None
    detail = str(detail) if detail else (resp.text or "Failed to save progress")
    logger.warning(
        "Backend rejected %s %s: %s %s",
        resp.request.method, resp.request.url.path, resp.status_code, detail,
    )
    if resp.status_code in (401, 403):
        raise AuthenticationError(detail)
    raise BackendRejectedError(resp.status_code, detail)
