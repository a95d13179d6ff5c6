class SyncError(Exception):
    """Base class for failures talking to the backend API."""


class BackendUnavailableError(SyncError):
    """Transport failure or timeout. Transient: keep the data and retry."""


class BackendRejectedError(SyncError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"API error: {status_code} - {detail}")
        self.status_code = status_code
        self.detail = detail


class AuthenticationError(SyncError):
    """No usable credential, or the backend refused the one we sent."""
