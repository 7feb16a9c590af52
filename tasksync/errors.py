from typing import Optional


class SyncError(Exception):
    """Base class for everything the sync engine raises on purpose."""


class RemoteError(SyncError):
    retryable = False
    kind = "unknown"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(RemoteError):
    retryable = True
    kind = "rate_limit"

    def __init__(self, message: str, status_code: Optional[int] = 429, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class NetworkError(RemoteError):
    """Transport failures, timeouts and 5xx gateway errors."""
    retryable = True
    kind = "network"


class UnauthorizedError(RemoteError):
    kind = "auth"


class NotFoundError(RemoteError):
    kind = "not_found"


class RetriesExhaustedError(RemoteError):
    retryable = True

    def __init__(self, last_error: RemoteError, attempts: int):
        super().__init__(f"{last_error} (gave up after {attempts} attempts)", last_error.status_code)
        self.last_error = last_error
        self.attempts = attempts
        self.kind = last_error.kind


class MalformedRecordError(SyncError):
    def __init__(self, message: str, external_id: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id


class StorageWriteError(SyncError):
    pass


class SyncInProgressError(SyncError):
    def __init__(self, resource: str):
        super().__init__(f"Sync already in progress for {resource}")
        self.resource = resource


USER_MESSAGES = {
    "network": "Network connection issue. Will retry automatically.",
    "auth": "Authentication failed. Please check your API key in Settings.",
    "rate_limit": "Rate limited by Notion. Will retry shortly.",
    "not_found": "Database not found. Please verify your database ID.",
}


def user_message(error: BaseException) -> str:
    kind = getattr(error, "kind", None)
    if kind in USER_MESSAGES:
        return USER_MESSAGES[kind]
    return str(error) or error.__class__.__name__
