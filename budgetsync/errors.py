"""Error taxonomy shared by the server handler and the sync client."""
from typing import Optional, Dict, Any


class SyncError(Exception):
    """Base error. ``code`` is a stable, non-sensitive identifier."""

    code = "SYNC_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class InvalidRequestError(SyncError):
    """Client input malformed. Never retried."""
    code = "INVALID_REQUEST"


class NoDataError(InvalidRequestError):
    """A save was attempted without a payload."""
    code = "NO_DATA"


class RateLimitedError(SyncError):
    """Server answered 429. Surfaced to the caller, never auto-retried."""
    code = "RATE_LIMITED"


class NotFoundError(SyncError):
    """No record for the key. Not an error for callers of fetch."""
    code = "NOT_FOUND"


class EncryptionError(SyncError):
    code = "ENCRYPTION_FAILED"


class DecryptionError(SyncError):
    code = "DECRYPTION_FAILED"


class KeyLengthError(EncryptionError):
    """Derived key does not match the cipher key size."""
    code = "INVALID_KEY_LENGTH"


class NetworkError(SyncError):
    code = "NETWORK_ERROR"


class RequestTimeoutError(NetworkError):
    code = "REQUEST_TIMEOUT"


class ServerError(SyncError):
    code = "SERVER_ERROR"

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or f"Server responded with {status_code}")
        self.status_code = status_code


class StoreError(SyncError):
    """Durable persistence unavailable or a write did not complete."""
    code = "STORE_UNAVAILABLE"


def error_body(message: str, details: Optional[Any] = None) -> Dict[str, Any]:
    """Build the wire error body.

    Args:
        message: Human readable, safe message
        details: Optional stable code or extra context (never a traceback)
    """
    body: Dict[str, Any] = {"error": message}
    if details is not None:
        body["details"] = details
    return body
