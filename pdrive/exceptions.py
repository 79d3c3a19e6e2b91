"""
pdrive Exceptions

Error taxonomy for the upload engine and its HTTP transport.
"""

from typing import Optional


class PDriveError(Exception):
    """Base exception for pdrive errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code

    @property
    def kind(self) -> str:
        """Short error kind shown to users (the class name)."""
        return type(self).__name__

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        if self.error_code:
            parts.append(f"[{self.error_code}]")
        return " ".join(parts)


class ConfigError(PDriveError):
    """Raised when the configuration is missing or invalid."""

    pass


class InvalidSizeError(PDriveError):
    """Raised when a file cannot be planned into parts."""

    pass


class PartCountExceededError(InvalidSizeError):
    """Raised when a plan would need more parts than the remote allows."""

    def __init__(self, message: str, part_count: int, max_part_count: int) -> None:
        super().__init__(message)
        self.part_count = part_count
        self.max_part_count = max_part_count


class TransportError(PDriveError):
    """Base class for errors reported by the remote endpoint."""

    retryable = False


class AuthError(TransportError):
    """Raised on 401/403 responses."""

    pass


class ClientError(TransportError):
    """Raised on 4xx responses other than authentication failures."""

    pass


class ServerError(TransportError):
    """Raised on 5xx responses and network failures. Retried with backoff."""

    retryable = True


class RateLimitError(ServerError):
    """Raised when rate limit is exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        status_code: int = 429,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class IntegrityError(TransportError):
    """Raised when the server checksum does not match the local digest."""

    pass


class InconsistentStateError(PDriveError):
    """Raised when the remote and local views of an upload disagree."""

    pass


class FileReadError(PDriveError):
    """Raised when reading the local file fails mid-upload."""

    pass


class SessionNotFoundError(PDriveError):
    """Raised when no persisted session exists for an id."""

    pass


class SessionLockedError(PDriveError):
    """Raised when another process holds the session."""

    pass


class InternalError(PDriveError):
    """Raised when an unexpected error interrupts an upload."""

    pass


# Completion error codes that mean the part list disagrees with the server
INCONSISTENT_PART_CODES = frozenset({"InvalidPart", "InvalidPartOrder", "NoSuchUpload"})


def raise_for_status(status_code: int, message: str, error_code: Optional[str] = None) -> None:
    """
    Raise appropriate exception based on HTTP status code.

    Args:
        status_code: HTTP status code
        message: Error message from response
        error_code: Optional error code from response

    Raises:
        Appropriate TransportError subclass
    """
    if status_code in (401, 403):
        raise AuthError(message, status_code, error_code)
    elif status_code == 429:
        raise RateLimitError(message, status_code)
    elif status_code >= 500:
        raise ServerError(message, status_code, error_code)
    elif status_code >= 400:
        raise ClientError(message, status_code, error_code)
