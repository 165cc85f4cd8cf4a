class AttendanceError(Exception):
    """Base exception for the attendance client."""


class ConfigurationError(AttendanceError):
    """Raised when the camera base URL is missing or empty."""


class FetchError(AttendanceError):
    """Raised when every candidate endpoint failed to return a valid frame."""

    def __init__(self, message: str, last_error: object = None, attempts: list[str] | None = None):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = list(attempts or [])


class StreamError(AttendanceError):
    """Raised when an MJPEG stream ends or fails."""


class ApiError(AttendanceError):
    """Raised when the attendance backend rejects or fails a request."""
