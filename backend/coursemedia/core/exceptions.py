"""Error taxonomy shared by the media pipeline and the streaming layer.

Every error carries the HTTP status it maps to and a short machine-readable
reason. Messages are safe to show to clients: no paths, no stack traces.
"""

from typing import Optional


class MediaError(Exception):
    """Base exception for media service errors."""

    status_code: int = 500
    reason: str = "internal_error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        if reason is not None:
            self.reason = reason

    def headers(self) -> dict[str, str]:
        """Extra response headers for this error."""
        return {}


class NotFound(MediaError):
    """Raised when a video, material or rendition does not exist."""

    status_code = 404
    reason = "not_found"


class AuthenticationRequired(MediaError):
    """Raised when protected content is requested without a principal."""

    status_code = 401
    reason = "auth_required"

    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class Forbidden(MediaError):
    """Raised when the principal is not entitled to the content."""

    status_code = 403
    reason = "forbidden"


class Unavailable(MediaError):
    """Raised when a video has not finished processing."""

    status_code = 503
    reason = "processing"

    def headers(self) -> dict[str, str]:
        return {"Retry-After": "10"}


class RangeNotSatisfiable(MediaError):
    """Raised when a Range header starts beyond the end of the resource."""

    status_code = 416
    reason = "range_not_satisfiable"

    def __init__(self, size: int, message: str = "Requested range not satisfiable"):
        super().__init__(message)
        self.size = size

    def headers(self) -> dict[str, str]:
        return {"Content-Range": f"bytes */{self.size}"}


class ValidationError(MediaError):
    """Raised for malformed range or quality parameters."""

    status_code = 400
    reason = "invalid_request"


class PayloadTooLarge(MediaError):
    """Raised when an upload exceeds the configured size limit."""

    status_code = 413
    reason = "payload_too_large"


class ProcessingFailed(MediaError):
    """Raised when the transcoding pipeline gives up on a video."""

    status_code = 500
    reason = "processing_failed"


class StorageError(MediaError):
    """Raised when the storage adapter cannot read or write."""

    status_code = 500
    reason = "storage_error"
