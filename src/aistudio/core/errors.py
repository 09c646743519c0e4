"""Error taxonomy shared by the server core, the HTTP layer and the client.

Every error carries the HTTP status it maps to, so the API layer can turn
any :class:`StudioError` into a JSON response without a lookup table, and the
client can rebuild the same class from a status code.

=====================  ======  ===========================================
Exception              Status  Raised by
=====================  ======  ===========================================
InvalidInput           400     boundary validation, orchestrator
InvalidPayload         400     image store (malformed data URL)
Unauthorized           401     credential store
Conflict               409     credential store (duplicate email)
ModelOverloaded        503     orchestrator (simulated fault)
ProcessingError        500     image store (disk write failure)
InternalError          500     orchestrator (record failed after persist)
NotInitialized         500     generation store used before ``open()``
StoreUnavailable       500     generation store (sqlite failure)
Aborted                --      client controller only
=====================  ======  ===========================================
"""

from __future__ import annotations

from typing import Any


class StudioError(Exception):
    """Base class for every error raised by AI Studio.

    Attributes:
        status_code: HTTP status this error is reported with.
        message: Human-readable message, safe to show to the user.
    """

    status_code: int = 500
    default_message: str = "Server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        """Return the JSON body used for HTTP error responses."""
        return {"message": self.message}


class InvalidInput(StudioError):
    """Request input failed validation.

    Attributes:
        issues: Field-level problems, each ``{"field", "message"}``.
    """

    status_code = 400
    default_message = "Invalid input"

    def __init__(self, message: str | None = None, issues: list[dict] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or []

    def to_body(self) -> dict[str, Any]:
        return {"message": self.message, "issues": self.issues}


class InvalidPayload(InvalidInput):
    """The uploaded image is not a well-formed ``data:image/...;base64,`` URL."""

    default_message = "Invalid image payload"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message)
        self.issues = [{"field": "imageUpload", "message": self.message}]


class Unauthorized(StudioError):
    """Missing, invalid or expired credentials."""

    status_code = 401
    default_message = "Unauthorized"


class Conflict(StudioError):
    """The resource already exists."""

    status_code = 409
    default_message = "Conflict"


class ModelOverloaded(StudioError):
    """Simulated capacity failure; the client may retry."""

    status_code = 503
    default_message = "Model overloaded"


class ProcessingError(StudioError):
    """The image could not be written to storage."""

    default_message = "Image processing failed"


class InternalError(StudioError):
    """A step after the image was persisted failed; the image was removed."""

    default_message = "Server error"


class NotInitialized(StudioError):
    """The generation store was used before ``open()`` or after ``close()``."""

    default_message = "Store not initialised"


class StoreUnavailable(StudioError):
    """The relational store rejected or failed a write."""

    default_message = "Store unavailable"


class Aborted(Exception):
    """The caller cancelled the request.  Client-side only, never retried."""

    def __init__(self, message: str = "Generation aborted") -> None:
        self.message = message
        super().__init__(message)


_BY_STATUS: dict[int, type[StudioError]] = {
    400: InvalidInput,
    401: Unauthorized,
    409: Conflict,
    503: ModelOverloaded,
}


def error_for_status(status_code: int) -> type[StudioError]:
    """Return the exception class that best describes an HTTP status.

    Unknown 5xx codes map to :class:`InternalError`; unknown 4xx codes map to
    :class:`InvalidInput` (terminal, like every client error).
    """
    if status_code in _BY_STATUS:
        return _BY_STATUS[status_code]
    if status_code >= 500:
        return InternalError
    return InvalidInput
