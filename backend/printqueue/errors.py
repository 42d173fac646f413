"""Error taxonomy shared by the print queue services."""

from __future__ import annotations

# purpose: business errors raised by services and mapped to HTTP responses in main.py
# status: active


class PrintQueueError(RuntimeError):
    """Base error for print queue flows."""

    status_code = 400


class ValidationError(PrintQueueError):
    """Raised when input is missing or malformed."""


class FileTypeError(ValidationError):
    """Raised when an upload has an extension outside the allow-list."""


class NotFoundError(PrintQueueError):
    """Raised when an entity id does not resolve."""

    status_code = 404


class ExpiredError(PrintQueueError):
    """Raised when file bytes are requested after the retention window."""

    status_code = 410


class QuotaExceededError(PrintQueueError):
    """Raised when a user has used up their file upload allowance."""


class IllegalTransitionError(PrintQueueError):
    """Raised when a status change is not permitted from the current state."""

    status_code = 409

    def __init__(self, current: str, requested: str, allowed: list[str] | tuple[str, ...] = ()):
        self.current = current
        self.requested = requested
        self.allowed = tuple(allowed)
        if self.allowed:
            message = (
                f"cannot move from '{current}' to '{requested}'; "
                f"allowed: {', '.join(self.allowed)}"
            )
        else:
            message = f"cannot move from '{current}' to '{requested}'; '{current}' is terminal"
        super().__init__(message)


class PermissionDeniedError(PrintQueueError):
    """Raised when the principal may not act on the entity."""

    status_code = 403


class StorageError(PrintQueueError):
    """Raised when the object store is unavailable."""

    status_code = 503
