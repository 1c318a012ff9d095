from __future__ import annotations


class TrackerError(Exception):
    """Base class for failures raised by the tracking core."""


class TransientIOError(TrackerError):
    """The remote store could not be reached; safe to retry or queue."""


class ValidationError(TrackerError):
    """Malformed input such as an unknown event type or period."""


class NotFoundError(TrackerError):
    """The referenced game or event does not exist (or is not visible)."""


class UnauthorizedError(TrackerError):
    """The caller lacks access to the requested game."""


class DuplicateEventError(TrackerError):
    """An event with the same identifier already exists remotely."""


class QueueStorageError(TrackerError):
    """The local offline queue file could not be read or written."""
