"""Error taxonomy for the history engine.

Every failure the engine can surface is a subclass of HistoryError. Each class
carries the HTTP status the API layer renders it with and a stable machine
readable ``code`` so clients can branch without parsing messages.

Retry semantics by class:
- ForbiddenError, NotFoundError, ValidationError — surfaced, never retried
- QuotaExceededError — surfaced; writes stay blocked until space is freed
- TransientIOError — retried by the event queue (at-least-once), surfaced
  directly for snapshot writes
- ConflictError — unique index race, retried once with a fresh index
- RevertInProgressError — a concurrent revert was rejected, not queued
"""

from __future__ import annotations


class HistoryError(Exception):
    """Base class for all history engine errors.

    Args:
        message: Human-readable description of the failure.
    """

    status_code: int = 500
    code: str = "history_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ForbiddenError(HistoryError):
    """Permission or tier-gating failure."""

    status_code = 403
    code = "forbidden"


class NotFoundError(HistoryError):
    """A referenced snapshot, event, or document does not exist.

    Args:
        resource: Resource type name, e.g. ``"Snapshot"``.
        resource_id: Identifier that was looked up.
    """

    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class QuotaExceededError(HistoryError):
    """The actor's storage quota would be exceeded by the write.

    Args:
        used_bytes: Bytes currently used by the actor.
        quota_bytes: The tier's storage quota.
        requested_bytes: Size of the rejected write.
    """

    status_code = 507
    code = "quota_exceeded"

    def __init__(self, used_bytes: int, quota_bytes: int, requested_bytes: int = 0) -> None:
        super().__init__(
            f"History storage quota exceeded: {used_bytes} + {requested_bytes} "
            f"> {quota_bytes} bytes"
        )
        self.used_bytes = used_bytes
        self.quota_bytes = quota_bytes
        self.requested_bytes = requested_bytes


class TransientIOError(HistoryError):
    """Network or storage hiccup that may succeed on retry."""

    status_code = 503
    code = "transient_io"


class ConflictError(HistoryError):
    """Unique index violation on snapshot_index or event_index."""

    status_code = 409
    code = "conflict"


class ValidationError(HistoryError):
    """Malformed request or a write that must be suppressed."""

    status_code = 400
    code = "validation_error"


class RevertInProgressError(HistoryError):
    """Another revert is already in flight for this document."""

    status_code = 409
    code = "revert_in_progress"
