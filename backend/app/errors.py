"""Typed failures raised by the activity engines.

Every error carries an HTTP ``status_code`` and a human readable ``detail`` so
the API layer can translate it without inspecting messages.
"""

from __future__ import annotations

from fastapi import status


class ActivityError(Exception):
    """Base class for activity engine errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: str = "activity_error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class NotFound(ActivityError):
    """A referenced event, activity, question, vote or entry does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    detail = "not_found"


class ValidationFailed(ActivityError):
    """Missing or malformed input."""

    detail = "validation_failed"


class StateConflict(ActivityError):
    """The operation is not allowed in the activity's current status."""

    detail = "state_conflict"


class DuplicateSubmission(ActivityError):
    """A participant already voted, entered or answered."""

    status_code = status.HTTP_409_CONFLICT
    detail = "duplicate_submission"


class CrossEventMismatch(ActivityError):
    """The activity belongs to a different event than the one referenced."""

    detail = "cross_event_mismatch"


class InsufficientEntries(ActivityError):
    detail = "insufficient_entries"


class TransientStoreError(ActivityError):
    """The store kept failing with transient errors after all retries."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "store_unavailable"
