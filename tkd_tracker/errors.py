"""
Error taxonomy for scoring, ranking and points operations.

Every error carries a machine-readable ``code`` and a ``details`` dict with
the identifiers needed to log the failure (event id, score id, field, ...).
The HTTP layer maps ``status_code`` straight onto the response.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class TrackerError(Exception):
    """Base error for the tracker core."""

    status_code: int = 500
    code: str = "TRACKER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(TrackerError):
    """
    Input rejected before any write was attempted.

    Examples:
    - judge score outside the judging range
    - missing event / competitor / tournament id
    """

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(TrackerError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, label: str, obj_id: Any):
        super().__init__(f"{label} not found", {"entity": label, "id": obj_id})


class ConflictError(TrackerError):
    """Duplicate creation that the store could not resolve to an existing row."""

    status_code = 409
    code = "CONFLICT"


class PersistenceMismatchError(TrackerError):
    """A write reported success but the row read back with a different value."""

    code = "PERSISTENCE_MISMATCH"

    def __init__(self, table: str, row_id: Any, field: str, expected: Any, actual: Any):
        super().__init__(
            f"{table}.{field} for row {row_id} read back as {actual!r}, expected {expected!r}",
            {
                "table": table,
                "row_id": row_id,
                "field": field,
                "expected": expected,
                "actual": actual,
            },
        )
        self.table = table
        self.row_id = row_id
        self.field = field
        self.expected = expected
        self.actual = actual


class PartialBatchError(TrackerError):
    """Rank rewrite for an event failed for some rows; nothing was committed."""

    code = "PARTIAL_BATCH"

    def __init__(self, event_id: int, failed_ids: List[int], total: int):
        super().__init__(
            f"Rank rewrite for event {event_id} failed for {len(failed_ids)} of {total} rows",
            {"event_id": event_id, "failed_ids": failed_ids, "total": total},
        )
        self.event_id = event_id
        self.failed_ids = failed_ids
