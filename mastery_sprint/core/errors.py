"""
Error taxonomy for the mastery-sprint engine.

Every failure surfaced by an exposed operation is one of these types. Each
carries a stable ``code`` tag so transport layers can map it without
inspecting messages.
"""

from __future__ import annotations

from typing import Any


class MasterySprintError(Exception):
    """Base class for all engine errors."""

    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InputValidationError(MasterySprintError):
    """Malformed or out-of-range input, rejected at the boundary."""

    code = "input_validation"

    def __init__(self, message: str, field_errors: dict[str, str] | None = None):
        super().__init__(message, field_errors=field_errors or {})
        self.field_errors = field_errors or {}


class InsufficientDataError(MasterySprintError):
    """Too few samples to compute a value."""

    code = "insufficient_data"


class InsufficientContentError(InsufficientDataError):
    """Too few exercises available to build a conforming sprint."""

    code = "insufficient_content"


class ConcurrencyConflictError(MasterySprintError):
    """Mastery model version conflict that survived every retry."""

    code = "concurrency_conflict"


class VersionConflict(Exception):
    """Raised by a document store when a conditional write loses the race."""

    def __init__(self, user_id: str, expected: int, actual: int):
        super().__init__(f"Version conflict for {user_id}: expected {expected}, found {actual}")
        self.user_id = user_id
        self.expected = expected
        self.actual = actual


class CollaboratorUnavailableError(MasterySprintError):
    """A store or content provider could not be reached."""

    code = "collaborator_unavailable"


class InvariantViolationError(MasterySprintError):
    """An object would violate a model invariant; nothing was emitted."""

    code = "invariant_violation"


class NotFoundError(MasterySprintError):
    """Requested record does not exist (or was erased)."""

    code = "not_found"


class InvalidStateError(MasterySprintError):
    """Operation is not allowed in the record's current lifecycle state."""

    code = "invalid_state"
