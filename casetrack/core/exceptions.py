"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere. The history
services (undo stack, write log) catch ``HistoryError`` at their public
boundary and convert it to a ``HistoryResult`` instead of letting it
escape.

Usage:
    from casetrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="TestCase", resource_id=42)
    raise ValidationError("title is required", details={"title": "required"})
    raise NothingToUndoError()
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-organization access
    attempts, so a caller can never learn that another tenant's row exists.

    Args:
        resource: Human-readable model/entity name (e.g. "Folder", "TestCase").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        organization_id: Optional scope that was enforced. For debug logging only.
    """

    code = "ERR_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an insert would collide with an existing row.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | int | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


# ── History taxonomy ─────────────────────────────────────────────────────────


class HistoryError(Exception):
    """Base for failures of undo, redo and write-log undo."""

    code = "ERR_HISTORY"
    default_message = "History operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class NothingToUndoError(HistoryError):
    code = "ERR_NOTHING_TO_UNDO"
    default_message = "Nothing to undo"


class NothingToRedoError(HistoryError):
    code = "ERR_NOTHING_TO_REDO"
    default_message = "Nothing to redo"


class InvalidStateError(HistoryError):
    """Write-log entry failed originally or was already undone."""

    code = "ERR_INVALID_STATE"
    default_message = "Operation cannot be undone in its current state"


class NotUndoableError(HistoryError):
    """Tool name does not map to a reversal."""

    code = "ERR_NOT_UNDOABLE"
    default_message = "Operation cannot be undone"


class MissingEntityReferenceError(HistoryError):
    """Log entry lacks the entity id or before-state needed to reverse it."""

    code = "ERR_MISSING_ENTITY_REFERENCE"
    default_message = "Log entry is missing the data needed to undo it"


class UndoFailedError(HistoryError):
    """The store mutation applying a reversal failed."""

    code = "ERR_UNDO_FAILED"
    default_message = "Undo failed"
