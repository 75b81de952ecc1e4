"""Standardised API error responses.

Usage
-----
    from casetrack.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Test case not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")
    return history_response(undo_service.undo(org_id))
"""

from __future__ import annotations

from flask import jsonify

from casetrack.core import exceptions as exc


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = exc.ValidationError.code

    # Auth – HTTP 401 / 403
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = exc.NotFoundError.code

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = exc.ConflictError.code

    # History
    NOTHING_TO_UNDO = exc.NothingToUndoError.code
    NOTHING_TO_REDO = exc.NothingToRedoError.code
    INVALID_STATE = exc.InvalidStateError.code
    NOT_UNDOABLE = exc.NotUndoableError.code
    MISSING_ENTITY_REFERENCE = exc.MissingEntityReferenceError.code
    UNDO_FAILED = exc.UndoFailedError.code

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    # An empty stack is a normal steady state, not a client error
    E.NOTHING_TO_UNDO: 200,
    E.NOTHING_TO_REDO: 200,
    E.INVALID_STATE: 409,
    E.NOT_UNDOABLE: 422,
    E.MISSING_ENTITY_REFERENCE: 422,
    E.UNDO_FAILED: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def status_for(code: str | None) -> int:
    return _DEFAULT_STATUS.get(code, 400) if code else 200


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def history_response(result):
    """Render a ``HistoryResult`` with the status its error code maps to."""
    return jsonify(result.to_dict()), status_for(result.code)
