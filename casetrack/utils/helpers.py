"""Shared blueprint helpers.

db_commit_or_error:  commit the request's unit of work or return an error tuple
parse_int_list:      validate a JSON list of integer ids
"""
import logging

from sqlalchemy.exc import IntegrityError, OperationalError

from casetrack.models import db
from casetrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def parse_int_list(value, field: str):
    """Return ``value`` as a list of ints, or an error tuple.

    Usage::

        ids, err = parse_int_list(data.get("ids"), "ids")
        if err:
            return err
    """
    if not isinstance(value, list) or not value:
        return None, api_error(E.VALIDATION_REQUIRED, f"{field} must be a non-empty list")
    try:
        return [int(v) for v in value], None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must contain integer ids")


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure, ready for ``return``.

    Usage::

        err = db_commit_or_error()
        if err:
            return err

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    Other → 500 (unexpected)
    """
    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return api_error(E.DATABASE, "Database error")
    except Exception:
        db.session.rollback()
        logger.exception("Unexpected database error on commit")
        return api_error(E.DATABASE, "Database error")
