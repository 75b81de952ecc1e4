"""
casetrack
Blueprint registry and shared route helpers.
"""

import logging

from flask import g, jsonify, request

from casetrack.core.exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def org_id() -> str:
    """Organization of the authenticated caller (routes are behind require_auth)."""
    return g.auth.organization_id


def user_id() -> str:
    return g.auth.user_id


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp):
    """Map service exceptions raised inside ``bp``'s views to JSON responses."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return jsonify({"error": str(error)}), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return jsonify({"error": str(error), "details": error.details}), 422

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return jsonify({"error": str(error)}), 409

    return bp
