"""
Undo / redo blueprint.

Blueprint: history
Prefix: /api/v1/history

Endpoints:
    POST   /undo          Undo the caller organization's latest action
    POST   /redo          Redo the latest undone action
    GET    /undo-stack    {last, items, count} newest first
    GET    /redo-stack    {last, items, count} newest first
    DELETE ""             Clear both stacks

The history service owns its transaction; results map to HTTP status via
history_response() (an empty stack is 200 with success=false).
"""

import logging

from flask import Blueprint, jsonify, request

from casetrack.auth import require_auth
from casetrack.blueprints import org_id, register_error_handlers
from casetrack.services import undo_service
from casetrack.utils.errors import history_response

logger = logging.getLogger(__name__)

history_bp = register_error_handlers(
    Blueprint("history", __name__, url_prefix="/api/v1/history")
)


@history_bp.route("/undo", methods=["POST"])
@require_auth("write")
def undo():
    return history_response(undo_service.undo(org_id()))


@history_bp.route("/redo", methods=["POST"])
@require_auth("write")
def redo():
    return history_response(undo_service.redo(org_id()))


def _limit_arg():
    limit = request.args.get("limit", type=int)
    return max(limit, 1) if limit is not None else None


@history_bp.route("/undo-stack", methods=["GET"])
@require_auth("read")
def undo_stack():
    items = undo_service.get_undo_stack(org_id(), _limit_arg())
    return jsonify({
        "last": undo_service.get_last_undo(org_id()),
        "items": items,
        "count": len(items),
    })


@history_bp.route("/redo-stack", methods=["GET"])
@require_auth("read")
def redo_stack():
    items = undo_service.get_redo_stack(org_id(), _limit_arg())
    return jsonify({
        "last": undo_service.get_last_redo(org_id()),
        "items": items,
        "count": len(items),
    })


@history_bp.route("", methods=["DELETE"])
@require_auth("write")
def clear_history():
    return history_response(undo_service.clear_history(org_id()))
