"""
Protocol tool & write-log blueprint.

Blueprint: mcp
Prefix: /api/v1/mcp

Endpoints:
    GET  /tools                    Tools visible at the caller's permission
    POST /tools/call               {name, arguments} → tool result
    GET  /write-logs               Paged write log (limit, offset, user_id,
                                   tool_name, entity_type, include_undone)
    POST /write-logs/<id>/undo     Reverse one logged write
"""

import logging

from flask import Blueprint, g, jsonify, request

from casetrack.auth import require_auth
from casetrack.blueprints import json_body, org_id, register_error_handlers, user_id
from casetrack.services import mcp_tools, write_log_service
from casetrack.utils.errors import E, api_error, history_response

logger = logging.getLogger(__name__)

mcp_bp = register_error_handlers(Blueprint("mcp", __name__, url_prefix="/api/v1/mcp"))


@mcp_bp.route("/tools", methods=["GET"])
@require_auth("read")
def list_tools():
    return jsonify({"tools": mcp_tools.list_tools(g.auth)})


@mcp_bp.route("/tools/call", methods=["POST"])
@require_auth("read")
def call_tool():
    data = json_body()
    name = data.get("name")
    if not name:
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    arguments = data.get("arguments") or {}
    if not isinstance(arguments, dict):
        return api_error(E.VALIDATION_INVALID, "arguments must be an object")
    return jsonify(mcp_tools.call_tool(name, arguments, g.auth))


def _bool_arg(name: str, default: bool) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


@mcp_bp.route("/write-logs", methods=["GET"])
@require_auth("read")
def list_write_logs():
    page = write_log_service.list_writes(
        org_id(),
        limit=request.args.get("limit", type=int),
        offset=request.args.get("offset", 0, type=int),
        user_id=request.args.get("user_id"),
        tool_name=request.args.get("tool_name"),
        entity_type=request.args.get("entity_type"),
        include_undone=_bool_arg("include_undone", True),
    )
    return jsonify(page)


@mcp_bp.route("/write-logs/<int:log_id>/undo", methods=["POST"])
@require_auth("write")
def undo_write_log(log_id):
    return history_response(write_log_service.undo_write(log_id, user_id(), org_id()))
