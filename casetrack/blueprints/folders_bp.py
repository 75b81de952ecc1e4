"""
Folder tree blueprint.

Blueprint: folders
Prefix: /api/v1

Endpoints:
    GET    /folders/tree                 Nested tree
    GET    /folders/<id>/breadcrumb      Root-to-folder path
    POST   /folders                      Create {name, parent_id}
    PUT    /folders/<id>                 Rename {name}
    PUT    /folders/<id>/move            Reparent {parent_id, position}
    DELETE /folders/<id>                 Delete (must be empty)
    PUT    /folders/reorder              Reorder siblings {parent_id, ids}
"""

from flask import Blueprint, jsonify

from casetrack.auth import require_auth
from casetrack.blueprints import json_body, org_id, register_error_handlers
from casetrack.services import folder_service
from casetrack.utils.helpers import db_commit_or_error, parse_int_list

folders_bp = register_error_handlers(Blueprint("folders", __name__, url_prefix="/api/v1"))


@folders_bp.route("/folders/tree", methods=["GET"])
@require_auth("read")
def folder_tree():
    return jsonify({"tree": folder_service.folder_tree(org_id())})


@folders_bp.route("/folders/<int:folder_id>/breadcrumb", methods=["GET"])
@require_auth("read")
def folder_breadcrumb(folder_id):
    return jsonify({"path": folder_service.folder_breadcrumb(org_id(), folder_id)})


@folders_bp.route("/folders", methods=["POST"])
@require_auth("write")
def create_folder():
    data = json_body()
    folder = folder_service.create_folder(org_id(), data.get("name"), data.get("parent_id"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(folder.to_dict()), 201


@folders_bp.route("/folders/<int:folder_id>", methods=["PUT"])
@require_auth("write")
def rename_folder(folder_id):
    folder = folder_service.rename_folder(org_id(), folder_id, json_body().get("name"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(folder.to_dict())


@folders_bp.route("/folders/<int:folder_id>/move", methods=["PUT"])
@require_auth("write")
def move_folder(folder_id):
    data = json_body()
    position = data.get("position")
    folder = folder_service.move_folder(
        org_id(), folder_id, data.get("parent_id"),
        int(position) if position is not None else None,
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(folder.to_dict())


@folders_bp.route("/folders/<int:folder_id>", methods=["DELETE"])
@require_auth("write")
def delete_folder(folder_id):
    folder_service.delete_folder(org_id(), folder_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": folder_id})


@folders_bp.route("/folders/reorder", methods=["PUT"])
@require_auth("write")
def reorder_folders():
    data = json_body()
    ids, err = parse_int_list(data.get("ids"), "ids")
    if err:
        return err
    updated = folder_service.reorder_folders(org_id(), data.get("parent_id"), ids)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"updated": updated})
