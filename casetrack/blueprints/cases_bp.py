"""
Test case & scenario blueprint.

Blueprint: cases
Prefix: /api/v1

Endpoints:
  Test cases:
    GET    /test-cases                        List (folder_id, state filters)
    POST   /test-cases                        Create
    GET    /test-cases/<id>                   Detail with scenarios
    PUT    /test-cases/<id>                   Update (diff gated)
    DELETE /test-cases/<id>                   Delete with scenarios
    PUT    /test-cases/reorder                Reorder {ids}

  Bulk:
    POST /test-cases/bulk/delete              {ids}
    POST /test-cases/bulk/state               {ids, state}
    POST /test-cases/bulk/move                {ids, folder_id}

  Changelog:
    GET /test-cases/<id>/changelog
    GET /changelog                            Latest rows (limit)

  Scenarios:
    GET    /test-cases/<id>/scenarios
    POST   /test-cases/<id>/scenarios
    PUT    /test-cases/<id>/scenarios/reorder {ids}
    PUT    /scenarios/<id>
    DELETE /scenarios/<id>

Services flush; every mutating route commits with db_commit_or_error().
"""

import logging

from flask import Blueprint, jsonify, request

from casetrack.auth import require_auth
from casetrack.blueprints import json_body, org_id, register_error_handlers, user_id
from casetrack.services import scenario_service, test_case_service
from casetrack.utils.helpers import db_commit_or_error, parse_int_list

logger = logging.getLogger(__name__)

cases_bp = register_error_handlers(Blueprint("cases", __name__, url_prefix="/api/v1"))


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

@cases_bp.route("/test-cases", methods=["GET"])
@require_auth("read")
def list_test_cases():
    cases = test_case_service.list_test_cases(
        org_id(),
        folder_id=request.args.get("folder_id", type=int),
        state=request.args.get("state"),
    )
    return jsonify({"items": cases, "total": len(cases)})


@cases_bp.route("/test-cases", methods=["POST"])
@require_auth("write")
def create_test_case():
    data = json_body()
    data.pop("id", None)
    case, _ = test_case_service.save_test_case(org_id(), user_id(), data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(case.to_dict(include_scenarios=True)), 201


@cases_bp.route("/test-cases/<int:case_id>", methods=["GET"])
@require_auth("read")
def get_test_case(case_id):
    return jsonify(test_case_service.get_test_case(org_id(), case_id))


@cases_bp.route("/test-cases/<int:case_id>", methods=["PUT"])
@require_auth("write")
def update_test_case(case_id):
    case, changes = test_case_service.update_test_case(org_id(), user_id(), case_id, json_body())
    if changes:
        err = db_commit_or_error()
        if err:
            return err
    return jsonify({"test_case": case.to_dict(include_scenarios=True), "changes": changes})


@cases_bp.route("/test-cases/<int:case_id>", methods=["DELETE"])
@require_auth("write")
def delete_test_case(case_id):
    test_case_service.delete_test_case(org_id(), user_id(), case_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": case_id})


@cases_bp.route("/test-cases/reorder", methods=["PUT"])
@require_auth("write")
def reorder_test_cases():
    ids, err = parse_int_list(json_body().get("ids"), "ids")
    if err:
        return err
    updated = test_case_service.reorder_test_cases(org_id(), ids)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"updated": updated})


# ── Bulk ─────────────────────────────────────────────────────────────────────

@cases_bp.route("/test-cases/bulk/delete", methods=["POST"])
@require_auth("write")
def bulk_delete():
    ids, err = parse_int_list(json_body().get("ids"), "ids")
    if err:
        return err
    deleted = test_case_service.bulk_delete_test_cases(org_id(), user_id(), ids)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": deleted})


@cases_bp.route("/test-cases/bulk/state", methods=["POST"])
@require_auth("write")
def bulk_state():
    data = json_body()
    ids, err = parse_int_list(data.get("ids"), "ids")
    if err:
        return err
    updated = test_case_service.bulk_update_test_case_state(
        org_id(), user_id(), ids, data.get("state"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"updated": updated})


@cases_bp.route("/test-cases/bulk/move", methods=["POST"])
@require_auth("write")
def bulk_move():
    data = json_body()
    ids, err = parse_int_list(data.get("ids"), "ids")
    if err:
        return err
    moved = test_case_service.bulk_move_test_cases(
        org_id(), user_id(), ids, data.get("folder_id"))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"updated": moved})


# ── Changelog ────────────────────────────────────────────────────────────────

@cases_bp.route("/test-cases/<int:case_id>/changelog", methods=["GET"])
@require_auth("read")
def test_case_changelog(case_id):
    return jsonify({"items": test_case_service.get_changelog(org_id(), case_id)})


@cases_bp.route("/changelog", methods=["GET"])
@require_auth("read")
def changelog():
    limit = min(max(request.args.get("limit", 100, type=int), 1), 500)
    return jsonify({"items": test_case_service.list_changelog(org_id(), limit)})


# ═════════════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═════════════════════════════════════════════════════════════════════════════

@cases_bp.route("/test-cases/<int:case_id>/scenarios", methods=["GET"])
@require_auth("read")
def list_scenarios(case_id):
    return jsonify({"items": scenario_service.list_scenarios(org_id(), case_id)})


@cases_bp.route("/test-cases/<int:case_id>/scenarios", methods=["POST"])
@require_auth("write")
def create_scenario(case_id):
    scenario = scenario_service.create_scenario(org_id(), case_id, json_body())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(scenario.to_dict()), 201


@cases_bp.route("/test-cases/<int:case_id>/scenarios/reorder", methods=["PUT"])
@require_auth("write")
def reorder_scenarios(case_id):
    ids, err = parse_int_list(json_body().get("ids"), "ids")
    if err:
        return err
    updated = scenario_service.reorder_scenarios(org_id(), case_id, ids)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"updated": updated})


@cases_bp.route("/scenarios/<int:scenario_id>", methods=["PUT"])
@require_auth("write")
def update_scenario(scenario_id):
    scenario, changes = scenario_service.update_scenario(org_id(), scenario_id, json_body())
    if changes:
        err = db_commit_or_error()
        if err:
            return err
    return jsonify({"scenario": scenario.to_dict(), "changes": changes})


@cases_bp.route("/scenarios/<int:scenario_id>", methods=["DELETE"])
@require_auth("write")
def delete_scenario(scenario_id):
    scenario_service.delete_scenario(org_id(), scenario_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": scenario_id})
