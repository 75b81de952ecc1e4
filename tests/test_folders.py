"""
Folder tree: service rules, HTTP routes, and the app-level plumbing
(health, request ids, JSON logging) that every route passes through.
"""

import json
import logging

import pytest

from casetrack.core.exceptions import NotFoundError, ValidationError
from casetrack.middleware.logging_config import JSONFormatter
from casetrack.models import db
from casetrack.models.testing import Folder, TestCase
from casetrack.services import folder_service

ORG_A, ORG_B = "org-a", "org-b"
USER_B = "user-b"


@pytest.fixture()
def tree():
    """Suite / Checkout / Payments, plus a second root."""
    suite = folder_service.create_folder(ORG_A, "Suite")
    checkout = folder_service.create_folder(ORG_A, "Checkout", suite.id)
    payments = folder_service.create_folder(ORG_A, "Payments", checkout.id)
    other = folder_service.create_folder(ORG_A, "Other")
    db.session.commit()
    return suite, checkout, payments, other


class TestFolderService:
    def test_tree_nests_children(self, tree):
        suite, checkout, payments, other = tree
        roots = folder_service.folder_tree(ORG_A)
        assert [r["name"] for r in roots] == ["Suite", "Other"]
        assert roots[0]["children"][0]["children"][0]["id"] == payments.id
        assert folder_service.folder_tree(ORG_B) == []

    def test_breadcrumb(self, tree):
        _, _, payments, _ = tree
        path = folder_service.folder_breadcrumb(ORG_A, payments.id)
        assert [p["name"] for p in path] == ["Suite", "Checkout", "Payments"]

    def test_name_required(self):
        with pytest.raises(ValidationError):
            folder_service.create_folder(ORG_A, "   ")

    def test_parent_must_be_in_organization(self, tree):
        suite = tree[0]
        with pytest.raises(NotFoundError):
            folder_service.create_folder(ORG_B, "Intruder", suite.id)

    def test_cannot_move_into_descendant(self, tree):
        suite, _, payments, _ = tree
        with pytest.raises(ValidationError):
            folder_service.move_folder(ORG_A, suite.id, payments.id)
        with pytest.raises(ValidationError):
            folder_service.move_folder(ORG_A, suite.id, suite.id)

    def test_move_to_position_shifts_siblings(self, tree):
        suite, checkout, _, other = tree
        folder_service.move_folder(ORG_A, other.id, suite.id, position=0)
        db.session.commit()
        db.session.expire_all()
        assert (db.session.get(Folder, other.id).parent_id, db.session.get(Folder, other.id).order) \
            == (suite.id, 0)
        assert db.session.get(Folder, checkout.id).order == 1

    def test_delete_rejects_non_empty(self, tree):
        suite, checkout, payments, _ = tree
        with pytest.raises(ValidationError, match="subfolders"):
            folder_service.delete_folder(ORG_A, suite.id)
        db.session.add(TestCase(organization_id=ORG_A, title="Pay", folder_id=payments.id))
        db.session.commit()
        with pytest.raises(ValidationError, match="test cases"):
            folder_service.delete_folder(ORG_A, payments.id)

    def test_rename_to_same_name_records_nothing(self, tree):
        from casetrack.services import undo_service

        undo_service.clear_history(ORG_A)
        folder_service.rename_folder(ORG_A, tree[0].id, "Suite")
        assert undo_service.get_last_undo(ORG_A) is None


class TestFolderRoutes:
    def test_create_and_tree(self, client, jwt_headers):
        headers = jwt_headers()
        res = client.post("/api/v1/folders", json={"name": "Regression"}, headers=headers)
        assert res.status_code == 201
        folder_id = res.get_json()["id"]

        tree = client.get("/api/v1/folders/tree", headers=headers).get_json()["tree"]
        assert [n["id"] for n in tree] == [folder_id]

    def test_validation_error_is_422(self, client, jwt_headers):
        res = client.post("/api/v1/folders", json={"name": ""}, headers=jwt_headers())
        assert res.status_code == 422
        assert res.get_json()["details"] == {"name": "required"}

    def test_move_into_descendant_is_422(self, client, jwt_headers, tree):
        suite, _, payments, _ = tree
        res = client.put(f"/api/v1/folders/{suite.id}/move", json={"parent_id": payments.id},
                         headers=jwt_headers())
        assert res.status_code == 422

    def test_foreign_folder_is_404(self, client, jwt_headers, tree):
        other_org = jwt_headers(user_id=USER_B, organization_id=ORG_B)
        res = client.get(f"/api/v1/folders/{tree[0].id}/breadcrumb", headers=other_org)
        assert res.status_code == 404

    def test_reorder_roots(self, client, jwt_headers, tree):
        suite, _, _, other = tree
        res = client.put("/api/v1/folders/reorder", json={"parent_id": None,
                                                          "ids": [other.id, suite.id]},
                         headers=jwt_headers())
        assert res.get_json() == {"updated": 2}

    def test_delete_then_undo(self, client, jwt_headers, tree):
        headers = jwt_headers()
        other_id = tree[3].id
        assert client.delete(f"/api/v1/folders/{other_id}", headers=headers).status_code == 200
        res = client.post("/api/v1/history/undo", headers=headers)
        assert res.get_json()["description"] == 'Delete folder "Other"'
        assert client.get(f"/api/v1/folders/{other_id}/breadcrumb",
                          headers=headers).status_code == 200


class TestAppPlumbing:
    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nowhere")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nowhere"

    def test_request_id_is_echoed(self, client, jwt_headers):
        res = client.get("/api/v1/folders/tree",
                         headers={**jwt_headers(), "X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_is_generated(self, client):
        res = client.get("/api/v1/health")
        assert len(res.headers["X-Request-ID"]) == 12

    def test_json_formatter_carries_tenant_fields(self):
        record = logging.LogRecord("casetrack.test", logging.INFO, __file__, 1,
                                   "Undid %s", ("create_folder",), None)
        record.organization_id = ORG_A
        record.tool_name = "create_folder"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Undid create_folder"
        assert entry["organization_id"] == ORG_A
        assert entry["tool_name"] == "create_folder"
        assert "user_id" not in entry
