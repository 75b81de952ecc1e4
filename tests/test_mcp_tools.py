"""
MCP tool dispatcher: listing by permission, each write tool, and the
write-log row appended per invocation.
"""

import json

import pytest

from casetrack.auth import AuthContext
from casetrack.models import db
from casetrack.models.history import McpWriteLog
from casetrack.models.testing import (
    Folder,
    Scenario,
    TestCase,
    TestCaseAuditLog,
    TestRun,
    TestRunResult,
)
from casetrack.services.mcp_tools import TOOLS, call_tool, list_tools
from casetrack.services.write_log_service import undo_write

ORG_A, ORG_B = "org-a", "org-b"
USER_A, USER_B = "user-a", "user-b"


def _payload(result):
    return json.loads(result["content"][0]["text"])


def _logs(org=ORG_A):
    return McpWriteLog.query_for_org(org).order_by(McpWriteLog.id).all()


@pytest.fixture()
def reader():
    return AuthContext(organization_id=ORG_A, user_id=USER_A, permissions="read",
                       client_id="reader")


@pytest.fixture()
def case_with_scenario():
    case = TestCase(organization_id=ORG_A, title="Login")
    db.session.add(case)
    db.session.flush()
    scenario = Scenario(test_case_id=case.id, title="Valid password", gherkin="Given a user")
    db.session.add(scenario)
    db.session.commit()
    return case, scenario


class TestListing:
    def test_write_caller_sees_every_tool(self, auth_a):
        names = {t["name"] for t in list_tools(auth_a)}
        assert names == set(TOOLS)

    def test_read_caller_sees_read_tools_only(self, reader):
        names = {t["name"] for t in list_tools(reader)}
        assert names == {"list_folders", "list_test_cases", "get_test_case"}

    def test_tool_shape(self, auth_a):
        tool = next(t for t in list_tools(auth_a) if t["name"] == "create_test_run")
        assert tool["inputSchema"]["required"] == ["name", "scenario_ids"]


class TestDispatch:
    def test_unknown_tool(self, auth_a):
        result = call_tool("drop_everything", {}, auth_a)
        assert result["isError"] is True
        assert result["content"][0]["text"] == "Unknown tool: drop_everything"
        assert _logs() == []

    def test_read_permission_rejected_before_mutation(self, reader):
        result = call_tool("create_folder", {"name": "Nope"}, reader)
        assert result["isError"] is True
        assert "write access required" in result["content"][0]["text"]
        assert Folder.query.count() == 0
        assert _logs() == []

    def test_read_tools_do_not_log(self, auth_a, case_with_scenario):
        case, _ = case_with_scenario
        listed = _payload(call_tool("list_test_cases", {}, auth_a))
        assert [c["id"] for c in listed["test_cases"]] == [case.id]
        got = _payload(call_tool("get_test_case", {"test_case_id": case.id}, auth_a))
        assert got["scenarios"][0]["title"] == "Valid password"
        assert _logs() == []

    def test_read_tool_error(self, auth_a):
        result = call_tool("get_test_case", {"test_case_id": 424242}, auth_a)
        assert result["isError"] is True
        assert "logId" not in result

    def test_read_tools_are_scoped(self, auth_b, case_with_scenario):
        case, _ = case_with_scenario
        assert _payload(call_tool("list_test_cases", {}, auth_b))["test_cases"] == []
        assert call_tool("get_test_case", {"test_case_id": case.id}, auth_b)["isError"]


class TestWriteTools:
    def test_create_folder_logs_after_state(self, auth_a):
        result = call_tool("create_folder", {"name": "Checkout"}, auth_a)
        assert result["isError"] is False
        folder_id = _payload(result)["id"]

        log = db.session.get(McpWriteLog, result["logId"])
        assert log.tool_name == "create_folder"
        assert log.entity_type == "folder"
        assert log.entity_id == folder_id
        assert log.status == "success"
        assert log.args == {"name": "Checkout"}
        assert log.after["name"] == "Checkout"
        assert log.before is None

    def test_create_test_case_with_initial_scenario(self, auth_a):
        result = call_tool("create_test_case", {
            "title": "Refund", "priority": "high", "gherkin": "Given an order",
        }, auth_a)
        payload = _payload(result)
        assert payload["priority"] == "high"
        assert payload["state"] == "active"
        assert [s["title"] for s in payload["scenarios"]] == ["Refund"]

        audit = TestCaseAuditLog.query_for_org(ORG_A).filter_by(test_case_id=payload["id"]).all()
        assert [a.action for a in audit] == ["created"]

    def test_create_test_case_rejects_bad_choice(self, auth_a):
        result = call_tool("create_test_case", {"title": "X", "state": "someday"}, auth_a)
        assert result["isError"] is True
        assert TestCase.query.count() == 0
        log = db.session.get(McpWriteLog, result["logId"])
        assert log.status == "failed"
        assert log.entity_id is None
        assert "state must be one of" in log.error_message

    def test_update_test_case_records_before_and_after(self, auth_a, case_with_scenario):
        case, _ = case_with_scenario
        result = call_tool("update_test_case", {"test_case_id": case.id, "title": "Sign in"},
                           auth_a)
        payload = _payload(result)
        assert payload["changes"] == [{"field": "title", "old_value": "Login",
                                       "new_value": "Sign in"}]
        log = db.session.get(McpWriteLog, result["logId"])
        assert log.before["title"] == "Login"
        assert log.after["title"] == "Sign in"

    def test_no_op_update_still_logs(self, auth_a, case_with_scenario):
        case, _ = case_with_scenario
        result = call_tool("update_test_case", {"test_case_id": case.id, "title": "Login"}, auth_a)
        assert _payload(result)["changes"] == []
        assert len(_logs()) == 1
        assert TestCaseAuditLog.query.count() == 0

    def test_update_missing_case_logs_failure_with_entity(self, auth_a):
        result = call_tool("update_test_case", {"test_case_id": 31337, "title": "Ghost"}, auth_a)
        assert result["isError"] is True
        log = db.session.get(McpWriteLog, result["logId"])
        assert log.status == "failed"
        assert log.entity_id == 31337
        assert log.entity_type == "test_case"

    def test_update_scenario(self, auth_a, case_with_scenario):
        _, scenario = case_with_scenario
        result = call_tool("update_scenario", {"scenario_id": scenario.id,
                                               "gherkin": "Given a locked user"}, auth_a)
        assert _payload(result)["gherkin"] == "Given a locked user"
        log = db.session.get(McpWriteLog, result["logId"])
        assert log.before["gherkin"] == "Given a user"

    def test_create_test_run_with_results(self, auth_a, case_with_scenario):
        _, scenario = case_with_scenario
        result = call_tool("create_test_run", {"name": "Nightly", "scenario_ids": [scenario.id]},
                           auth_a)
        payload = _payload(result)
        assert payload["name"] == "Nightly"
        assert [r["status"] for r in payload["results"]] == ["pending"]
        assert TestRunResult.query.count() == 1

    def test_create_test_run_rejects_foreign_scenario(self, auth_a, auth_b, case_with_scenario):
        _, scenario = case_with_scenario
        result = call_tool("create_test_run", {"name": "Sneaky", "scenario_ids": [scenario.id]},
                           auth_b)
        assert result["isError"] is True
        assert TestRun.query.count() == 0
        assert _logs(ORG_B)[0].status == "failed"
        assert _logs(ORG_A) == []

    def test_create_test_run_requires_scenarios(self, auth_a):
        result = call_tool("create_test_run", {"name": "Empty", "scenario_ids": []}, auth_a)
        assert result["isError"] is True
        assert "non-empty" in result["content"][0]["text"]

    def test_update_test_result(self, auth_a, case_with_scenario):
        _, scenario = case_with_scenario
        run = _payload(call_tool("create_test_run",
                                 {"name": "Smoke", "scenario_ids": [scenario.id]}, auth_a))
        result_id = run["results"][0]["id"]

        result = call_tool("update_test_result", {"result_id": result_id, "status": "passed",
                                                  "notes": "green"}, auth_a)
        payload = _payload(result)
        assert payload["status"] == "passed"
        assert payload["executed_by"] == USER_A
        log = db.session.get(McpWriteLog, result["logId"])
        assert log.before["status"] == "pending"

    def test_delete_test_case_is_logged_but_not_undoable(self, auth_a, case_with_scenario):
        case, _ = case_with_scenario
        case_id = case.id
        result = call_tool("delete_test_case", {"test_case_id": case_id}, auth_a)
        assert _payload(result) == {"deleted": case_id}
        assert db.session.get(TestCase, case_id) is None

        log = db.session.get(McpWriteLog, result["logId"])
        assert log.before["title"] == "Login"
        assert undo_write(log.id, USER_A, ORG_A).code == "ERR_NOT_UNDOABLE"


class TestFolderAndRunTools:
    @pytest.fixture()
    def folders(self):
        parent = Folder(organization_id=ORG_A, name="Suite", order=0)
        db.session.add(parent)
        db.session.flush()
        child = Folder(organization_id=ORG_A, name="Checkout", parent_id=parent.id, order=0)
        db.session.add(child)
        db.session.commit()
        return parent, child

    def test_rename_folder_logs_before_and_after(self, auth_a, folders):
        _, child = folders
        result = call_tool("rename_folder", {"folder_id": child.id, "name": " Payments "}, auth_a)
        assert _payload(result)["name"] == "Payments"
        log = db.session.get(McpWriteLog, result["logId"])
        assert (log.entity_type, log.entity_id) == ("folder", child.id)
        assert log.before["name"] == "Checkout"
        assert log.after["name"] == "Payments"

    def test_rename_folder_requires_name(self, auth_a, folders):
        _, child = folders
        result = call_tool("rename_folder", {"folder_id": child.id, "name": "  "}, auth_a)
        assert result["isError"] is True
        assert db.session.get(Folder, child.id).name == "Checkout"
        assert db.session.get(McpWriteLog, result["logId"]).entity_id == child.id

    def test_move_folder_to_root(self, auth_a, folders):
        _, child = folders
        result = call_tool("move_folder", {"folder_id": child.id, "parent_id": None,
                                           "order": 3}, auth_a)
        payload = _payload(result)
        assert (payload["parent_id"], payload["order"]) == (None, 3)
        log = db.session.get(McpWriteLog, result["logId"])
        assert log.before["parent_id"] is not None
        assert log.after["parent_id"] is None

    def test_move_folder_into_own_subtree_fails(self, auth_a, folders):
        parent, child = folders
        result = call_tool("move_folder", {"folder_id": parent.id, "parent_id": child.id}, auth_a)
        assert result["isError"] is True
        assert db.session.get(Folder, parent.id).parent_id is None
        assert db.session.get(McpWriteLog, result["logId"]).status == "failed"

    def test_move_folder_is_scoped(self, auth_b, folders):
        _, child = folders
        result = call_tool("move_folder", {"folder_id": child.id}, auth_b)
        assert result["isError"] is True
        assert _logs(ORG_B)[0].status == "failed"

    def test_delete_non_empty_folder_fails(self, auth_a, folders):
        parent, child = folders
        db.session.add(TestCase(organization_id=ORG_A, title="Pay", folder_id=child.id))
        db.session.commit()

        for folder_id in (parent.id, child.id):
            result = call_tool("delete_folder", {"folder_id": folder_id}, auth_a)
            assert result["isError"] is True
        assert Folder.query_for_org(ORG_A).count() == 2
        assert [log.status for log in _logs()] == ["failed", "failed"]

    def test_deleted_folder_cannot_be_undone_through_log(self, auth_a, folders):
        _, child = folders
        child_id = child.id
        result = call_tool("delete_folder", {"folder_id": child_id}, auth_a)
        assert _payload(result) == {"deleted": child_id}

        log = db.session.get(McpWriteLog, result["logId"])
        assert log.before["name"] == "Checkout"
        outcome = undo_write(log.id, USER_A, ORG_A)
        assert outcome.code == "ERR_NOT_UNDOABLE"
        assert db.session.get(Folder, child_id) is None
        assert db.session.get(McpWriteLog, log.id).undone_at is None

    def test_link_linear_issue(self, auth_a, case_with_scenario):
        _, scenario = case_with_scenario
        run_id = _payload(call_tool("create_test_run",
                                    {"name": "Nightly", "scenario_ids": [scenario.id]},
                                    auth_a))["id"]
        result = call_tool("link_linear_issue", {
            "test_run_id": run_id, "issue_id": "a1b2", "issue_identifier": "ENG-123",
            "issue_title": "Checkout flakes",
        }, auth_a)
        payload = _payload(result)
        assert payload["linear_issue_identifier"] == "ENG-123"
        assert payload["linear_issue_title"] == "Checkout flakes"

        log = db.session.get(McpWriteLog, result["logId"])
        assert (log.entity_type, log.entity_id) == ("test_run", run_id)
        assert log.before["linear_issue_id"] is None
        assert log.after["linear_issue_id"] == "a1b2"

    def test_link_linear_issue_requires_every_field(self, auth_a, case_with_scenario):
        _, scenario = case_with_scenario
        run_id = _payload(call_tool("create_test_run",
                                    {"name": "Nightly", "scenario_ids": [scenario.id]},
                                    auth_a))["id"]
        result = call_tool("link_linear_issue", {"test_run_id": run_id, "issue_id": "a1b2"},
                           auth_a)
        assert result["isError"] is True
        assert "issue_identifier is required" in result["content"][0]["text"]
        assert db.session.get(TestRun, run_id).linear_issue_id is None


class TestUndoThroughLog:
    def test_created_case_is_removed(self, auth_a):
        result = call_tool("create_test_case", {"title": "Temp", "gherkin": "Given"}, auth_a)
        case_id = _payload(result)["id"]

        assert undo_write(result["logId"], USER_A, ORG_A).success
        assert db.session.get(TestCase, case_id) is None
        assert Scenario.query.filter_by(test_case_id=case_id).count() == 0

    def test_updated_case_is_restored(self, auth_a, case_with_scenario):
        case, _ = case_with_scenario
        result = call_tool("update_test_case", {"test_case_id": case.id, "state": "retired",
                                                "priority": "critical"}, auth_a)
        assert undo_write(result["logId"], USER_A, ORG_A).success
        db.session.expire_all()
        restored = db.session.get(TestCase, case.id)
        assert (restored.state, restored.priority) == ("active", "normal")
