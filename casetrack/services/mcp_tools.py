"""
MCP tool registry and dispatcher.

Protocol clients call tools by name with a JSON argument object. Write
tools capture the entity's state before and after mutating it and append
one write-log row per invocation, success or failure. Read tools never
touch the write log.

    list_tools(auth)                    tools visible at the caller's permission
    call_tool(name, arguments, auth)    {content, isError, logId?}

Write tools require ``write`` permission and are rejected before any
mutation otherwise.
"""

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from casetrack.auth import AuthContext, has_permission
from casetrack.core.exceptions import NotFoundError, ValidationError
from casetrack.models import db
from casetrack.models.testing import (
    TEST_CASE_PRIORITIES,
    TEST_CASE_STATES,
    TEST_CASE_TEMPLATES,
    TEST_RESULT_STATUSES,
    Folder,
    Scenario,
    TestCase,
    TestCaseAuditLog,
    TestRun,
    TestRunResult,
)
from casetrack.services import snapshot
from casetrack.services.diff import compute_diff, split_changes
from casetrack.services.folder_service import descendant_ids
from casetrack.services.helpers.scoped_queries import get_scoped, scoped_select
from casetrack.services.write_log_service import WriteRecord, get_entity_state, log_write

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    payload: dict
    entity_id: int | None = None
    before: dict | None = None
    after: dict | None = None


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    permission: str
    input_schema: dict
    handler: Callable
    entity_type: str | None = None
    id_argument: str | None = None

    @property
    def writes(self) -> bool:
        return self.entity_type is not None

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


# ── Argument helpers ─────────────────────────────────────────────────────────

def _require(args: dict, key: str):
    value = args.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{key} is required", details={key: "required"})
    return value.strip() if isinstance(value, str) else value


def _require_int(args: dict, key: str) -> int:
    try:
        return int(_require(args, key))
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None


def _choice(args: dict, key: str, allowed, default):
    value = args.get(key, default)
    if value not in allowed:
        raise ValidationError(f"{key} must be one of: {', '.join(allowed)}", details={key: value})
    return value


def _folder_or_none(args: dict, key: str, organization_id: str) -> int | None:
    if args.get(key) is None:
        return None
    folder_id = _require_int(args, key)
    get_scoped(Folder, folder_id, organization_id=organization_id)
    return folder_id


def _changelog(case_id, auth, action, *, changes=None, previous=None, new=None):
    db.session.add(TestCaseAuditLog(
        organization_id=auth.organization_id,
        test_case_id=case_id,
        user_id=auth.user_id,
        action=action,
        changes_json=json.dumps(changes, default=str) if changes is not None else None,
        previous_values_json=json.dumps(previous, default=str) if previous is not None else None,
        new_values_json=json.dumps(new, default=str) if new is not None else None,
    ))


# ═════════════════════════════════════════════════════════════════════════════
# Read tools
# ═════════════════════════════════════════════════════════════════════════════

def _list_folders(args: dict, auth: AuthContext) -> dict:
    folders = Folder.query_for_org(auth.organization_id).order_by(Folder.order, Folder.name).all()
    return {"folders": [f.to_dict() for f in folders]}


def _list_test_cases(args: dict, auth: AuthContext) -> dict:
    query = TestCase.query_for_org(auth.organization_id)
    if args.get("folder_id") is not None:
        query = query.filter(TestCase.folder_id == _require_int(args, "folder_id"))
    if args.get("state"):
        query = query.filter(TestCase.state == args["state"])
    return {"test_cases": [c.to_dict() for c in query.order_by(TestCase.order, TestCase.id).all()]}


def _get_test_case(args: dict, auth: AuthContext) -> dict:
    case = get_scoped(TestCase, _require_int(args, "test_case_id"),
                      organization_id=auth.organization_id)
    return case.to_dict(include_scenarios=True)


# ═════════════════════════════════════════════════════════════════════════════
# Write tools
# ═════════════════════════════════════════════════════════════════════════════

def _create_folder(args: dict, auth: AuthContext) -> ToolOutcome:
    name = _require(args, "name")
    parent_id = _folder_or_none(args, "parent_id", auth.organization_id)
    siblings = Folder.query_for_org(auth.organization_id).filter(
        Folder.parent_id.is_(None) if parent_id is None else Folder.parent_id == parent_id
    )
    folder = Folder(
        organization_id=auth.organization_id,
        name=name,
        parent_id=parent_id,
        order=siblings.count(),
    )
    db.session.add(folder)
    db.session.flush()
    after = get_entity_state("folder", folder.id, auth.organization_id)
    return ToolOutcome(folder.to_dict(), folder.id, None, after)


def _create_test_case(args: dict, auth: AuthContext) -> ToolOutcome:
    title = _require(args, "title")
    folder_id = _folder_or_none(args, "folder_id", auth.organization_id)
    case = TestCase(
        organization_id=auth.organization_id,
        title=title,
        folder_id=folder_id,
        state=_choice(args, "state", TEST_CASE_STATES, "active"),
        priority=_choice(args, "priority", TEST_CASE_PRIORITIES, "normal"),
        template=_choice(args, "template", TEST_CASE_TEMPLATES, "bdd_feature"),
        created_by=auth.user_id,
        updated_by=auth.user_id,
    )
    db.session.add(case)
    db.session.flush()
    if args.get("gherkin") is not None:
        db.session.add(Scenario(
            test_case_id=case.id,
            title=(args.get("scenario_title") or title).strip(),
            gherkin=args["gherkin"],
            order=0,
        ))
        db.session.flush()
    _changelog(case.id, auth, "created",
               new={"title": case.title, "folder_id": case.folder_id,
                    "state": case.state, "priority": case.priority})
    after = get_entity_state("test_case", case.id, auth.organization_id)
    return ToolOutcome(after, case.id, None, after)


def _update_test_case(args: dict, auth: AuthContext) -> ToolOutcome:
    case_id = _require_int(args, "test_case_id")
    case = get_scoped(TestCase, case_id, organization_id=auth.organization_id)
    values = {}
    if "title" in args:
        values["title"] = _require(args, "title")
    if "folder_id" in args:
        values["folder_id"] = _folder_or_none(args, "folder_id", auth.organization_id)
    if "state" in args:
        values["state"] = _choice(args, "state", TEST_CASE_STATES, None)
    if "priority" in args:
        values["priority"] = _choice(args, "priority", TEST_CASE_PRIORITIES, None)

    before = get_entity_state("test_case", case_id, auth.organization_id)
    changes = compute_diff({k: getattr(case, k) for k in values}, values)
    if changes:
        for key, value in values.items():
            setattr(case, key, value)
        case.updated_at = datetime.now(UTC)
        case.updated_by = auth.user_id
        db.session.flush()
        previous, new = split_changes(changes)
        _changelog(case.id, auth, "updated", changes=changes, previous=previous, new=new)
    after = get_entity_state("test_case", case_id, auth.organization_id)
    return ToolOutcome({**after, "changes": changes}, case_id, before, after)


def _update_scenario(args: dict, auth: AuthContext) -> ToolOutcome:
    scenario_id = _require_int(args, "scenario_id")
    scenario = get_scoped(Scenario, scenario_id, organization_id=auth.organization_id)
    before = get_entity_state("scenario", scenario_id, auth.organization_id)
    if "title" in args:
        scenario.title = _require(args, "title")
    if "gherkin" in args:
        scenario.gherkin = args.get("gherkin") or ""
    scenario.updated_at = datetime.now(UTC)
    db.session.flush()
    after = get_entity_state("scenario", scenario_id, auth.organization_id)
    return ToolOutcome(after, scenario_id, before, after)


def _create_test_run(args: dict, auth: AuthContext) -> ToolOutcome:
    name = _require(args, "name")
    scenario_ids = args.get("scenario_ids") or []
    if not isinstance(scenario_ids, list) or not scenario_ids:
        raise ValidationError("scenario_ids must be a non-empty list")
    try:
        scenario_ids = list(dict.fromkeys(int(s) for s in scenario_ids))
    except (TypeError, ValueError):
        raise ValidationError("scenario_ids must contain integer ids") from None

    found = {
        s.id for s in db.session.execute(
            scoped_select(Scenario, auth.organization_id).where(Scenario.id.in_(scenario_ids))
        ).scalars()
    }
    missing = [s for s in scenario_ids if s not in found]
    if missing:
        raise ValidationError("Some scenarios were not found", details={"scenario_ids": missing})

    run = TestRun(
        organization_id=auth.organization_id,
        name=name,
        description=args.get("description"),
        linear_issue_id=args.get("linear_issue_id"),
        linear_project_id=args.get("linear_project_id"),
        linear_milestone_id=args.get("linear_milestone_id"),
        created_by=auth.user_id,
    )
    db.session.add(run)
    db.session.flush()
    for scenario_id in scenario_ids:
        db.session.add(TestRunResult(test_run_id=run.id, scenario_id=scenario_id, status="pending"))
    db.session.flush()
    after = get_entity_state("test_run", run.id, auth.organization_id)
    return ToolOutcome(after, run.id, None, after)


def _update_test_result(args: dict, auth: AuthContext) -> ToolOutcome:
    result_id = _require_int(args, "result_id")
    result = get_scoped(TestRunResult, result_id, organization_id=auth.organization_id)
    status = _choice(args, "status", TEST_RESULT_STATUSES, None)
    before = get_entity_state("test_result", result_id, auth.organization_id)
    result.status = status
    if "notes" in args:
        result.notes = args.get("notes")
    result.executed_at = datetime.now(UTC)
    result.executed_by = auth.user_id
    db.session.flush()
    after = get_entity_state("test_result", result_id, auth.organization_id)
    return ToolOutcome(after, result_id, before, after)


def _delete_test_case(args: dict, auth: AuthContext) -> ToolOutcome:
    case_id = _require_int(args, "test_case_id")
    get_scoped(TestCase, case_id, organization_id=auth.organization_id)
    before = snapshot.remove("test_case", case_id, auth.organization_id)
    _changelog(case_id, auth, "deleted",
               previous={k: before[k] for k in ("title", "folder_id", "state", "priority")})
    return ToolOutcome({"deleted": case_id}, case_id, before, None)


def _rename_folder(args: dict, auth: AuthContext) -> ToolOutcome:
    folder_id = _require_int(args, "folder_id")
    folder = get_scoped(Folder, folder_id, organization_id=auth.organization_id)
    name = _require(args, "name")
    before = get_entity_state("folder", folder_id, auth.organization_id)
    folder.name = name
    db.session.flush()
    after = get_entity_state("folder", folder_id, auth.organization_id)
    return ToolOutcome(folder.to_dict(), folder_id, before, after)


def _move_folder(args: dict, auth: AuthContext) -> ToolOutcome:
    folder_id = _require_int(args, "folder_id")
    folder = get_scoped(Folder, folder_id, organization_id=auth.organization_id)
    before = get_entity_state("folder", folder_id, auth.organization_id)
    if "parent_id" in args:
        parent_id = _folder_or_none(args, "parent_id", auth.organization_id)
        if parent_id is not None and (
            parent_id == folder_id or parent_id in descendant_ids(auth.organization_id, folder_id)
        ):
            raise ValidationError("Cannot move a folder into itself or one of its subfolders",
                                  details={"parent_id": parent_id})
        folder.parent_id = parent_id
    if args.get("order") is not None:
        folder.order = _require_int(args, "order")
    db.session.flush()
    after = get_entity_state("folder", folder_id, auth.organization_id)
    return ToolOutcome(folder.to_dict(), folder_id, before, after)


def _delete_folder(args: dict, auth: AuthContext) -> ToolOutcome:
    folder_id = _require_int(args, "folder_id")
    get_scoped(Folder, folder_id, organization_id=auth.organization_id)
    if Folder.query_for_org(auth.organization_id).filter(Folder.parent_id == folder_id).count():
        raise ValidationError("Cannot delete a folder that has subfolders")
    if TestCase.query_for_org(auth.organization_id).filter(TestCase.folder_id == folder_id).count():
        raise ValidationError("Cannot delete a folder that contains test cases")
    before = snapshot.remove("folder", folder_id, auth.organization_id)
    return ToolOutcome({"deleted": folder_id}, folder_id, before, None)


def _link_linear_issue(args: dict, auth: AuthContext) -> ToolOutcome:
    run_id = _require_int(args, "test_run_id")
    run = get_scoped(TestRun, run_id, organization_id=auth.organization_id)
    issue_id = _require(args, "issue_id")
    identifier = _require(args, "issue_identifier")
    title = _require(args, "issue_title")
    before = get_entity_state("test_run", run_id, auth.organization_id)
    run.linear_issue_id = issue_id
    run.linear_issue_identifier = identifier
    run.linear_issue_title = title
    db.session.flush()
    after = get_entity_state("test_run", run_id, auth.organization_id)
    return ToolOutcome(after, run_id, before, after)


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════

def _schema(required: list[str], **properties) -> dict:
    return {"type": "object", "properties": properties, "required": required}


_INT = {"type": "integer"}
_STR = {"type": "string"}

TOOLS: dict[str, Tool] = {t.name: t for t in (
    Tool("list_folders", "List all folders", "read", _schema([]), _list_folders),
    Tool("list_test_cases", "List test cases, optionally by folder or state", "read",
         _schema([], folder_id=_INT, state=_STR), _list_test_cases),
    Tool("get_test_case", "Get a test case with its scenarios", "read",
         _schema(["test_case_id"], test_case_id=_INT), _get_test_case),
    Tool("create_folder", "Create a folder", "write",
         _schema(["name"], name=_STR, parent_id=_INT), _create_folder, "folder"),
    Tool("create_test_case", "Create a test case with an optional initial scenario", "write",
         _schema(["title"], title=_STR, folder_id=_INT, state=_STR, priority=_STR,
                 template=_STR, scenario_title=_STR, gherkin=_STR),
         _create_test_case, "test_case"),
    Tool("update_test_case", "Update a test case's title, folder, state or priority", "write",
         _schema(["test_case_id"], test_case_id=_INT, title=_STR, folder_id=_INT,
                 state=_STR, priority=_STR),
         _update_test_case, "test_case", "test_case_id"),
    Tool("update_scenario", "Update a scenario's title or Gherkin body", "write",
         _schema(["scenario_id"], scenario_id=_INT, title=_STR, gherkin=_STR),
         _update_scenario, "scenario", "scenario_id"),
    Tool("create_test_run", "Create a test run with one pending result per scenario", "write",
         _schema(["name", "scenario_ids"], name=_STR, description=_STR,
                 scenario_ids={"type": "array", "items": _INT}),
         _create_test_run, "test_run"),
    Tool("update_test_result", "Record the outcome of one test run result", "write",
         _schema(["result_id", "status"], result_id=_INT, status=_STR, notes=_STR),
         _update_test_result, "test_result", "result_id"),
    Tool("delete_test_case", "Delete a test case and its scenarios", "write",
         _schema(["test_case_id"], test_case_id=_INT),
         _delete_test_case, "test_case", "test_case_id"),
    Tool("rename_folder", "Rename a folder", "write",
         _schema(["folder_id", "name"], folder_id=_INT, name=_STR),
         _rename_folder, "folder", "folder_id"),
    Tool("move_folder", "Move a folder under another parent or to a new position", "write",
         _schema(["folder_id"], folder_id=_INT, parent_id=_INT, order=_INT),
         _move_folder, "folder", "folder_id"),
    Tool("delete_folder", "Delete an empty folder", "write",
         _schema(["folder_id"], folder_id=_INT),
         _delete_folder, "folder", "folder_id"),
    Tool("link_linear_issue", "Link a test run to a Linear issue", "write",
         _schema(["test_run_id", "issue_id", "issue_identifier", "issue_title"],
                 test_run_id=_INT, issue_id=_STR, issue_identifier=_STR, issue_title=_STR),
         _link_linear_issue, "test_run", "test_run_id"),
)}


def list_tools(auth: AuthContext) -> list[dict]:
    return [t.to_dict() for t in TOOLS.values() if has_permission(auth, t.permission)]


def _text_result(payload, *, is_error: bool = False, log_id: int | None = None) -> dict:
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2, default=str)
    result = {"content": [{"type": "text", "text": text}], "isError": is_error}
    if log_id is not None:
        result["logId"] = log_id
    return result


def _entity_id_from_args(tool: Tool, args: dict) -> int | None:
    if not tool.id_argument:
        return None
    try:
        return int(args.get(tool.id_argument))
    except (TypeError, ValueError):
        return None


def _log_failure(tool: Tool, args: dict, auth: AuthContext, message: str) -> int:
    log_id = log_write(auth, WriteRecord(
        tool_name=tool.name,
        entity_type=tool.entity_type,
        status="failed",
        tool_args=args,
        entity_id=_entity_id_from_args(tool, args),
        error_message=message,
    ))
    db.session.commit()
    return log_id


def call_tool(name: str, arguments: dict | None, auth: AuthContext) -> dict:
    """Run one tool call and return an MCP-style tool result."""
    args = arguments or {}
    tool = TOOLS.get(name)
    if tool is None:
        return _text_result(f"Unknown tool: {name}", is_error=True)
    if not has_permission(auth, tool.permission):
        return _text_result(f"Permission denied: {tool.permission} access required", is_error=True)

    if not tool.writes:
        try:
            return _text_result(tool.handler(args, auth))
        except (ValidationError, NotFoundError) as exc:
            return _text_result(str(exc), is_error=True)

    try:
        outcome = tool.handler(args, auth)
        log_id = log_write(auth, WriteRecord(
            tool_name=tool.name,
            entity_type=tool.entity_type,
            status="success",
            tool_args=args,
            entity_id=outcome.entity_id,
            before_state=outcome.before,
            after_state=outcome.after,
        ))
        db.session.commit()
    except (ValidationError, NotFoundError) as exc:
        db.session.rollback()
        return _text_result(str(exc), is_error=True,
                            log_id=_log_failure(tool, args, auth, str(exc)))
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Tool %s failed with a store error", name,
                         extra={"organization_id": auth.organization_id, "tool_name": name})
        return _text_result("Database error", is_error=True,
                            log_id=_log_failure(tool, args, auth, "Database error"))

    return _text_result(outcome.payload, log_id=log_id)
