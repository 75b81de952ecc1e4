"""
Test case service: UI-driven test case mutations.

Every mutation that changes something records exactly one undo entry;
no-op updates record nothing. Creates, updates and deletes also append a
row to the test case changelog.

Transaction policy: functions flush, the blueprint commits.
"""

import json
import logging
from datetime import UTC, datetime

from sqlalchemy import func

from casetrack.core.exceptions import ValidationError
from casetrack.models import db
from casetrack.models.testing import (
    TEST_CASE_PRIORITIES,
    TEST_CASE_STATES,
    TEST_CASE_TEMPLATES,
    Folder,
    TestCase,
    TestCaseAuditLog,
)
from casetrack.services import snapshot, undo_service
from casetrack.services.diff import compute_diff, split_changes
from casetrack.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from casetrack.services.undo_payloads import (
    ActionType,
    EntityRefs,
    FieldUpdate,
    FieldValues,
    Snapshots,
)

logger = logging.getLogger(__name__)

# Fields a caller may edit, and the fields an update's undo entry restores
EDITABLE_FIELDS = ("title", "folder_id", "state", "priority", "template", "legacy_id")
UNDO_FIELDS = ("title", "folder_id", "state", "priority", "order")


# ── Validation ───────────────────────────────────────────────────────────────

def _check_choice(value, allowed, field):
    if value not in allowed:
        raise ValidationError(
            f"{field} must be one of: {', '.join(allowed)}",
            details={field: value},
        )


def _check_folder(folder_id, organization_id):
    if folder_id is None:
        return
    get_scoped(Folder, folder_id, organization_id=organization_id)


def _validated_fields(data: dict, organization_id: str) -> dict:
    values = {k: data[k] for k in EDITABLE_FIELDS if k in data}
    if "title" in values:
        values["title"] = (values["title"] or "").strip()
        if not values["title"]:
            raise ValidationError("title is required", details={"title": "required"})
        if len(values["title"]) > 300:
            raise ValidationError("title must be ≤ 300 characters")
    if "state" in values:
        _check_choice(values["state"], TEST_CASE_STATES, "state")
    if "priority" in values:
        _check_choice(values["priority"], TEST_CASE_PRIORITIES, "priority")
    if "template" in values:
        _check_choice(values["template"], TEST_CASE_TEMPLATES, "template")
    if "folder_id" in values:
        _check_folder(values["folder_id"], organization_id)
    return values


def _next_order(organization_id: str, folder_id: int | None) -> int:
    query = db.session.query(func.max(TestCase.order)).filter(
        TestCase.organization_id == organization_id
    )
    if folder_id is None:
        query = query.filter(TestCase.folder_id.is_(None))
    else:
        query = query.filter(TestCase.folder_id == folder_id)
    current = query.scalar()
    return (current if current is not None else -1) + 1


def _undo_values(case: TestCase, edited=()) -> dict:
    return {f: getattr(case, f) for f in dict.fromkeys([*UNDO_FIELDS, *edited])}


# ── Changelog ────────────────────────────────────────────────────────────────

def _log_change(case_id, organization_id, user_id, action, *, changes=None,
                previous=None, new=None):
    db.session.add(TestCaseAuditLog(
        organization_id=organization_id,
        test_case_id=case_id,
        user_id=user_id,
        action=action,
        changes_json=json.dumps(changes, default=str) if changes is not None else None,
        previous_values_json=json.dumps(previous, default=str) if previous is not None else None,
        new_values_json=json.dumps(new, default=str) if new is not None else None,
    ))


def get_changelog(organization_id: str, test_case_id: int) -> list[dict]:
    """Changelog rows of one test case, newest first."""
    rows = (
        TestCaseAuditLog.query_for_org(organization_id)
        .filter_by(test_case_id=test_case_id)
        .order_by(TestCaseAuditLog.created_at.desc(), TestCaseAuditLog.id.desc())
        .all()
    )
    return [r.to_dict() for r in rows]


def list_changelog(organization_id: str, limit: int = 100) -> list[dict]:
    rows = (
        TestCaseAuditLog.query_for_org(organization_id)
        .order_by(TestCaseAuditLog.created_at.desc(), TestCaseAuditLog.id.desc())
        .limit(limit)
        .all()
    )
    return [r.to_dict() for r in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

def get_test_case(organization_id: str, test_case_id: int) -> dict:
    case = get_scoped(TestCase, test_case_id, organization_id=organization_id)
    return case.to_dict(include_scenarios=True)


def list_test_cases(organization_id: str, folder_id: int | None = None,
                    state: str | None = None) -> list[dict]:
    query = TestCase.query_for_org(organization_id)
    if folder_id is not None:
        query = query.filter(TestCase.folder_id == folder_id)
    if state:
        query = query.filter(TestCase.state == state)
    return [c.to_dict() for c in query.order_by(TestCase.order, TestCase.id).all()]


# ═════════════════════════════════════════════════════════════════════════════
# Single-case mutations
# ═════════════════════════════════════════════════════════════════════════════

def create_test_case(organization_id: str, user_id: str, data: dict) -> TestCase:
    values = _validated_fields(data, organization_id)
    if "title" not in values:
        raise ValidationError("title is required", details={"title": "required"})

    case = TestCase(
        organization_id=organization_id,
        order=_next_order(organization_id, values.get("folder_id")),
        created_by=user_id,
        updated_by=user_id,
        **values,
    )
    db.session.add(case)
    db.session.flush()

    _log_change(case.id, organization_id, user_id, "created",
                new={k: getattr(case, k) for k in ("title", "folder_id", "state", "priority")})
    undo_service.record_action(
        organization_id, ActionType.CREATE_TEST_CASE,
        f'Create "{case.title}"', EntityRefs([case.id]),
    )
    logger.info("Created test case %s", case.id, extra={"organization_id": organization_id})
    return case


def update_test_case(organization_id: str, user_id: str, test_case_id: int,
                     data: dict) -> tuple[TestCase, list[dict]]:
    """Apply edits; returns ``(case, changes)``. Empty changes means nothing was written."""
    case = get_scoped(TestCase, test_case_id, organization_id=organization_id)
    values = _validated_fields(data, organization_id)

    before = {k: getattr(case, k) for k in values}
    changes = compute_diff(before, values)
    if not changes:
        return case, []

    previous = _undo_values(case, values)
    old_title = case.title
    for key, value in values.items():
        setattr(case, key, value)
    case.updated_at = datetime.now(UTC)
    case.updated_by = user_id
    db.session.flush()

    prev_values, new_values = split_changes(changes)
    _log_change(case.id, organization_id, user_id, "updated", changes=changes,
                previous=prev_values, new=new_values)
    undo_service.record_action(
        organization_id, ActionType.UPDATE_TEST_CASE,
        f'Update "{old_title}"', FieldValues.single(case.id, previous),
    )
    return case, changes


def save_test_case(organization_id: str, user_id: str, data: dict):
    """Create when ``data`` has no id, otherwise update.

    Returns ``(case, changes)``; ``changes`` is None for a create.
    """
    if data.get("id"):
        return update_test_case(organization_id, user_id, int(data["id"]), data)
    return create_test_case(organization_id, user_id, data), None


def delete_test_case(organization_id: str, user_id: str, test_case_id: int) -> dict:
    """Delete a test case and its scenarios; returns the removed snapshot."""
    get_scoped(TestCase, test_case_id, organization_id=organization_id)
    removed = snapshot.remove("test_case", test_case_id, organization_id)

    _log_change(test_case_id, organization_id, user_id, "deleted",
                previous={k: removed[k] for k in ("title", "folder_id", "state", "priority")})
    undo_service.record_action(
        organization_id, ActionType.DELETE_TEST_CASE,
        f'Delete "{removed["title"]}"', Snapshots([removed]),
    )
    return removed


# ═════════════════════════════════════════════════════════════════════════════
# Bulk mutations
# ═════════════════════════════════════════════════════════════════════════════

def _scoped_cases(organization_id: str, ids: list[int]) -> list[TestCase]:
    if not ids:
        return []
    return (
        TestCase.query_for_org(organization_id)
        .filter(TestCase.id.in_(ids))
        .order_by(TestCase.id)
        .all()
    )


def bulk_delete_test_cases(organization_id: str, user_id: str, ids: list[int]) -> int:
    removed = []
    for case in _scoped_cases(organization_id, ids):
        snap = snapshot.remove("test_case", case.id, organization_id)
        _log_change(case.id, organization_id, user_id, "deleted",
                    previous={k: snap[k] for k in ("title", "folder_id", "state", "priority")})
        removed.append(snap)
    if removed:
        undo_service.record_action(
            organization_id, ActionType.BULK_DELETE_TEST_CASES,
            f"Delete {len(removed)} test case(s)", Snapshots(removed),
        )
    return len(removed)


def _bulk_set(organization_id: str, user_id: str, ids: list[int], field: str, value,
              action: ActionType, description: str) -> int:
    updates = []
    now = datetime.now(UTC)
    for case in _scoped_cases(organization_id, ids):
        if getattr(case, field) == value:
            continue
        updates.append(FieldUpdate(case.id, {field: getattr(case, field)}))
        setattr(case, field, value)
        case.updated_at = now
        case.updated_by = user_id
    if not updates:
        return 0
    db.session.flush()
    undo_service.record_action(organization_id, action, description.format(n=len(updates)),
                               FieldValues(updates))
    return len(updates)


def bulk_update_test_case_state(organization_id: str, user_id: str, ids: list[int],
                                state: str) -> int:
    _check_choice(state, TEST_CASE_STATES, "state")
    return _bulk_set(
        organization_id, user_id, ids, "state", state,
        ActionType.BULK_UPDATE_TEST_CASES, f'Change state to "{state}" for {{n}} test case(s)',
    )


def bulk_move_test_cases(organization_id: str, user_id: str, ids: list[int],
                         folder_id: int | None) -> int:
    _check_folder(folder_id, organization_id)
    return _bulk_set(
        organization_id, user_id, ids, "folder_id", folder_id,
        ActionType.BULK_MOVE_TEST_CASES, "Move {n} test case(s) to folder",
    )


def reorder_test_cases(organization_id: str, ordered_ids: list[int]) -> int:
    """Set ``order`` to each id's position in ``ordered_ids``.

    A repeated id keeps its first position.
    """
    ordered_ids = list(dict.fromkeys(ordered_ids))
    updates = []
    for position, case_id in enumerate(ordered_ids):
        case = get_scoped_or_none(TestCase, case_id, organization_id=organization_id)
        if case is None or case.order == position:
            continue
        updates.append(FieldUpdate(case.id, {"order": case.order}))
        case.order = position
    if not updates:
        return 0
    db.session.flush()
    undo_service.record_action(organization_id, ActionType.REORDER_TEST_CASES,
                               "Reorder test cases", FieldValues(updates))
    return len(updates)
