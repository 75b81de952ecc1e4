"""
Snapshot codec: capture, restore, remove and recreate entities.

A snapshot is a flat, JSON-serializable dict of an entity's fields.
Test case snapshots embed their ordered scenarios and test run snapshots
embed their results. Datetimes travel as epoch milliseconds so a snapshot
survives a JSON round-trip unchanged.

Every read is scoped by organization. ``remove`` and ``recreate`` are the
primitives the undo stack builds on; ``restore`` is what the write-log
uses to put a ``before_state`` back.

Transaction policy: functions flush, the caller commits.
"""

import logging
from datetime import UTC, datetime

import sqlalchemy as sa

from casetrack.core.exceptions import ConflictError, NotFoundError
from casetrack.models import db
from casetrack.models.testing import Folder, Scenario, TestCase, TestRun, TestRunResult
from casetrack.services.helpers.scoped_queries import get_scoped_or_none

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    "folder": Folder,
    "test_case": TestCase,
    "scenario": Scenario,
    "test_run": TestRun,
    "test_result": TestRunResult,
}
ENTITY_TYPES = tuple(ENTITY_MODELS)

# Fields written back by restore / swap. Keys, timestamps and ownership stay put.
MUTABLE_FIELDS = {
    "folder": ("name", "parent_id", "order"),
    "test_case": ("legacy_id", "title", "folder_id", "order", "template", "state", "priority"),
    "scenario": ("title", "gherkin", "order"),
    "test_run": ("name", "description", "status", "linear_issue_id", "linear_issue_identifier",
                 "linear_issue_title"),
    "test_result": ("status", "notes", "executed_at", "executed_by"),
}

_DATETIME_FIELDS = frozenset({"created_at", "updated_at", "executed_at"})
_TOUCHES_UPDATED_AT = frozenset({"test_case", "scenario"})


# ── Epoch conversion ─────────────────────────────────────────────────────────

def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops tzinfo; stored values are UTC
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def _read(obj, field):
    value = getattr(obj, field)
    return to_epoch_ms(value) if field in _DATETIME_FIELDS else value


def _coerce(field, value):
    return from_epoch_ms(value) if field in _DATETIME_FIELDS else value


# ── Serializers ──────────────────────────────────────────────────────────────

def serialize_folder(folder: Folder) -> dict:
    return {
        "id": folder.id,
        "name": folder.name,
        "parent_id": folder.parent_id,
        "order": folder.order,
    }


def serialize_scenario(scenario: Scenario) -> dict:
    return {
        "id": scenario.id,
        "test_case_id": scenario.test_case_id,
        "title": scenario.title,
        "gherkin": scenario.gherkin,
        "order": scenario.order,
        "created_at": to_epoch_ms(scenario.created_at),
        "updated_at": to_epoch_ms(scenario.updated_at),
    }


def serialize_test_case(case: TestCase, with_scenarios: bool = True) -> dict:
    snap = {
        "id": case.id,
        "legacy_id": case.legacy_id,
        "title": case.title,
        "folder_id": case.folder_id,
        "order": case.order,
        "template": case.template,
        "state": case.state,
        "priority": case.priority,
        "created_at": to_epoch_ms(case.created_at),
        "updated_at": to_epoch_ms(case.updated_at),
        "created_by": case.created_by,
        "updated_by": case.updated_by,
    }
    if with_scenarios:
        scenarios = (
            Scenario.query.filter_by(test_case_id=case.id)
            .order_by(Scenario.order, Scenario.id)
            .all()
        )
        snap["scenarios"] = [serialize_scenario(s) for s in scenarios]
    return snap


def serialize_test_result(result: TestRunResult) -> dict:
    return {
        "id": result.id,
        "test_run_id": result.test_run_id,
        "scenario_id": result.scenario_id,
        "status": result.status,
        "notes": result.notes,
        "executed_at": to_epoch_ms(result.executed_at),
        "executed_by": result.executed_by,
    }


def serialize_test_run(run: TestRun) -> dict:
    results = TestRunResult.query.filter_by(test_run_id=run.id).order_by(TestRunResult.id).all()
    return {
        "id": run.id,
        "name": run.name,
        "description": run.description,
        "status": run.status,
        "linear_issue_id": run.linear_issue_id,
        "linear_issue_identifier": run.linear_issue_identifier,
        "linear_issue_title": run.linear_issue_title,
        "linear_project_id": run.linear_project_id,
        "linear_milestone_id": run.linear_milestone_id,
        "created_at": to_epoch_ms(run.created_at),
        "created_by": run.created_by,
        "results": [serialize_test_result(r) for r in results],
    }


_SERIALIZERS = {
    "folder": serialize_folder,
    "test_case": serialize_test_case,
    "scenario": serialize_scenario,
    "test_run": serialize_test_run,
    "test_result": serialize_test_result,
}


def _model_for(entity_type: str):
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None


def find(entity_type: str, entity_id: int, organization_id: str):
    """Return the scoped row or None."""
    return get_scoped_or_none(_model_for(entity_type), entity_id, organization_id=organization_id)


# ═════════════════════════════════════════════════════════════════════════════
# Capture / restore
# ═════════════════════════════════════════════════════════════════════════════

def capture(entity_type: str, entity_id: int | None, organization_id: str) -> dict | None:
    """Snapshot one entity, or None when it is absent from the organization."""
    if entity_id is None:
        return None
    obj = find(entity_type, entity_id, organization_id)
    if obj is None:
        return None
    return _SERIALIZERS[entity_type](obj)


def restore(entity_type: str, entity_id: int, snapshot: dict, organization_id: str) -> None:
    """Write a snapshot's mutable fields back onto the existing row.

    Nested collections (scenarios, results) are not touched.

    Raises:
        NotFoundError: the row no longer exists in the organization.
    """
    obj = find(entity_type, entity_id, organization_id)
    if obj is None:
        raise NotFoundError(resource=_model_for(entity_type).__name__, resource_id=entity_id)
    for field in MUTABLE_FIELDS[entity_type]:
        if field in snapshot:
            setattr(obj, field, _coerce(field, snapshot[field]))
    if entity_type in _TOUCHES_UPDATED_AT:
        obj.updated_at = datetime.now(UTC)
    db.session.flush()


def swap_values(entity_type: str, entity_id: int, values: dict, organization_id: str) -> dict:
    """Write ``values`` onto a row and return the values they replaced.

    Only mutable fields are swapped; anything else in ``values`` is ignored.

    Raises:
        NotFoundError: the row no longer exists in the organization.
    """
    obj = find(entity_type, entity_id, organization_id)
    if obj is None:
        raise NotFoundError(resource=_model_for(entity_type).__name__, resource_id=entity_id)
    allowed = MUTABLE_FIELDS[entity_type]
    ignored = [k for k in values if k not in allowed]
    if ignored:
        logger.warning("swap_values(%s %s): ignoring fields %s", entity_type, entity_id, ignored)
    current = {}
    for field, value in values.items():
        if field not in allowed:
            continue
        current[field] = _read(obj, field)
        setattr(obj, field, _coerce(field, value))
    db.session.flush()
    return current


# ═════════════════════════════════════════════════════════════════════════════
# Remove / recreate
# ═════════════════════════════════════════════════════════════════════════════

def remove(entity_type: str, entity_id: int, organization_id: str) -> dict | None:
    """Delete an entity (and what it owns) and return its snapshot.

    Returns None, deleting nothing, when the entity is absent.
    """
    snapshot = capture(entity_type, entity_id, organization_id)
    if snapshot is None:
        return None

    if entity_type == "test_case":
        Scenario.query.filter_by(test_case_id=entity_id).delete()
        TestCase.query.filter_by(id=entity_id, organization_id=organization_id).delete()
    elif entity_type == "scenario":
        Scenario.query.filter_by(id=entity_id).delete()
    elif entity_type == "folder":
        Folder.query.filter_by(parent_id=entity_id, organization_id=organization_id).update(
            {"parent_id": None}
        )
        TestCase.query.filter_by(folder_id=entity_id, organization_id=organization_id).update(
            {"folder_id": None}
        )
        Folder.query.filter_by(id=entity_id, organization_id=organization_id).delete()
    elif entity_type == "test_run":
        TestRunResult.query.filter_by(test_run_id=entity_id).delete()
        TestRun.query.filter_by(id=entity_id, organization_id=organization_id).delete()
    elif entity_type == "test_result":
        TestRunResult.query.filter_by(id=entity_id).delete()

    db.session.flush()
    logger.debug("Removed %s %s (org=%s)", entity_type, entity_id, organization_id)
    return snapshot


def _ensure_id_free(model, pk):
    if db.session.get(model, pk) is not None:
        raise ConflictError(model.__name__, "id", pk)


def _existing_folder_id(folder_id, organization_id):
    """Keep a folder reference only if the folder is still there."""
    if folder_id is None:
        return None
    if get_scoped_or_none(Folder, folder_id, organization_id=organization_id) is None:
        logger.warning("Folder %s no longer exists; recreating at root", folder_id)
        return None
    return folder_id


def _insert_scenario(snap: dict, test_case_id: int) -> Scenario:
    _ensure_id_free(Scenario, snap["id"])
    scenario = Scenario(
        id=snap["id"],
        test_case_id=test_case_id,
        title=snap["title"],
        gherkin=snap.get("gherkin") or "",
        order=snap.get("order", 0),
        created_at=from_epoch_ms(snap.get("created_at")),
        updated_at=from_epoch_ms(snap.get("updated_at")),
    )
    db.session.add(scenario)
    return scenario


def recreate(entity_type: str, snapshot: dict, organization_id: str) -> int:
    """Insert an entity from its snapshot at its original primary key.

    Test cases are recreated together with their embedded scenarios.

    Raises:
        ConflictError: a row with the original id already exists.
        NotFoundError: a scenario's owning test case is gone.
        ValueError: the entity type cannot be recreated.
    """
    if entity_type == "folder":
        _ensure_id_free(Folder, snapshot["id"])
        db.session.add(Folder(
            id=snapshot["id"],
            organization_id=organization_id,
            name=snapshot["name"],
            parent_id=_existing_folder_id(snapshot.get("parent_id"), organization_id),
            order=snapshot.get("order", 0),
        ))
        models = (Folder,)
    elif entity_type == "test_case":
        _ensure_id_free(TestCase, snapshot["id"])
        db.session.add(TestCase(
            id=snapshot["id"],
            organization_id=organization_id,
            legacy_id=snapshot.get("legacy_id"),
            title=snapshot["title"],
            folder_id=_existing_folder_id(snapshot.get("folder_id"), organization_id),
            order=snapshot.get("order", 0),
            template=snapshot.get("template") or "bdd_feature",
            state=snapshot.get("state") or "active",
            priority=snapshot.get("priority") or "normal",
            created_at=from_epoch_ms(snapshot.get("created_at")),
            updated_at=from_epoch_ms(snapshot.get("updated_at")),
            created_by=snapshot.get("created_by"),
            updated_by=snapshot.get("updated_by"),
        ))
        db.session.flush()
        for scenario in snapshot.get("scenarios") or []:
            _insert_scenario(scenario, snapshot["id"])
        models = (TestCase, Scenario)
    elif entity_type == "scenario":
        parent_id = snapshot["test_case_id"]
        if get_scoped_or_none(TestCase, parent_id, organization_id=organization_id) is None:
            raise NotFoundError(resource="TestCase", resource_id=parent_id)
        _insert_scenario(snapshot, parent_id)
        models = (Scenario,)
    else:
        raise ValueError(f"Cannot recreate entity type: {entity_type}")

    db.session.flush()
    for model in models:
        _sync_sequence(model)
    logger.debug("Recreated %s %s (org=%s)", entity_type, snapshot["id"], organization_id)
    return snapshot["id"]


def _sync_sequence(model) -> None:
    """Advance a PostgreSQL id sequence past explicitly inserted ids."""
    if db.session.get_bind().dialect.name != "postgresql":
        return
    table = model.__tablename__
    db.session.execute(
        sa.text(
            f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), "
            f"(SELECT COALESCE(MAX(id), 1) FROM {table}))"
        )
    )
