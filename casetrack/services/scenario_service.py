"""
Scenario service: Gherkin scenarios of a test case.

New scenarios append after the highest existing order. Updates are diff
gated like test case updates.

Transaction policy: functions flush, the blueprint commits.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import func

from casetrack.core.exceptions import ValidationError
from casetrack.models import db
from casetrack.models.testing import Scenario, TestCase
from casetrack.services import snapshot, undo_service
from casetrack.services.diff import compute_diff
from casetrack.services.helpers.scoped_queries import get_scoped
from casetrack.services.undo_payloads import (
    ActionType,
    EntityRefs,
    FieldUpdate,
    FieldValues,
    Snapshots,
)

logger = logging.getLogger(__name__)

SCENARIO_FIELDS = ("title", "gherkin", "order")


def _validated(data: dict) -> dict:
    values = {k: data[k] for k in SCENARIO_FIELDS if k in data}
    if "title" in values:
        values["title"] = (values["title"] or "").strip()
        if not values["title"]:
            raise ValidationError("title is required", details={"title": "required"})
    if "gherkin" in values and values["gherkin"] is None:
        values["gherkin"] = ""
    if "order" in values:
        try:
            values["order"] = int(values["order"])
        except (TypeError, ValueError):
            raise ValidationError("order must be an integer") from None
    return values


def list_scenarios(organization_id: str, test_case_id: int) -> list[dict]:
    get_scoped(TestCase, test_case_id, organization_id=organization_id)
    rows = (
        Scenario.query.filter_by(test_case_id=test_case_id)
        .order_by(Scenario.order, Scenario.id)
        .all()
    )
    return [s.to_dict() for s in rows]


def create_scenario(organization_id: str, test_case_id: int, data: dict) -> Scenario:
    get_scoped(TestCase, test_case_id, organization_id=organization_id)
    values = _validated(data)
    if "title" not in values:
        raise ValidationError("title is required", details={"title": "required"})

    current_max = (
        db.session.query(func.max(Scenario.order))
        .filter(Scenario.test_case_id == test_case_id)
        .scalar()
    )
    values["order"] = (current_max if current_max is not None else -1) + 1
    scenario = Scenario(test_case_id=test_case_id, **values)
    db.session.add(scenario)
    db.session.flush()

    undo_service.record_action(
        organization_id, ActionType.CREATE_SCENARIO,
        f'Create scenario "{scenario.title}"', EntityRefs([scenario.id]),
    )
    return scenario


def update_scenario(organization_id: str, scenario_id: int,
                    data: dict) -> tuple[Scenario, list[dict]]:
    scenario = get_scoped(Scenario, scenario_id, organization_id=organization_id)
    values = _validated(data)
    changes = compute_diff({k: getattr(scenario, k) for k in values}, values)
    if not changes:
        return scenario, []

    previous = {k: getattr(scenario, k) for k in SCENARIO_FIELDS}
    for key, value in values.items():
        setattr(scenario, key, value)
    scenario.updated_at = datetime.now(UTC)
    db.session.flush()

    undo_service.record_action(
        organization_id, ActionType.UPDATE_SCENARIO,
        f'Update scenario "{previous["title"]}"', FieldValues.single(scenario.id, previous),
    )
    return scenario, changes


def save_scenario(organization_id: str, data: dict):
    """Create when ``data`` has no id, otherwise update.

    Returns ``(scenario, changes)``; ``changes`` is None for a create.
    """
    if data.get("id"):
        return update_scenario(organization_id, int(data["id"]), data)
    test_case_id = data.get("test_case_id")
    if not test_case_id:
        raise ValidationError("test_case_id is required", details={"test_case_id": "required"})
    return create_scenario(organization_id, int(test_case_id), data), None


def delete_scenario(organization_id: str, scenario_id: int) -> dict:
    get_scoped(Scenario, scenario_id, organization_id=organization_id)
    removed = snapshot.remove("scenario", scenario_id, organization_id)
    undo_service.record_action(
        organization_id, ActionType.DELETE_SCENARIO,
        f'Delete scenario "{removed["title"]}"', Snapshots([removed]),
    )
    return removed


def reorder_scenarios(organization_id: str, test_case_id: int, ordered_ids: list[int]) -> int:
    """Set each scenario's ``order`` to its position in ``ordered_ids``.

    A repeated id keeps its first position.
    """
    ordered_ids = list(dict.fromkeys(ordered_ids))
    get_scoped(TestCase, test_case_id, organization_id=organization_id)
    rows = {
        s.id: s for s in
        Scenario.query.filter(Scenario.test_case_id == test_case_id,
                              Scenario.id.in_(ordered_ids)).all()
    }
    updates = []
    for position, scenario_id in enumerate(ordered_ids):
        scenario = rows.get(scenario_id)
        if scenario is None or scenario.order == position:
            continue
        updates.append(FieldUpdate(scenario.id, {"order": scenario.order}))
        scenario.order = position
    if not updates:
        return 0
    db.session.flush()
    undo_service.record_action(organization_id, ActionType.REORDER_SCENARIOS,
                               "Reorder scenarios", FieldValues(updates))
    return len(updates)
