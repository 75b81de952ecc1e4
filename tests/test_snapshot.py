"""Snapshot codec: capture, restore, swap, remove, recreate."""

from datetime import UTC, datetime

import pytest

from casetrack.core.exceptions import ConflictError, NotFoundError
from casetrack.models import db
from casetrack.models.testing import Folder, Scenario, TestCase, TestRun, TestRunResult
from casetrack.services import snapshot

ORG_A, ORG_B = "org-a", "org-b"
USER_A = "user-a"


def _make_folder(name="Regression", org=ORG_A, parent_id=None):
    folder = Folder(organization_id=org, name=name, parent_id=parent_id)
    db.session.add(folder)
    db.session.flush()
    return folder


def _make_case(title="Login works", org=ORG_A, folder_id=None, scenarios=2):
    case = TestCase(organization_id=org, title=title, folder_id=folder_id, created_by=USER_A)
    db.session.add(case)
    db.session.flush()
    for i in range(scenarios):
        db.session.add(Scenario(test_case_id=case.id, title=f"Scenario {i}",
                                gherkin=f"Given step {i}", order=i))
    db.session.flush()
    return case


class TestEpochConversion:
    def test_round_trip_milliseconds(self):
        value = datetime(2026, 3, 1, 12, 30, 15, 250000, tzinfo=UTC)
        ms = snapshot.to_epoch_ms(value)
        assert isinstance(ms, int)
        assert snapshot.from_epoch_ms(ms) == value

    def test_naive_values_are_utc(self):
        naive = datetime(2026, 3, 1, 12, 0, 0)
        assert snapshot.to_epoch_ms(naive) == snapshot.to_epoch_ms(naive.replace(tzinfo=UTC))

    def test_none_passes_through(self):
        assert snapshot.to_epoch_ms(None) is None
        assert snapshot.from_epoch_ms(None) is None


class TestCapture:
    def test_test_case_embeds_ordered_scenarios(self):
        case = _make_case(scenarios=3)
        snap = snapshot.capture("test_case", case.id, ORG_A)
        assert snap["title"] == "Login works"
        assert [s["title"] for s in snap["scenarios"]] == ["Scenario 0", "Scenario 1", "Scenario 2"]
        assert isinstance(snap["created_at"], int)

    def test_test_run_embeds_results(self):
        case = _make_case(scenarios=1)
        scenario = Scenario.query.filter_by(test_case_id=case.id).one()
        run = TestRun(organization_id=ORG_A, name="Sprint 12")
        db.session.add(run)
        db.session.flush()
        db.session.add(TestRunResult(test_run_id=run.id, scenario_id=scenario.id))
        db.session.flush()
        snap = snapshot.capture("test_run", run.id, ORG_A)
        assert snap["results"][0]["scenario_id"] == scenario.id
        assert snap["results"][0]["status"] == "pending"

    def test_other_organization_is_absent(self):
        case = _make_case()
        assert snapshot.capture("test_case", case.id, ORG_B) is None

    def test_scenario_scoped_through_test_case(self):
        case = _make_case(scenarios=1)
        scenario = Scenario.query.filter_by(test_case_id=case.id).one()
        assert snapshot.capture("scenario", scenario.id, ORG_A)["title"] == "Scenario 0"
        assert snapshot.capture("scenario", scenario.id, ORG_B) is None

    def test_missing_id(self):
        assert snapshot.capture("folder", 9999, ORG_A) is None
        assert snapshot.capture("folder", None, ORG_A) is None

    def test_unknown_entity_type(self):
        with pytest.raises(ValueError):
            snapshot.capture("widget", 1, ORG_A)


class TestRestoreAndSwap:
    def test_restore_writes_mutable_fields(self):
        case = _make_case()
        before = snapshot.capture("test_case", case.id, ORG_A)
        case.title = "Changed"
        case.state = "retired"
        db.session.flush()

        snapshot.restore("test_case", case.id, before, ORG_A)
        assert case.title == "Login works"
        assert case.state == "active"
        assert Scenario.query.filter_by(test_case_id=case.id).count() == 2

    def test_restore_missing_row_raises(self):
        with pytest.raises(NotFoundError):
            snapshot.restore("test_case", 4242, {"title": "x"}, ORG_A)

    def test_swap_returns_replaced_values(self):
        folder = _make_folder("Old name")
        replaced = snapshot.swap_values("folder", folder.id, {"name": "New name"}, ORG_A)
        assert replaced == {"name": "Old name"}
        assert folder.name == "New name"

    def test_swap_ignores_immutable_fields(self):
        folder = _make_folder("Keep")
        replaced = snapshot.swap_values("folder", folder.id,
                                        {"organization_id": ORG_B, "order": 4}, ORG_A)
        assert replaced == {"order": 0}
        assert folder.organization_id == ORG_A

    def test_swap_in_other_organization_raises(self):
        folder = _make_folder()
        with pytest.raises(NotFoundError):
            snapshot.swap_values("folder", folder.id, {"name": "x"}, ORG_B)


class TestRemoveAndRecreate:
    def test_remove_test_case_takes_scenarios(self):
        case = _make_case(scenarios=2)
        case_id = case.id
        snap = snapshot.remove("test_case", case_id, ORG_A)
        assert len(snap["scenarios"]) == 2
        assert TestCase.query.filter_by(id=case_id).count() == 0
        assert Scenario.query.filter_by(test_case_id=case_id).count() == 0

    def test_remove_absent_returns_none(self):
        assert snapshot.remove("test_case", 777, ORG_A) is None

    def test_remove_folder_detaches_children(self):
        parent = _make_folder("Parent")
        child = _make_folder("Child", parent_id=parent.id)
        case = _make_case(folder_id=parent.id, scenarios=0)
        child_id, case_id = child.id, case.id

        snapshot.remove("folder", parent.id, ORG_A)
        db.session.expire_all()
        assert db.session.get(Folder, child_id).parent_id is None
        assert db.session.get(TestCase, case_id).folder_id is None

    def test_recreate_restores_original_ids(self):
        case = _make_case(scenarios=2)
        snap = snapshot.remove("test_case", case.id, ORG_A)
        scenario_ids = [s["id"] for s in snap["scenarios"]]

        new_id = snapshot.recreate("test_case", snap, ORG_A)
        assert new_id == snap["id"]
        again = snapshot.capture("test_case", snap["id"], ORG_A)
        assert [s["id"] for s in again["scenarios"]] == scenario_ids
        assert again["created_at"] == snap["created_at"]

    def test_recreate_existing_id_conflicts(self):
        case = _make_case(scenarios=0)
        snap = snapshot.capture("test_case", case.id, ORG_A)
        with pytest.raises(ConflictError):
            snapshot.recreate("test_case", snap, ORG_A)

    def test_recreate_scenario_without_parent(self):
        case = _make_case(scenarios=1)
        scenario = Scenario.query.filter_by(test_case_id=case.id).one()
        snap = snapshot.capture("scenario", scenario.id, ORG_A)
        snapshot.remove("test_case", case.id, ORG_A)
        with pytest.raises(NotFoundError):
            snapshot.recreate("scenario", snap, ORG_A)

    def test_recreate_with_deleted_folder_falls_back_to_root(self):
        folder = _make_folder()
        case = _make_case(folder_id=folder.id, scenarios=0)
        snap = snapshot.remove("test_case", case.id, ORG_A)
        snapshot.remove("folder", folder.id, ORG_A)

        snapshot.recreate("test_case", snap, ORG_A)
        assert snapshot.capture("test_case", snap["id"], ORG_A)["folder_id"] is None

    def test_recreate_test_run_not_supported(self):
        with pytest.raises(ValueError):
            snapshot.recreate("test_run", {"id": 1}, ORG_A)
