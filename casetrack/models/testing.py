"""
casetrack
Test management domain models.

Models:
    - Folder:            self-referential tree that groups test cases
    - TestCase:          a test case with ordered Gherkin scenarios
    - Scenario:          one Gherkin scenario owned by a test case
    - TestRun:           an execution run over a selection of scenarios
    - TestRunResult:     one result row per scenario selected for a run
    - TestCaseAuditLog:  human-readable changelog of test case edits

Architecture ref:
    Folder ──1:N──▶ Folder
    Folder ──1:N──▶ TestCase ──1:N──▶ Scenario
    TestRun ──1:N──▶ TestRunResult ──N:1──▶ Scenario (soft reference)
"""

import json

from casetrack.models import db
from casetrack.models.base import TenantModel, utcnow

# ── Constants ────────────────────────────────────────────────────────────────

TEST_CASE_TEMPLATES = ("bdd_feature", "steps", "text")
TEST_CASE_STATES = ("active", "draft", "upcoming", "retired", "rejected")
TEST_CASE_PRIORITIES = ("normal", "high", "critical")
TEST_RUN_STATUSES = ("in_progress", "completed")
TEST_RESULT_STATUSES = ("pending", "passed", "failed", "blocked", "skipped")


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# FOLDERS
# ═════════════════════════════════════════════════════════════════════════════
class Folder(TenantModel):
    __tablename__ = "folders"
    # Ids of deleted rows are never reused
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    parent_id = db.Column(
        db.Integer, db.ForeignKey("folders.id", ondelete="SET NULL"),
        nullable=True, index=True, comment="Parent folder; NULL for root folders",
    )
    order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "order": self.order,
            "organization_id": self.organization_id,
        }


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES & SCENARIOS
# ═════════════════════════════════════════════════════════════════════════════
class TestCase(TenantModel):
    __tablename__ = "test_cases"
    __table_args__ = {"sqlite_autoincrement": True}
    __test__ = False  # not a pytest class

    id = db.Column(db.Integer, primary_key=True)
    legacy_id = db.Column(db.String(50), comment="Identifier carried over from an import")
    title = db.Column(db.String(300), nullable=False)
    folder_id = db.Column(
        db.Integer, db.ForeignKey("folders.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    order = db.Column(db.Integer, nullable=False, default=0)
    template = db.Column(db.String(20), nullable=False, default="bdd_feature",
                         comment="bdd_feature | steps | text")
    state = db.Column(db.String(20), nullable=False, default="active",
                      comment="active | draft | upcoming | retired | rejected")
    priority = db.Column(db.String(20), nullable=False, default="normal",
                         comment="normal | high | critical")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    created_by = db.Column(db.String(64), db.ForeignKey("users.id", ondelete="SET NULL"))
    updated_by = db.Column(db.String(64), db.ForeignKey("users.id", ondelete="SET NULL"))

    def to_dict(self, include_scenarios=False):
        d = {
            "id": self.id,
            "legacy_id": self.legacy_id,
            "title": self.title,
            "folder_id": self.folder_id,
            "order": self.order,
            "template": self.template,
            "state": self.state,
            "priority": self.priority,
            "organization_id": self.organization_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
            "updated_by": self.updated_by,
        }
        if include_scenarios:
            scenarios = (
                Scenario.query.filter_by(test_case_id=self.id)
                .order_by(Scenario.order, Scenario.id)
                .all()
            )
            d["scenarios"] = [s.to_dict() for s in scenarios]
        return d


class Scenario(db.Model):
    """Gherkin scenario; tenant scope comes from the owning test case."""

    __tablename__ = "scenarios"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    gherkin = db.Column(db.Text, nullable=False, default="")
    order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "test_case_id": self.test_case_id,
            "title": self.title,
            "gherkin": self.gherkin,
            "order": self.order,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# TEST RUNS
# ═════════════════════════════════════════════════════════════════════════════
class TestRun(TenantModel):
    __tablename__ = "test_runs"
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default="in_progress",
                       comment="in_progress | completed")
    linear_issue_id = db.Column(db.String(100))
    linear_issue_identifier = db.Column(db.String(50), comment="e.g. ENG-123")
    linear_issue_title = db.Column(db.String(500))
    linear_project_id = db.Column(db.String(100))
    linear_milestone_id = db.Column(db.String(100))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    created_by = db.Column(db.String(64), db.ForeignKey("users.id", ondelete="SET NULL"))

    def to_dict(self, include_results=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "linear_issue_id": self.linear_issue_id,
            "linear_issue_identifier": self.linear_issue_identifier,
            "linear_issue_title": self.linear_issue_title,
            "linear_project_id": self.linear_project_id,
            "linear_milestone_id": self.linear_milestone_id,
            "organization_id": self.organization_id,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
        }
        if include_results:
            results = TestRunResult.query.filter_by(test_run_id=self.id).order_by(TestRunResult.id).all()
            d["results"] = [r.to_dict() for r in results]
        return d


class TestRunResult(db.Model):
    __tablename__ = "test_run_results"
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    test_run_id = db.Column(
        db.Integer, db.ForeignKey("test_runs.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    # Soft reference: survives a scenario being deleted and recreated at its old id.
    scenario_id = db.Column(db.Integer, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending | passed | failed | blocked | skipped")
    notes = db.Column(db.Text)
    executed_at = db.Column(db.DateTime(timezone=True))
    executed_by = db.Column(db.String(64), db.ForeignKey("users.id", ondelete="SET NULL"))

    def to_dict(self):
        return {
            "id": self.id,
            "test_run_id": self.test_run_id,
            "scenario_id": self.scenario_id,
            "status": self.status,
            "notes": self.notes,
            "executed_at": _iso(self.executed_at),
            "executed_by": self.executed_by,
        }


# ═════════════════════════════════════════════════════════════════════════════
# CHANGELOG
# ═════════════════════════════════════════════════════════════════════════════
class TestCaseAuditLog(TenantModel):
    """
    Field-level changelog for test cases.

    Rows outlive the test case they describe, so ``test_case_id`` is a plain
    indexed column rather than a foreign key.
    """

    __tablename__ = "test_case_audit_log"
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    test_case_id = db.Column(db.Integer, nullable=False, index=True)
    user_id = db.Column(db.String(64), db.ForeignKey("users.id", ondelete="SET NULL"))
    action = db.Column(db.String(20), nullable=False, comment="created | updated | deleted")
    changes_json = db.Column(db.Text, comment="[{field, old_value, new_value}]")
    previous_values_json = db.Column(db.Text)
    new_values_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, index=True)

    @staticmethod
    def _load(raw):
        return json.loads(raw) if raw else None

    @property
    def changes(self):
        return self._load(self.changes_json) or []

    def to_dict(self):
        return {
            "id": self.id,
            "test_case_id": self.test_case_id,
            "user_id": self.user_id,
            "action": self.action,
            "changes": self.changes,
            "previous_values": self._load(self.previous_values_json),
            "new_values": self._load(self.new_values_json),
            "created_at": _iso(self.created_at),
        }
