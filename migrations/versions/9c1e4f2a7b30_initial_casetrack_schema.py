"""initial casetrack schema

Creates the organization, test-case, history and write-log tables:
  - organizations, users, api_tokens
  - folders, test_cases, scenarios, test_runs, test_run_results
  - test_case_audit_log
  - undo_stack     per-organization undo/redo entries
  - mcp_write_log  append-only protocol write log

Tables created conditionally (IF NOT EXISTS semantics) so the revision can
run against databases that already received them via db.create_all().

Revision ID: 9c1e4f2a7b30
Revises:
Create Date: 2026-10-19 09:12:40.318207
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '9c1e4f2a7b30'
down_revision = None
branch_labels = None
depends_on = None

TS = sa.DateTime(timezone=True)


def _org_column():
    return sa.Column("organization_id", sa.String(length=64), nullable=False)


def _org_fk():
    return sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE")


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Organizations & users ─────────────────────────────────────────────
    if "organizations" not in existing:
        op.create_table(
            "organizations",
            sa.Column("id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("created_at", TS, nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=64), nullable=False),
            _org_column(),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=True),
            sa.Column("created_at", TS, nullable=True),
            _org_fk(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "email", name="uq_user_org_email"),
        )
        op.create_index("ix_users_organization_id", "users", ["organization_id"])

    if "api_tokens" not in existing:
        op.create_table(
            "api_tokens",
            sa.Column("id", sa.String(length=40), nullable=False),
            _org_column(),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("secret_hash", sa.String(length=64), nullable=False),
            sa.Column("permissions", sa.String(length=20), nullable=False,
                      server_default="read", comment="read | write | admin"),
            sa.Column("last_used_at", TS, nullable=True),
            sa.Column("expires_at", TS, nullable=True),
            sa.Column("revoked_at", TS, nullable=True),
            sa.Column("created_at", TS, nullable=True),
            _org_fk(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_api_tokens_organization_id", "api_tokens", ["organization_id"])

    # ── Test library ──────────────────────────────────────────────────────
    if "folders" not in existing:
        op.create_table(
            "folders",
            sa.Column("id", sa.Integer(), nullable=False),
            _org_column(),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("parent_id", sa.Integer(), nullable=True),
            sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", TS, nullable=True),
            _org_fk(),
            sa.ForeignKeyConstraint(["parent_id"], ["folders.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sqlite_autoincrement=True,
        )
        op.create_index("ix_folders_organization_id", "folders", ["organization_id"])
        op.create_index("ix_folders_parent_id", "folders", ["parent_id"])

    if "test_cases" not in existing:
        op.create_table(
            "test_cases",
            sa.Column("id", sa.Integer(), nullable=False),
            _org_column(),
            sa.Column("legacy_id", sa.String(length=50), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("folder_id", sa.Integer(), nullable=True),
            sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("template", sa.String(length=20), nullable=False,
                      server_default="bdd_feature"),
            sa.Column("state", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="normal"),
            sa.Column("created_at", TS, nullable=True),
            sa.Column("updated_at", TS, nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("updated_by", sa.String(length=64), nullable=True),
            _org_fk(),
            sa.ForeignKeyConstraint(["folder_id"], ["folders.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["updated_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sqlite_autoincrement=True,
        )
        op.create_index("ix_test_cases_organization_id", "test_cases", ["organization_id"])
        op.create_index("ix_test_cases_folder_id", "test_cases", ["folder_id"])

    if "scenarios" not in existing:
        op.create_table(
            "scenarios",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("test_case_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("gherkin", sa.Text(), nullable=False, server_default=""),
            sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", TS, nullable=True),
            sa.Column("updated_at", TS, nullable=True),
            sa.ForeignKeyConstraint(["test_case_id"], ["test_cases.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sqlite_autoincrement=True,
        )
        op.create_index("ix_scenarios_test_case_id", "scenarios", ["test_case_id"])

    if "test_runs" not in existing:
        op.create_table(
            "test_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            _org_column(),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      server_default="in_progress"),
            sa.Column("linear_issue_id", sa.String(length=100), nullable=True),
            sa.Column("linear_issue_identifier", sa.String(length=50), nullable=True,
                      comment="e.g. ENG-123"),
            sa.Column("linear_issue_title", sa.String(length=500), nullable=True),
            sa.Column("linear_project_id", sa.String(length=100), nullable=True),
            sa.Column("linear_milestone_id", sa.String(length=100), nullable=True),
            sa.Column("created_at", TS, nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            _org_fk(),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_runs_organization_id", "test_runs", ["organization_id"])

    if "test_run_results" not in existing:
        op.create_table(
            "test_run_results",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("test_run_id", sa.Integer(), nullable=False),
            sa.Column("scenario_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("executed_at", TS, nullable=True),
            sa.Column("executed_by", sa.String(length=64), nullable=True),
            sa.ForeignKeyConstraint(["test_run_id"], ["test_runs.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["executed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_run_results_test_run_id", "test_run_results", ["test_run_id"])
        op.create_index("ix_test_run_results_scenario_id", "test_run_results", ["scenario_id"])

    if "test_case_audit_log" not in existing:
        op.create_table(
            "test_case_audit_log",
            sa.Column("id", sa.Integer(), nullable=False),
            _org_column(),
            sa.Column("test_case_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("action", sa.String(length=20), nullable=False,
                      comment="created | updated | deleted"),
            sa.Column("changes_json", sa.Text(), nullable=True),
            sa.Column("previous_values_json", sa.Text(), nullable=True),
            sa.Column("new_values_json", sa.Text(), nullable=True),
            sa.Column("created_at", TS, nullable=True),
            _org_fk(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_test_case_audit_log_organization_id", "test_case_audit_log",
                        ["organization_id"])
        op.create_index("ix_test_case_audit_log_test_case_id", "test_case_audit_log",
                        ["test_case_id"])
        op.create_index("ix_test_case_audit_log_created_at", "test_case_audit_log",
                        ["created_at"])

    # ── History ───────────────────────────────────────────────────────────
    if "undo_stack" not in existing:
        op.create_table(
            "undo_stack",
            sa.Column("id", sa.Integer(), nullable=False),
            _org_column(),
            sa.Column("action_type", sa.String(length=40), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=False),
            sa.Column("undo_data", sa.Text(), nullable=False,
                      comment="JSON payload tagged by kind"),
            sa.Column("is_redo", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", TS, nullable=False),
            _org_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_undo_stack_organization_id", "undo_stack", ["organization_id"])
        op.create_index("ix_undo_stack_org_is_redo_created_at", "undo_stack",
                        ["organization_id", "is_redo", "created_at"])

    if "mcp_write_log" not in existing:
        op.create_table(
            "mcp_write_log",
            sa.Column("id", sa.Integer(), nullable=False),
            _org_column(),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("client_id", sa.String(length=200), nullable=False),
            sa.Column("session_id", sa.String(length=200), nullable=True),
            sa.Column("tool_name", sa.String(length=100), nullable=False),
            sa.Column("tool_args", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("before_state", sa.Text(), nullable=True),
            sa.Column("after_state", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      comment="success | failed"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("undone_at", TS, nullable=True),
            sa.Column("undone_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", TS, nullable=False),
            _org_fk(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["undone_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_mcp_write_log_organization_id", "mcp_write_log", ["organization_id"])
        op.create_index("ix_mcp_write_log_user_id", "mcp_write_log", ["user_id"])
        op.create_index("ix_mcp_write_log_created_at", "mcp_write_log", ["created_at"])


def downgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())
    for table in (
        "mcp_write_log",
        "undo_stack",
        "test_case_audit_log",
        "test_run_results",
        "test_runs",
        "scenarios",
        "test_cases",
        "folders",
        "api_tokens",
        "users",
        "organizations",
    ):
        if table in existing:
            op.drop_table(table)
