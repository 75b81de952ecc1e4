"""
casetrack
History models: Sprint H-1.

Models:
    - UndoStackEntry: per-organization undo/redo ledger for UI actions.
      One table holds both stacks; ``is_redo`` selects the stack and the
      newest row (created_at, then id) is the top.
    - McpWriteLog: append-only audit trail of protocol tool writes, each
      undoable at most once.
"""

import json

from casetrack.models import db
from casetrack.models.base import TenantModel, utcnow


def _iso(value):
    return value.isoformat() if value else None


def _dump(value):
    return json.dumps(value, default=str) if value is not None else None


def _load(raw):
    return json.loads(raw) if raw else None


class UndoStackEntry(TenantModel):
    __tablename__ = "undo_stack"
    __table_args__ = (
        TenantModel.org_composite_index("undo_stack", "is_redo", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    action_type = db.Column(db.String(40), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    undo_data = db.Column(db.Text, nullable=False, comment="JSON payload tagged by kind")
    is_redo = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def payload(self) -> dict:
        return _load(self.undo_data) or {}

    def to_summary(self):
        return {
            "id": self.id,
            "description": self.description,
            "action_type": self.action_type,
            "created_at": _iso(self.created_at),
        }

    def to_dict(self):
        d = self.to_summary()
        d["is_redo"] = self.is_redo
        d["undo_data"] = self.payload
        return d


class McpWriteLog(TenantModel):
    __tablename__ = "mcp_write_log"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.String(64), db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    client_id = db.Column(db.String(200), nullable=False)
    session_id = db.Column(db.String(200))
    tool_name = db.Column(db.String(100), nullable=False)
    tool_args = db.Column(db.Text, nullable=False, default="{}")
    entity_type = db.Column(db.String(30), nullable=False,
                            comment="folder | test_case | scenario | test_run | test_result")
    entity_id = db.Column(db.Integer)
    before_state = db.Column(db.Text)
    after_state = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, comment="success | failed")
    error_message = db.Column(db.Text)
    undone_at = db.Column(db.DateTime(timezone=True))
    undone_by = db.Column(db.String(64), db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    # ── JSON accessors ───────────────────────────────────────────────────

    @property
    def args(self) -> dict:
        return _load(self.tool_args) or {}

    @args.setter
    def args(self, value):
        self.tool_args = _dump(value or {})

    @property
    def before(self):
        return _load(self.before_state)

    @before.setter
    def before(self, value):
        self.before_state = _dump(value)

    @property
    def after(self):
        return _load(self.after_state)

    @after.setter
    def after(self, value):
        self.after_state = _dump(value)

    def to_dict(self, user=None):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "client_id": self.client_id,
            "session_id": self.session_id,
            "tool_name": self.tool_name,
            "tool_args": self.args,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before_state": self.before,
            "after_state": self.after,
            "status": self.status,
            "error_message": self.error_message,
            "undone_at": _iso(self.undone_at),
            "undone_by": self.undone_by,
            "created_at": _iso(self.created_at),
        }
        if user is not None:
            d["user"] = {"id": user.id, "name": user.name, "email": user.email}
        return d
