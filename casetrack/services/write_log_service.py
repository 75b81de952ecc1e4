"""
MCP write-log service.

Append-only audit trail of protocol tool writes. Every tool invocation,
successful or not, appends one ``McpWriteLog`` row. A successful entry
can be undone once, dispatched purely on the tool-name prefix:

    create_*   delete the entity named by entity_id
    update_*   restore before_state onto the entity
    anything else   NotUndoable

There is no redo. Failed and already-undone entries are rejected with
InvalidState, and a store failure while reversing leaves ``undone_at``
unset so the same call can be retried.

Transaction policy:
    log_write() flushes only; the tool dispatcher commits.
    undo_write() owns its commit and never raises.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from flask import current_app

from casetrack.core.exceptions import (
    HistoryError,
    InvalidStateError,
    MissingEntityReferenceError,
    NotFoundError,
    NotUndoableError,
    UndoFailedError,
)
from casetrack.core.results import HistoryResult
from casetrack.models import db
from casetrack.models.auth import User
from casetrack.models.history import McpWriteLog
from casetrack.services import snapshot

logger = logging.getLogger(__name__)

WRITE_STATUSES = ("success", "failed")


@dataclass
class WriteRecord:
    """One tool invocation to append to the write log."""

    tool_name: str
    entity_type: str
    status: str
    tool_args: dict = field(default_factory=dict)
    entity_id: int | None = None
    before_state: dict | None = None
    after_state: dict | None = None
    error_message: str | None = None


def log_write(auth, record: WriteRecord) -> int:
    """Append a write-log row for ``auth``'s organization and return its id."""
    if record.status not in WRITE_STATUSES:
        raise ValueError(f"Invalid write status: {record.status}")
    if record.entity_type not in snapshot.ENTITY_TYPES:
        raise ValueError(f"Invalid entity type: {record.entity_type}")

    entry = McpWriteLog(
        organization_id=auth.organization_id,
        user_id=auth.user_id,
        client_id=auth.client_id or "unknown",
        session_id=auth.session_id,
        tool_name=record.tool_name,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        status=record.status,
        error_message=record.error_message,
    )
    entry.args = record.tool_args
    entry.before = record.before_state
    entry.after = record.after_state
    db.session.add(entry)
    db.session.flush()
    logger.info(
        "Write log %s: %s %s/%s (%s)",
        entry.id, record.tool_name, record.entity_type, record.entity_id, record.status,
        extra={
            "organization_id": auth.organization_id,
            "user_id": auth.user_id,
            "tool_name": record.tool_name,
        },
    )
    return entry.id


def get_entity_state(entity_type: str, entity_id: int | None, organization_id: str) -> dict | None:
    """Snapshot an entity for before/after state, or None when absent."""
    return snapshot.capture(entity_type, entity_id, organization_id)


# ═════════════════════════════════════════════════════════════════════════════
# Undo
# ═════════════════════════════════════════════════════════════════════════════

def _reverse(entry: McpWriteLog, organization_id: str) -> None:
    if entry.tool_name.startswith("create_"):
        if entry.entity_id is None:
            raise MissingEntityReferenceError("Cannot undo: no entity ID recorded")
        removed = snapshot.remove(entry.entity_type, entry.entity_id, organization_id)
        if removed is None:
            logger.warning(
                "Write log %s: %s %s already gone",
                entry.id, entry.entity_type, entry.entity_id,
            )
        return

    if entry.tool_name.startswith("update_"):
        before = entry.before
        if before is None or entry.entity_id is None:
            raise MissingEntityReferenceError("Cannot undo: no previous state recorded")
        snapshot.restore(entry.entity_type, entry.entity_id, before, organization_id)
        return

    raise NotUndoableError(f"Cannot undo operation: {entry.tool_name}")


def undo_write(log_id: int, undone_by: str, organization_id: str) -> HistoryResult:
    """Reverse one successful write-log entry, at most once."""
    log_extra = {"organization_id": organization_id, "user_id": undone_by}
    try:
        entry = (
            McpWriteLog.query_for_org(organization_id)
            .filter_by(id=log_id)
            .with_for_update()
            .first()
        )
        if entry is None:
            raise NotFoundError(resource="McpWriteLog", resource_id=log_id)
        if entry.status != "success":
            raise InvalidStateError("Cannot undo a failed operation")
        if entry.undone_at is not None:
            raise InvalidStateError("Operation already undone")

        _reverse(entry, organization_id)

        entry.undone_at = datetime.now(UTC)
        entry.undone_by = undone_by
        db.session.commit()
    except (HistoryError, NotFoundError) as exc:
        db.session.rollback()
        logger.warning("undo_write(%s) rejected: %s", log_id, exc, extra=log_extra)
        return HistoryResult.from_error(exc)
    except Exception:
        db.session.rollback()
        logger.exception("undo_write(%s) failed with a store error", log_id, extra=log_extra)
        return HistoryResult.from_error(UndoFailedError())

    logger.info("Undid write log %s (%s)", log_id, entry.tool_name, extra=log_extra)
    return HistoryResult.ok(
        f"Undid {entry.tool_name}", log_id=log_id, entity_type=entry.entity_type,
        entity_id=entry.entity_id,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Listing
# ═════════════════════════════════════════════════════════════════════════════

def list_writes(
    organization_id: str,
    *,
    limit: int | None = None,
    offset: int = 0,
    user_id: str | None = None,
    tool_name: str | None = None,
    entity_type: str | None = None,
    include_undone: bool = True,
) -> dict:
    """Newest-first page of write-log entries with their users.

    Filters are applied in the query, before pagination.
    """
    page_size = current_app.config.get("WRITE_LOG_PAGE_SIZE", 50)
    max_size = current_app.config.get("WRITE_LOG_MAX_PAGE_SIZE", 200)
    limit = min(max(int(limit or page_size), 1), max_size)
    offset = max(int(offset or 0), 0)

    query = McpWriteLog.query_for_org(organization_id)
    if user_id:
        query = query.filter(McpWriteLog.user_id == user_id)
    if tool_name:
        query = query.filter(McpWriteLog.tool_name == tool_name)
    if entity_type:
        query = query.filter(McpWriteLog.entity_type == entity_type)
    if not include_undone:
        query = query.filter(McpWriteLog.undone_at.is_(None))

    total = query.count()
    rows = (
        query.outerjoin(User, User.id == McpWriteLog.user_id)
        .add_entity(User)
        .order_by(McpWriteLog.created_at.desc(), McpWriteLog.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return {
        "logs": [log.to_dict(user=user) for log, user in rows],
        "total": total,
        "has_more": offset + len(rows) < total,
    }
