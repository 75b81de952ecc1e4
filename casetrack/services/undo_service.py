"""
Undo/redo stack service.

Per-organization, bounded, two-stack history of UI actions. Both stacks
live in the ``undo_stack`` table; ``UndoStackRepository`` keeps the
``is_redo`` flag away from call sites.

    record(...)   clear redo → trim undo to limit-1 → push undo
    undo()        pop undo → apply inverse → push complement on redo
    redo()        pop redo → apply inverse → push complement on undo

Inverses reduce to three primitives from the snapshot codec: remove,
recreate and swap. Each undo/redo runs as one transaction: the pop, the
entity mutations and the complementary push commit together or roll back
together, leaving the popped entry in place.

Transaction policy:
    record_action() flushes only; the mutating caller commits.
    undo(), redo() and clear_history() own their commit and never raise.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum

from flask import current_app

from casetrack.core.exceptions import (
    ConflictError,
    HistoryError,
    NotFoundError,
    NothingToRedoError,
    NothingToUndoError,
    UndoFailedError,
    ValidationError,
)
from casetrack.core.results import HistoryResult
from casetrack.models import db
from casetrack.models.history import UndoStackEntry
from casetrack.services import snapshot
from casetrack.services.undo_payloads import (
    ACTION_SPECS,
    ActionSpec,
    ActionType,
    EntityRefs,
    FieldUpdate,
    FieldValues,
    Payload,
    Snapshots,
    Strategy,
    decode_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_STACK_LIMIT = 50
DEFAULT_DISPLAY_LIMIT = 10


class StackDirection(str, Enum):
    UNDO = "undo"
    REDO = "redo"

    @property
    def is_redo(self) -> bool:
        return self is StackDirection.REDO

    @property
    def opposite(self) -> "StackDirection":
        return StackDirection.UNDO if self.is_redo else StackDirection.REDO


@dataclass
class PoppedEntry:
    id: int
    action_type: str
    description: str
    data: dict


# ═════════════════════════════════════════════════════════════════════════════
# Repository
# ═════════════════════════════════════════════════════════════════════════════

class UndoStackRepository:
    """Undo and redo stacks of one organization. Top = newest row."""

    def __init__(self, organization_id: str):
        if not organization_id:
            raise ValueError("organization_id is required")
        self.organization_id = organization_id

    def _stack(self, direction: StackDirection):
        return UndoStackEntry.query_for_org(self.organization_id).filter_by(
            is_redo=direction.is_redo
        )

    def _ordered(self, direction: StackDirection):
        return self._stack(direction).order_by(
            UndoStackEntry.created_at.desc(), UndoStackEntry.id.desc()
        )

    def peek(self, direction: StackDirection) -> UndoStackEntry | None:
        return self._ordered(direction).first()

    def entries(self, direction: StackDirection, limit: int) -> list[UndoStackEntry]:
        return self._ordered(direction).limit(limit).all()

    def count(self, direction: StackDirection) -> int:
        return self._stack(direction).count()

    def push(self, direction: StackDirection, action_type: str, description: str,
             payload: Payload) -> UndoStackEntry:
        entry = UndoStackEntry(
            organization_id=self.organization_id,
            action_type=action_type,
            description=description,
            undo_data=_encode(payload),
            is_redo=direction.is_redo,
        )
        db.session.add(entry)
        db.session.flush()
        return entry

    def pop(self, direction: StackDirection) -> PoppedEntry | None:
        """Lock the top row, delete it, and return its contents."""
        entry = self._ordered(direction).with_for_update().first()
        if entry is None:
            return None
        popped = PoppedEntry(entry.id, entry.action_type, entry.description, entry.payload)
        db.session.delete(entry)
        db.session.flush()
        return popped

    def clear(self, direction: StackDirection) -> int:
        return self._stack(direction).delete(synchronize_session=False)

    def trim(self, direction: StackDirection, keep: int) -> int:
        """Delete every entry older than the ``keep`` newest."""
        stale = [
            row.id for row in
            self._ordered(direction).with_entities(UndoStackEntry.id).offset(max(keep, 0)).all()
        ]
        if not stale:
            return 0
        return UndoStackEntry.query.filter(UndoStackEntry.id.in_(stale)).delete(
            synchronize_session=False
        )

    def clear_all(self) -> int:
        return UndoStackEntry.query_for_org(self.organization_id).delete(synchronize_session=False)

    # ── Named stack operations ───────────────────────────────────────────

    def push_undo(self, action_type, description, payload):
        return self.push(StackDirection.UNDO, action_type, description, payload)

    def push_redo(self, action_type, description, payload):
        return self.push(StackDirection.REDO, action_type, description, payload)

    def pop_undo(self):
        return self.pop(StackDirection.UNDO)

    def pop_redo(self):
        return self.pop(StackDirection.REDO)

    def clear_redo(self) -> int:
        return self.clear(StackDirection.REDO)


def _encode(payload: Payload) -> str:
    return json.dumps(payload.to_dict(), default=str)


def _stack_limit() -> int:
    return int(current_app.config.get("UNDO_STACK_LIMIT", DEFAULT_STACK_LIMIT))


def _display_limit() -> int:
    return int(current_app.config.get("UNDO_STACK_DISPLAY_LIMIT", DEFAULT_DISPLAY_LIMIT))


# ═════════════════════════════════════════════════════════════════════════════
# Record
# ═════════════════════════════════════════════════════════════════════════════

def record_action(organization_id: str, action_type: ActionType | str, description: str,
                  payload: Payload) -> UndoStackEntry:
    """Push a forward action onto the undo stack.

    Clears the redo stack, trims the undo stack so the new entry keeps it
    at the configured limit, then inserts the entry.

    Raises:
        ValidationError: unknown action type, or a payload of the wrong kind.
    """
    try:
        action = ActionType(action_type)
    except ValueError:
        raise ValidationError(f"Unknown action type: {action_type}") from None
    expected = ACTION_SPECS[action].payload_type(on_redo_stack=False)
    if not isinstance(payload, expected):
        raise ValidationError(
            f"{action.value} expects a {expected.kind.value} payload"
        )
    if payload.is_empty():
        raise ValidationError(f"{action.value} payload is empty")

    repo = UndoStackRepository(organization_id)
    cleared = repo.clear_redo()
    trimmed = repo.trim(StackDirection.UNDO, _stack_limit() - 1)
    entry = repo.push_undo(action.value, description, payload)
    logger.info(
        "Recorded %s entry=%s (redo cleared=%s, trimmed=%s)",
        action.value, entry.id, cleared, trimmed,
        extra={"organization_id": organization_id},
    )
    return entry


# ═════════════════════════════════════════════════════════════════════════════
# Inverse primitives
# ═════════════════════════════════════════════════════════════════════════════

def _remove_all(entity_type: str, ids: list[int], organization_id: str):
    removed, skipped = [], []
    for entity_id in ids:
        snap = snapshot.remove(entity_type, entity_id, organization_id)
        if snap is None:
            skipped.append(entity_id)
        else:
            removed.append(snap)
    return Snapshots(removed), skipped


def _recreate_all(entity_type: str, snapshots: list[dict], organization_id: str):
    recreated, skipped = [], []
    for snap in snapshots:
        try:
            recreated.append(snapshot.recreate(entity_type, snap, organization_id))
        except NotFoundError:
            skipped.append(snap.get("id"))
    return recreated, skipped


def _swap_all(entity_type: str, payload: FieldValues, organization_id: str):
    swapped, skipped = [], []
    for update in payload.updates:
        try:
            current = snapshot.swap_values(entity_type, update.entity_id, update.values,
                                           organization_id)
        except NotFoundError:
            skipped.append(update.entity_id)
            continue
        swapped.append(FieldUpdate(update.entity_id, current))
    return FieldValues(swapped), skipped


def apply_inverse(spec: ActionSpec, payload: Payload, direction: StackDirection,
                  organization_id: str) -> tuple[Payload, list]:
    """Apply one stack entry and return ``(complement, skipped_ids)``.

    Rows that vanished out-of-band are skipped rather than failing the
    whole entry.
    """
    expected = spec.payload_type(on_redo_stack=direction.is_redo)
    if not isinstance(payload, expected):
        raise UndoFailedError(
            f"Corrupt {direction.value} entry: expected {expected.kind.value} payload"
        )

    if spec.strategy is Strategy.UPDATE:
        return _swap_all(spec.entity_type, payload, organization_id)

    removes = (spec.strategy is Strategy.CREATE) != direction.is_redo
    if removes:
        # Redo of a delete re-captures the state being removed now
        return _remove_all(spec.entity_type, payload.ids, organization_id)

    recreated, skipped = _recreate_all(spec.entity_type, payload.snapshots, organization_id)
    if spec.strategy is Strategy.CREATE:
        return EntityRefs(recreated), skipped
    kept = set(recreated)
    return Snapshots([s for s in payload.snapshots if s["id"] in kept]), skipped


def _spec_for(action_type: str) -> ActionSpec:
    try:
        return ACTION_SPECS[ActionType(action_type)]
    except ValueError:
        raise UndoFailedError(f"Unknown action type: {action_type}") from None


# ═════════════════════════════════════════════════════════════════════════════
# Undo / redo
# ═════════════════════════════════════════════════════════════════════════════

def _replay(organization_id: str, direction: StackDirection) -> HistoryResult:
    repo = UndoStackRepository(organization_id)
    log_extra = {"organization_id": organization_id}
    try:
        popped = repo.pop(direction)
        if popped is None:
            raise NothingToRedoError() if direction.is_redo else NothingToUndoError()

        spec = _spec_for(popped.action_type)
        try:
            payload = decode_payload(popped.data)
        except ValueError as exc:
            raise UndoFailedError(str(exc)) from exc

        complement, skipped = apply_inverse(spec, payload, direction, organization_id)
        if not complement.is_empty():
            repo.push(direction.opposite, popped.action_type, popped.description, complement)
        db.session.commit()
    except (NothingToUndoError, NothingToRedoError) as exc:
        db.session.rollback()
        logger.debug("%s: %s", direction.value, exc, extra=log_extra)
        return HistoryResult.from_error(exc)
    except ConflictError as exc:
        # The detail names a row id that may belong to another organization
        db.session.rollback()
        logger.warning("%s failed: %s", direction.value, exc, extra=log_extra)
        return HistoryResult.from_error(UndoFailedError(f"{direction.value.capitalize()} failed"))
    except HistoryError as exc:
        db.session.rollback()
        logger.warning("%s failed: %s", direction.value, exc, extra=log_extra)
        return HistoryResult.from_error(exc)
    except Exception:
        db.session.rollback()
        logger.exception("%s failed with a store error", direction.value, extra=log_extra)
        return HistoryResult.from_error(UndoFailedError(f"{direction.value.capitalize()} failed"))

    if skipped:
        logger.warning(
            "%s of entry=%s (%s) skipped missing ids %s",
            direction.value, popped.id, popped.action_type, skipped, extra=log_extra,
        )
    else:
        logger.info("%s applied entry=%s (%s)", direction.value, popped.id, popped.action_type,
                    extra=log_extra)

    details = {"action_type": popped.action_type}
    if skipped:
        details["skipped"] = skipped
    return HistoryResult.ok(popped.description, **details)


def undo(organization_id: str) -> HistoryResult:
    """Revert the newest undo entry and push its complement onto redo."""
    return _replay(organization_id, StackDirection.UNDO)


def redo(organization_id: str) -> HistoryResult:
    """Re-apply the newest redo entry and push its complement onto undo."""
    return _replay(organization_id, StackDirection.REDO)


# ═════════════════════════════════════════════════════════════════════════════
# Read helpers
# ═════════════════════════════════════════════════════════════════════════════

def _last(organization_id: str, direction: StackDirection) -> dict | None:
    entry = UndoStackRepository(organization_id).peek(direction)
    if entry is None:
        return None
    return {"id": entry.id, "description": entry.description, "action_type": entry.action_type}


def get_last_undo(organization_id: str) -> dict | None:
    return _last(organization_id, StackDirection.UNDO)


def get_last_redo(organization_id: str) -> dict | None:
    return _last(organization_id, StackDirection.REDO)


def get_undo_stack(organization_id: str, limit: int | None = None) -> list[dict]:
    """Newest-first summaries of the undo stack (10 by default)."""
    entries = UndoStackRepository(organization_id).entries(
        StackDirection.UNDO, limit or _display_limit()
    )
    return [e.to_summary() for e in entries]


def get_redo_stack(organization_id: str, limit: int | None = None) -> list[dict]:
    entries = UndoStackRepository(organization_id).entries(
        StackDirection.REDO, limit or _display_limit()
    )
    return [e.to_summary() for e in entries]


def clear_history(organization_id: str) -> HistoryResult:
    """Delete every undo and redo entry of the organization."""
    try:
        removed = UndoStackRepository(organization_id).clear_all()
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("clear_history failed", extra={"organization_id": organization_id})
        return HistoryResult.from_error(UndoFailedError("Could not clear history"))
    logger.info("Cleared %d history entries", removed, extra={"organization_id": organization_id})
    return HistoryResult.ok(None, removed=removed)
