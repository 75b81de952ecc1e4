"""
Folder service: the folder tree that groups test cases.

Transaction policy: functions flush, the blueprint commits.
"""

import logging

from sqlalchemy import func

from casetrack.core.exceptions import ValidationError
from casetrack.models import db
from casetrack.models.testing import Folder, TestCase
from casetrack.services import snapshot, undo_service
from casetrack.services.helpers.scoped_queries import get_scoped
from casetrack.services.undo_payloads import (
    ActionType,
    EntityRefs,
    FieldUpdate,
    FieldValues,
    Snapshots,
)

logger = logging.getLogger(__name__)


def _clean_name(name) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if len(name) > 200:
        raise ValidationError("name must be ≤ 200 characters")
    return name


def _siblings(organization_id: str, parent_id: int | None):
    query = Folder.query_for_org(organization_id)
    if parent_id is None:
        return query.filter(Folder.parent_id.is_(None))
    return query.filter(Folder.parent_id == parent_id)


def _next_order(organization_id: str, parent_id: int | None) -> int:
    query = db.session.query(func.max(Folder.order)).filter(
        Folder.organization_id == organization_id
    )
    if parent_id is None:
        query = query.filter(Folder.parent_id.is_(None))
    else:
        query = query.filter(Folder.parent_id == parent_id)
    current = query.scalar()
    return (current if current is not None else -1) + 1


def descendant_ids(organization_id: str, folder_id: int) -> set[int]:
    """Ids of every folder below ``folder_id``."""
    children_of: dict[int | None, list[int]] = {}
    for fid, parent in db.session.query(Folder.id, Folder.parent_id).filter(
        Folder.organization_id == organization_id
    ):
        children_of.setdefault(parent, []).append(fid)
    found, pending = set(), list(children_of.get(folder_id, []))
    while pending:
        fid = pending.pop()
        if fid in found:
            continue
        found.add(fid)
        pending.extend(children_of.get(fid, []))
    return found


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

def folder_tree(organization_id: str) -> list[dict]:
    """Nested folder tree, siblings ordered by ``order`` then name."""
    folders = Folder.query_for_org(organization_id).order_by(Folder.order, Folder.name).all()
    nodes = {f.id: {**f.to_dict(), "children": []} for f in folders}
    roots = []
    for f in folders:
        parent = nodes.get(f.parent_id)
        (parent["children"] if parent else roots).append(nodes[f.id])
    return roots


def folder_breadcrumb(organization_id: str, folder_id: int) -> list[dict]:
    """Path from the root down to ``folder_id``."""
    path, seen = [], set()
    folder = get_scoped(Folder, folder_id, organization_id=organization_id)
    while folder is not None and folder.id not in seen:
        seen.add(folder.id)
        path.append({"id": folder.id, "name": folder.name})
        if folder.parent_id is None:
            break
        folder = Folder.query_for_org(organization_id).filter_by(id=folder.parent_id).first()
    return list(reversed(path))


# ═════════════════════════════════════════════════════════════════════════════
# Mutations
# ═════════════════════════════════════════════════════════════════════════════

def create_folder(organization_id: str, name: str, parent_id: int | None = None) -> Folder:
    name = _clean_name(name)
    if parent_id is not None:
        get_scoped(Folder, parent_id, organization_id=organization_id)
    folder = Folder(
        organization_id=organization_id,
        name=name,
        parent_id=parent_id,
        order=_next_order(organization_id, parent_id),
    )
    db.session.add(folder)
    db.session.flush()
    undo_service.record_action(organization_id, ActionType.CREATE_FOLDER,
                               f'Create folder "{name}"', EntityRefs([folder.id]))
    return folder


def rename_folder(organization_id: str, folder_id: int, name: str) -> Folder:
    folder = get_scoped(Folder, folder_id, organization_id=organization_id)
    name = _clean_name(name)
    if folder.name == name:
        return folder
    old_name = folder.name
    folder.name = name
    db.session.flush()
    undo_service.record_action(organization_id, ActionType.RENAME_FOLDER,
                               f'Rename folder "{old_name}" to "{name}"',
                               FieldValues.single(folder.id, {"name": old_name}))
    return folder


def move_folder(organization_id: str, folder_id: int, new_parent_id: int | None,
                position: int | None = None) -> Folder:
    """Reparent a folder; ``position`` inserts it among the new siblings.

    Raises:
        ValidationError: target is the folder itself or one of its descendants.
    """
    folder = get_scoped(Folder, folder_id, organization_id=organization_id)
    if new_parent_id is not None:
        get_scoped(Folder, new_parent_id, organization_id=organization_id)
        if new_parent_id == folder.id or new_parent_id in descendant_ids(organization_id, folder.id):
            raise ValidationError("Cannot move a folder into itself or one of its subfolders")

    if position is None:
        if folder.parent_id == new_parent_id:
            return folder
        position = _next_order(organization_id, new_parent_id)
    elif folder.parent_id == new_parent_id and folder.order == position:
        return folder

    updates = [FieldUpdate(folder.id, {"parent_id": folder.parent_id, "order": folder.order})]
    shifted = (
        _siblings(organization_id, new_parent_id)
        .filter(Folder.id != folder.id, Folder.order >= position)
        .all()
    )
    for sibling in shifted:
        updates.append(FieldUpdate(sibling.id, {"order": sibling.order}))
        sibling.order += 1
    folder.parent_id = new_parent_id
    folder.order = position
    db.session.flush()
    undo_service.record_action(organization_id, ActionType.MOVE_FOLDER,
                               f'Move folder "{folder.name}"', FieldValues(updates))
    return folder


def delete_folder(organization_id: str, folder_id: int) -> dict:
    """Delete an empty folder.

    Raises:
        ValidationError: the folder still has subfolders or test cases.
    """
    folder = get_scoped(Folder, folder_id, organization_id=organization_id)
    if _siblings(organization_id, folder.id).count():
        raise ValidationError("Cannot delete a folder that has subfolders")
    if TestCase.query_for_org(organization_id).filter_by(folder_id=folder.id).count():
        raise ValidationError("Cannot delete a folder that contains test cases")
    removed = snapshot.remove("folder", folder.id, organization_id)
    undo_service.record_action(organization_id, ActionType.DELETE_FOLDER,
                               f'Delete folder "{removed["name"]}"', Snapshots([removed]))
    return removed


def reorder_folders(organization_id: str, parent_id: int | None, ordered_ids: list[int]) -> int:
    """Set each sibling's ``order`` to its position in ``ordered_ids``.

    A repeated id keeps its first position.
    """
    ordered_ids = list(dict.fromkeys(ordered_ids))
    rows = {f.id: f for f in _siblings(organization_id, parent_id).all()}
    updates = []
    for position, folder_id in enumerate(ordered_ids):
        folder = rows.get(folder_id)
        if folder is None or folder.order == position:
            continue
        updates.append(FieldUpdate(folder.id, {"order": folder.order}))
        folder.order = position
    if not updates:
        return 0
    db.session.flush()
    undo_service.record_action(organization_id, ActionType.REORDER_FOLDERS,
                               "Reorder folders", FieldValues(updates))
    return len(updates)
