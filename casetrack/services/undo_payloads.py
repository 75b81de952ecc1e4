"""
Typed undo-stack payloads.

Each ``UndoStackEntry.undo_data`` holds one of three payload kinds,
tagged by ``kind`` in its JSON form:

    EntityRefs   ids of rows a create produced; undo removes them
    Snapshots    full snapshots of removed rows; undo recreates them
    FieldValues  per-row field values to swap back in

``ACTION_SPECS`` maps each of the 16 action types to the entity it touches
and the strategy that inverts it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar


class PayloadKind(str, Enum):
    ENTITY_REFS = "entity_refs"
    SNAPSHOTS = "snapshots"
    FIELD_VALUES = "field_values"


class Strategy(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ActionType(str, Enum):
    CREATE_TEST_CASE = "create_test_case"
    UPDATE_TEST_CASE = "update_test_case"
    DELETE_TEST_CASE = "delete_test_case"
    CREATE_SCENARIO = "create_scenario"
    UPDATE_SCENARIO = "update_scenario"
    DELETE_SCENARIO = "delete_scenario"
    BULK_DELETE_TEST_CASES = "bulk_delete_test_cases"
    BULK_UPDATE_TEST_CASES = "bulk_update_test_cases"
    BULK_MOVE_TEST_CASES = "bulk_move_test_cases"
    REORDER_TEST_CASES = "reorder_test_cases"
    REORDER_SCENARIOS = "reorder_scenarios"
    CREATE_FOLDER = "create_folder"
    RENAME_FOLDER = "rename_folder"
    MOVE_FOLDER = "move_folder"
    DELETE_FOLDER = "delete_folder"
    REORDER_FOLDERS = "reorder_folders"


# ── Payload variants ─────────────────────────────────────────────────────────


@dataclass
class EntityRefs:
    ids: list[int]
    kind: ClassVar[PayloadKind] = PayloadKind.ENTITY_REFS

    def is_empty(self) -> bool:
        return not self.ids

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "ids": [int(i) for i in self.ids]}


@dataclass
class Snapshots:
    snapshots: list[dict]
    kind: ClassVar[PayloadKind] = PayloadKind.SNAPSHOTS

    @property
    def ids(self) -> list[int]:
        return [s["id"] for s in self.snapshots]

    def is_empty(self) -> bool:
        return not self.snapshots

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "snapshots": list(self.snapshots)}


@dataclass
class FieldUpdate:
    entity_id: int
    values: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"entity_id": self.entity_id, "values": dict(self.values)}


@dataclass
class FieldValues:
    updates: list[FieldUpdate]
    kind: ClassVar[PayloadKind] = PayloadKind.FIELD_VALUES

    @classmethod
    def single(cls, entity_id: int, values: dict) -> "FieldValues":
        return cls([FieldUpdate(entity_id, values)])

    def is_empty(self) -> bool:
        return not self.updates

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "updates": [u.to_dict() for u in self.updates]}


Payload = EntityRefs | Snapshots | FieldValues


def decode_payload(data: dict) -> Payload:
    """Rebuild a payload from its JSON form.

    Raises:
        ValueError: unknown kind or malformed body.
    """
    try:
        kind = PayloadKind(data.get("kind"))
        if kind is PayloadKind.ENTITY_REFS:
            return EntityRefs([int(i) for i in data["ids"]])
        if kind is PayloadKind.SNAPSHOTS:
            return Snapshots(list(data["snapshots"]))
        return FieldValues([
            FieldUpdate(int(u["entity_id"]), dict(u["values"])) for u in data["updates"]
        ])
    except (KeyError, TypeError, AttributeError) as exc:
        raise ValueError(f"Malformed undo payload: {exc}") from exc


# ── Action table ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ActionSpec:
    entity_type: str
    strategy: Strategy

    def payload_type(self, on_redo_stack: bool) -> type:
        """Payload class expected on the given stack for this action."""
        if self.strategy is Strategy.UPDATE:
            return FieldValues
        if self.strategy is Strategy.CREATE and not on_redo_stack:
            return EntityRefs
        return Snapshots


ACTION_SPECS: dict[ActionType, ActionSpec] = {
    ActionType.CREATE_TEST_CASE: ActionSpec("test_case", Strategy.CREATE),
    ActionType.UPDATE_TEST_CASE: ActionSpec("test_case", Strategy.UPDATE),
    ActionType.DELETE_TEST_CASE: ActionSpec("test_case", Strategy.DELETE),
    ActionType.CREATE_SCENARIO: ActionSpec("scenario", Strategy.CREATE),
    ActionType.UPDATE_SCENARIO: ActionSpec("scenario", Strategy.UPDATE),
    ActionType.DELETE_SCENARIO: ActionSpec("scenario", Strategy.DELETE),
    ActionType.BULK_DELETE_TEST_CASES: ActionSpec("test_case", Strategy.DELETE),
    ActionType.BULK_UPDATE_TEST_CASES: ActionSpec("test_case", Strategy.UPDATE),
    ActionType.BULK_MOVE_TEST_CASES: ActionSpec("test_case", Strategy.UPDATE),
    ActionType.REORDER_TEST_CASES: ActionSpec("test_case", Strategy.UPDATE),
    ActionType.REORDER_SCENARIOS: ActionSpec("scenario", Strategy.UPDATE),
    ActionType.CREATE_FOLDER: ActionSpec("folder", Strategy.CREATE),
    ActionType.RENAME_FOLDER: ActionSpec("folder", Strategy.UPDATE),
    ActionType.MOVE_FOLDER: ActionSpec("folder", Strategy.UPDATE),
    ActionType.DELETE_FOLDER: ActionSpec("folder", Strategy.DELETE),
    ActionType.REORDER_FOLDERS: ActionSpec("folder", Strategy.UPDATE),
}
