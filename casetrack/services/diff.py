"""
Field-level diff between two flat value maps.

Values are compared by their canonical JSON form, so lists and dicts are
equal when structurally equal. Keys are sorted first: two objects holding
the same pairs in a different key order are not a change.

The key set is the union of both maps: a key present on one side only is
always a change, even when the other side's value would be None.
"""

import json

_MISSING = object()


def _canonical(value) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def compute_diff(before: dict | None, after: dict | None) -> list[dict]:
    """Return ``[{field, old_value, new_value}]`` for every changed key.

    Keys keep first-seen order: ``before``'s keys, then keys new in ``after``.
    """
    before = before or {}
    after = after or {}
    changes = []
    for key in dict.fromkeys([*before, *after]):
        old = before.get(key, _MISSING)
        new = after.get(key, _MISSING)
        if old is _MISSING or new is _MISSING:
            changed = old is not new
        else:
            changed = _canonical(old) != _canonical(new)
        if changed:
            changes.append({
                "field": key,
                "old_value": None if old is _MISSING else old,
                "new_value": None if new is _MISSING else new,
            })
    return changes


def has_changes(before: dict | None, after: dict | None) -> bool:
    return bool(compute_diff(before, after))


def split_changes(changes: list[dict]) -> tuple[dict, dict]:
    """Split a diff into ``(previous_values, new_values)`` maps."""
    previous = {c["field"]: c["old_value"] for c in changes}
    new = {c["field"]: c["new_value"] for c in changes}
    return previous, new
