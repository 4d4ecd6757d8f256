"""Field-level merge of remote metadata into a local record."""

from __future__ import annotations

from typing import Any


def is_meaningful(value: Any) -> bool:
    """False for None, empty strings and empty collections."""
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) > 0
    return True


def merge_metadata(existing: dict[str, Any] | None, incoming: dict[str, Any] | None) -> dict[str, Any]:
    """Merge two metadata dicts, preferring meaningful incoming values.

    For every key in either input: the incoming value wins when it is
    meaningful; otherwise the existing value is kept if the key exists;
    otherwise the key is left out. Known data is never replaced by an
    empty value.
    """
    existing = existing or {}
    incoming = incoming or {}
    merged: dict[str, Any] = {}
    for key in list(existing) + [k for k in incoming if k not in existing]:
        new_value = incoming.get(key)
        if is_meaningful(new_value):
            merged[key] = new_value
        elif key in existing:
            merged[key] = existing[key]
    return merged
