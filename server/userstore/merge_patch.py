"""
JSON merge patch (RFC 7396) for plain Python JSON values.
"""

from __future__ import annotations

from typing import Any


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """
    Return ``target`` with ``patch`` applied.

    Object members set to ``None`` remove the key, nested objects merge
    recursively and any non-object patch replaces the target outright.
    Neither argument is mutated.
    """
    if not isinstance(patch, dict):
        return patch

    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result
