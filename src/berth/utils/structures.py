"""Helpers for plain nested dict/list structures."""

from typing import Any, Dict


def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries. Lists and scalars in ``override`` replace."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


def is_empty(value: Any, drop_empty_strings: bool = False) -> bool:
    """Check whether a value counts as an empty placeholder."""
    if value is None:
        return True
    if isinstance(value, (dict, list, tuple)) and not value:
        return True
    return drop_empty_strings and value == ""


def prune_empty(value: Any, drop_empty_strings: bool = False) -> Any:
    """Recursively drop ``None`` values and empty collections.

    Containers that become empty after pruning are dropped from their parent
    as well. ``False`` and ``0`` are kept. The top-level value itself is
    returned even when it ends up empty.
    """
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            item = prune_empty(item, drop_empty_strings)
            if not is_empty(item, drop_empty_strings):
                result[key] = item
        return result
    if isinstance(value, (list, tuple)):
        result = []
        for item in value:
            item = prune_empty(item, drop_empty_strings)
            if not is_empty(item, drop_empty_strings):
                result.append(item)
        return result
    return value
