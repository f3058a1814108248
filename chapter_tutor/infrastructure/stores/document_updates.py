"""Filter matching and update operators shared by the document store adapters."""

from __future__ import annotations

import copy
from typing import Any

_MISSING = object()

SUPPORTED_UPDATE_OPERATORS = frozenset({"$set", "$inc", "$push", "$setOnInsert"})


def get_path(document: dict[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def _compare(value: Any, operator: str, operand: Any) -> bool:
    if operator == "$exists":
        return (value is not _MISSING) == bool(operand)
    if operator == "$ne":
        return value is _MISSING or value != operand
    if operator == "$in":
        return value is not _MISSING and value in operand
    if value is _MISSING or value is None:
        return False
    try:
        if operator == "$lt":
            return value < operand
        if operator == "$lte":
            return value <= operand
        if operator == "$gt":
            return value > operand
        if operator == "$gte":
            return value >= operand
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {operator}")


def is_operator_condition(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(str(k).startswith("$") for k in condition)


def matches_filter(document: dict[str, Any], filters: dict[str, Any]) -> bool:
    for path, condition in (filters or {}).items():
        value = get_path(document, path)
        if is_operator_condition(condition):
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


def seed_from_filter(filters: dict[str, Any]) -> dict[str, Any]:
    """Equality conditions become the initial fields of an upserted document."""
    seeded: dict[str, Any] = {}
    for path, condition in (filters or {}).items():
        if not is_operator_condition(condition):
            set_path(seeded, path, copy.deepcopy(condition))
    return seeded


def apply_update(document: dict[str, Any], update: dict[str, Any], *, inserting: bool = False) -> dict[str, Any]:
    unknown = set(update) - SUPPORTED_UPDATE_OPERATORS
    if unknown:
        raise ValueError(f"Unsupported update operators: {sorted(unknown)}")

    result = copy.deepcopy(document)
    for path, value in (update.get("$set") or {}).items():
        set_path(result, path, copy.deepcopy(value))

    if inserting:
        for path, value in (update.get("$setOnInsert") or {}).items():
            set_path(result, path, copy.deepcopy(value))

    for path, amount in (update.get("$inc") or {}).items():
        current = get_path(result, path)
        base = 0 if current is _MISSING or current is None else current
        set_path(result, path, base + amount)

    for path, value in (update.get("$push") or {}).items():
        current = get_path(result, path)
        items = list(current) if isinstance(current, list) else []
        if isinstance(value, dict) and "$each" in value:
            items.extend(copy.deepcopy(list(value["$each"])))
        else:
            items.append(copy.deepcopy(value))
        set_path(result, path, items)

    return result


def split_update(update: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """
    Breaks an update on an existing document into the `$set`, `$inc` and `$push` arguments of
    the store-side update function. `$push` values are always lists of items to append;
    `$setOnInsert` is dropped because the document already exists.
    """
    unknown = set(update) - SUPPORTED_UPDATE_OPERATORS
    if unknown:
        raise ValueError(f"Unsupported update operators: {sorted(unknown)}")

    pushes: dict[str, list[Any]] = {}
    for path, value in (update.get("$push") or {}).items():
        if isinstance(value, dict) and "$each" in value:
            pushes[path] = list(value["$each"])
        else:
            pushes[path] = [value]
    return {
        "set": dict(update.get("$set") or {}),
        "inc": dict(update.get("$inc") or {}),
        "push": pushes,
    }
