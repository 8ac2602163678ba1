from __future__ import annotations

import json
import re
from typing import Any


_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
_PATH_SPLIT_RE = re.compile(r"[.\[\]]+")
_CONDITION_RE = re.compile(r"^(.+?)\s*(>=|<=|!=|==|>|<)\s*(.+?)$")

_MISSING = object()


def resolve_path(data: Any, path: str) -> Any:
    """Walk dotted/indexed paths such as ``orders[0].id``; returns None when absent."""
    value = _resolve(data, path)
    return None if value is _MISSING else value


def _resolve(data: Any, path: str) -> Any:
    current = data
    for part in (piece for piece in _PATH_SPLIT_RE.split(path.strip()) if piece):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def set_path(variables: dict[str, Any], path: str, value: Any) -> None:
    parts = [piece for piece in path.strip().split(".") if piece]
    if not parts:
        return
    current = variables
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def render(template: str, variables: dict[str, Any]) -> str:
    # Unknown placeholders are left as written.
    def _replace(match: re.Match[str]) -> str:
        value = _resolve(variables, match.group(1))
        if value is _MISSING:
            return match.group(0)
        return _stringify(value)

    return _PLACEHOLDER_RE.sub(_replace, template)


def _as_number(raw: str) -> float | None:
    try:
        return float(raw)
    except ValueError:
        return None


def evaluate_condition(expression: str, variables: dict[str, Any]) -> bool:
    """Evaluate ``{{x}} op value`` with op in > < >= <= == !=.

    Both sides are compared as numbers when both parse, otherwise only
    ``==`` and ``!=`` are meaningful and compare the trimmed strings.
    """
    match = _CONDITION_RE.match(render(expression, variables).strip())
    if match is None:
        return False
    left_raw, operator, right_raw = (part.strip() for part in match.groups())
    left, right = _as_number(left_raw), _as_number(right_raw)
    if left is None or right is None:
        if operator == "==":
            return left_raw == right_raw
        if operator == "!=":
            return left_raw != right_raw
        return False
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    if operator == ">=":
        return left >= right
    if operator == "<=":
        return left <= right
    if operator == "==":
        return left == right
    return left != right
