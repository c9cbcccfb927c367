"""Step parameter resolution against the execution's variable map."""

from __future__ import annotations

import re
from typing import Any

_REFERENCE_RE = re.compile(r"^\$\{\s*([A-Za-z_][\w-]*(?:\.[\w-]+)*)\s*\}$")

_MISSING = object()


def lookup_path(variables: dict[str, Any], path: str, default: Any = None) -> Any:
    """Navigate a dot-separated path through nested dicts.

    Examples::

        lookup_path({"order": {"id": 7}}, "order.id")      # 7
        lookup_path({"items": [1, 2]}, "items.1")          # 2
        lookup_path({}, "missing.key", default="n/a")     # "n/a"
    """
    val: Any = variables
    for part in path.split("."):
        if isinstance(val, dict):
            if part not in val:
                return default
            val = val[part]
        elif isinstance(val, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(val):
                return default
            val = val[index]
        else:
            return default
    return val


def resolve_value(value: Any, variables: dict[str, Any]) -> Any:
    """Resolve a single value.

    A string that is *exactly* ``${name}`` or ``${a.b.c}`` becomes the
    referenced variable with its type preserved.  References that do not
    resolve leave the original string in place, and any other string is
    passed through unchanged.
    """
    if isinstance(value, str):
        match = _REFERENCE_RE.match(value)
        if not match:
            return value
        resolved = lookup_path(variables, match.group(1), default=_MISSING)
        return value if resolved is _MISSING else resolved
    if isinstance(value, dict):
        return resolve_parameters(value, variables)
    if isinstance(value, list):
        return [resolve_value(v, variables) for v in value]
    return value


def resolve_parameters(params: dict[str, Any], variables: dict[str, Any]) -> dict[str, Any]:
    """Recursively resolve ``${...}`` references in a params dict.  Returns a new dict."""
    return {k: resolve_value(v, variables) for k, v in (params or {}).items()}
