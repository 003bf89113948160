"""Resolution of ``$stepId.field`` references in parameter bags."""

from __future__ import annotations

import re
from typing import Any, Mapping

REFERENCE_PATTERN = re.compile(r"\$([A-Za-z_][\w\-]*)((?:\.[\w\-]+)*)")

_MISSING = object()


def _walk(value: Any, path: list[str]) -> Any:
    for part in path:
        if isinstance(value, Mapping):
            if part not in value:
                return _MISSING
            value = value[part]
        elif isinstance(value, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(value):
                return _MISSING
            value = value[index]
        elif hasattr(value, part):
            value = getattr(value, part)
        else:
            return _MISSING
    return value


def lookup(reference: str, context: Mapping[str, Any]) -> Any:
    """Return the value a single ``$name.path`` reference points at, or ``None``."""
    match = REFERENCE_PATTERN.fullmatch(reference.strip())
    if not match:
        return None
    value = _resolve_match(match, context)
    return None if value is _MISSING else value


def _resolve_match(match: re.Match, context: Mapping[str, Any]) -> Any:
    name, dotted = match.group(1), match.group(2)
    if name not in context:
        return _MISSING
    path = [p for p in dotted.split(".") if p]
    return _walk(context[name], path)


def resolve_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Substitute references in ``value`` recursively.

    A string that is exactly one reference is replaced by the referenced
    value with its type intact. References embedded in longer strings are
    interpolated as text. Anything that cannot be resolved is left verbatim.
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            resolved = _resolve_match(whole, context)
            return value if resolved is _MISSING else resolved

        def _sub(match: re.Match) -> str:
            resolved = _resolve_match(match, context)
            return match.group(0) if resolved is _MISSING else str(resolved)

        return REFERENCE_PATTERN.sub(_sub, value)
    if isinstance(value, Mapping):
        return {k: resolve_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, context) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_value(v, context) for v in value)
    return value


def resolve_params(params: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
    """Resolve every reference in a step's parameter bag."""
    return {key: resolve_value(val, context) for key, val in params.items()}
