"""Idempotency key derivation.

A key is ``<signal id>:<action>:<target>:<digest>`` where the digest is the
first 16 hex characters of SHA-256 over the canonical JSON form of the
parameters. Canonical JSON sorts object keys at every level and uses compact
separators, so two parameter bags that differ only in key order produce the
same key. Values JSON cannot encode natively (datetimes, bytes, sets ...) are
converted with ``str``.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, NamedTuple, Optional

from ..constants import KEY_HASH_LENGTH, NO_SIGNAL


class ParsedKey(NamedTuple):
    signal_id: Optional[str]
    action_type: str
    target: str
    params_hash: str


def _default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, bytes):
        return hashlib.sha256(value).hexdigest()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)


def canonical_json(params: Mapping[str, Any] | None) -> str:
    return json.dumps(
        params or {},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_default,
    )


def hash_params(params: Mapping[str, Any] | None) -> str:
    digest = hashlib.sha256(canonical_json(params).encode("utf-8")).hexdigest()
    return digest[:KEY_HASH_LENGTH]


def derive_key(
    signal_id: Optional[str],
    action_type: str,
    target: str,
    params: Mapping[str, Any] | None,
) -> str:
    """Return the idempotency key for one logical action request."""
    return f"{signal_id or NO_SIGNAL}:{action_type}:{target}:{hash_params(params)}"


def parse_key(key: str) -> Optional[ParsedKey]:
    """Split a key back into its parts; ``None`` when it is malformed."""
    # The signal id may itself contain colons, so split from the right.
    parts = key.rsplit(":", 3)
    if len(parts) != 4 or not all(parts[1:]):
        return None
    signal_id, action_type, target, params_hash = parts
    return ParsedKey(
        signal_id=None if signal_id == NO_SIGNAL else signal_id,
        action_type=action_type,
        target=target,
        params_hash=params_hash,
    )


def params_equivalent(a: Mapping[str, Any] | None, b: Mapping[str, Any] | None) -> bool:
    """True when both parameter bags canonicalise to the same JSON."""
    return canonical_json(a) == canonical_json(b)
