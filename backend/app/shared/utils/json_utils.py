"""
JSON Utility Functions
Helpers for the untyped JSON trees that providers send us.

- redact_secrets: recursive secret scrubbing before anything is persisted
- dig: safe nested lookup without chains of .get()
- as_json_object / merge_json: metadata blobs that must stay dicts
- sha256_normalized: PII hashing for ad-platform exports
- to_jsonable: make values safe for JSONB columns
"""
import hashlib
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

REDACTED = "[REDACTED]"

_SECRET_KEYS = frozenset({
    "apikey",
    "api_key",
    "authorization",
    "token",
    "access_token",
    "refresh_token",
})


def is_secret_key(key: str) -> bool:
    """
    Case-insensitive match for keys whose values must never be stored.

    Examples:
        >>> is_secret_key("ApiKey"), is_secret_key("client_secret"), is_secret_key("text")
        (True, True, False)
    """
    lowered = key.lower()
    return lowered in _SECRET_KEYS or "secret" in lowered


def redact_secrets(value: Any, predicate: Callable[[str], bool] = is_secret_key) -> Any:
    """
    Return a copy of `value` with every matching key's value replaced by
    "[REDACTED]", walking nested dicts and lists. Scalars pass through.
    The input is never mutated.
    """
    if isinstance(value, dict):
        return {
            k: (REDACTED if isinstance(k, str) and predicate(k) else redact_secrets(v, predicate))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_secrets(item, predicate) for item in value]
    return value


def dig(data: Any, *path: Any, default: Any = None) -> Any:
    """
    Nested lookup that tolerates missing keys, wrong types and None.

    Examples:
        >>> dig({"a": {"b": [1, {"c": 2}]}}, "a", "b", 1, "c")
        2
        >>> dig({"a": None}, "a", "b", default="x")
        'x'
    """
    current = data
    for part in path:
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and isinstance(part, int) and -len(current) <= part < len(current):
            current = current[part]
        else:
            return default
        if current is None:
            return default
    return current


def as_json_object(value: Any) -> Dict[str, Any]:
    """Dict values are returned as a shallow copy; anything else becomes {}."""
    if isinstance(value, dict):
        return dict(value)
    return {}


def merge_json(current: Any, patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow merge of `patch` over `current` (patch wins). Never a full overwrite."""
    merged = as_json_object(current)
    if patch:
        merged.update(patch)
    return merged


def non_empty_str(value: Any) -> Optional[str]:
    """The string itself when it is a non-blank string, else None."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def sha256_normalized(value: Any) -> Optional[str]:
    """
    SHA-256 hex digest of the lowercased, trimmed value (Meta CAPI normalization).
    Empty or non-string input yields None.
    """
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def split_name(full_name: Any) -> tuple:
    """('Maria', 'Souza') from 'Maria da Souza'; last is None for single tokens."""
    if not isinstance(full_name, str):
        return None, None
    parts = re.split(r"\s+", full_name.strip())
    parts = [p for p in parts if p]
    if not parts:
        return None, None
    return parts[0], (parts[-1] if len(parts) > 1 else None)


def to_jsonable(value: Any) -> Any:
    """Convert datetimes (recursively) to ISO strings so the tree fits a JSONB column."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
