"""Content addressing.

Ids are ``sha256:{hex}`` digests of the canonical JSON encoding of an item's
``data``: keys sorted, no insignificant whitespace, UTF-8 without ASCII
escaping. Integral floats are written as integers (``40.0`` as ``40``), the
way ``JSON.stringify`` writes them, so ids match items already in the store.
NaN and Infinity have no JSON representation and are rejected.
"""
from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from core.errors import ValidationError

ID_PREFIX = "sha256:"
KEY_PREFIX = "sha256_"
_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


# Past this magnitude JavaScript prints integral numbers in exponent form.
_JS_EXPONENT_LIMIT = 1e21


def _integral_floats_as_ints(value: Any) -> Any:
    if isinstance(value, float):
        if value.is_integer() and abs(value) < _JS_EXPONENT_LIMIT:
            return int(value)
        return value
    if isinstance(value, dict):
        return {k: _integral_floats_as_ints(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_integral_floats_as_ints(v) for v in value]
    return value


def canonical_json(value: Any) -> bytes:
    try:
        text = json.dumps(
            _integral_floats_as_ints(value),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise ValidationError("data", f"Content is not canonical JSON: {exc}") from exc
    return text.encode("utf-8")


def content_hash(data: Any) -> str:
    return hashlib.sha256(canonical_json(data)).hexdigest()


def content_address(data: Any) -> str:
    """Return the ``sha256:`` id for a payload."""
    return ID_PREFIX + content_hash(data)


def hash_from_id(content_id: str) -> str:
    """Strip the scheme prefix (``sha256:`` or ``sha256_``) from an id."""
    value = content_id.strip()
    for prefix in (ID_PREFIX, KEY_PREFIX):
        if value.startswith(prefix):
            return value[len(prefix):]
    return value


def normalize_id(value: str) -> str:
    """Accept a bare hex digest or a prefixed id and return ``sha256:{hex}``."""
    digest = hash_from_id(value).lower()
    if not _HEX_RE.match(digest):
        raise ValidationError("hash", f"Not a sha256 hex digest: {value!r}")
    return ID_PREFIX + digest


def blob_key(category: str, content_id: str) -> str:
    """Blob key for an envelope: ``{category}/sha256_{hex}.json``."""
    if content_id.startswith(ID_PREFIX):
        name = KEY_PREFIX + content_id[len(ID_PREFIX):]
    else:
        name = content_id.replace(":", "_").replace("/", "_")
    return f"{category}/{name}.json"


def category_from_key(key: str) -> str | None:
    """Category prefix of a blob key, or None for keys stored at the root."""
    head, sep, _ = key.partition("/")
    return head if sep and head else None


__all__ = [
    "ID_PREFIX",
    "KEY_PREFIX",
    "blob_key",
    "canonical_json",
    "category_from_key",
    "content_address",
    "content_hash",
    "hash_from_id",
    "normalize_id",
]
