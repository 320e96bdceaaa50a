"""Envelope protocol: the ``{type, id, data}`` unit stored in the blob store.

An envelope is a tagged union keyed by ``type``. ``data`` is an open map and
is carried through untouched; only the fields listed in the category config
are validated and projected into the index. Unknown top-level fields are kept
in ``extra`` so a blob read and re-written never loses information.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from core.addressing import content_address
from core.categories import CategoryConfig, get_category
from core.errors import ValidationError

SCHEMA_VERSION = "1.1.0"
_KNOWN_KEYS = {"type", "id", "data", "schema_version", "environment"}


@dataclass
class Envelope:
    type: str
    id: str | None
    data: dict[str, Any]
    schema_version: str = SCHEMA_VERSION
    environment: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        category: str,
        data: dict[str, Any],
        *,
        environment: dict[str, Any] | None = None,
    ) -> Envelope:
        """Build a new envelope whose id is the content address of ``data``."""
        return cls(
            type=category,
            id=content_address(data),
            data=data,
            environment=environment or None,
        )

    @classmethod
    def from_dict(cls, doc: Any) -> Envelope:
        if not isinstance(doc, dict):
            raise ValidationError("envelope", "Envelope must be a JSON object")
        kind = doc.get("type")
        if not isinstance(kind, str) or not kind:
            raise ValidationError("type", 'Missing or invalid "type" field in envelope')
        data = doc.get("data")
        if not isinstance(data, dict):
            raise ValidationError("data", 'Missing or invalid "data" field in envelope')
        raw_id = doc.get("id")
        environment = doc.get("environment")
        return cls(
            type=kind,
            id=raw_id if isinstance(raw_id, str) and raw_id else None,
            data=data,
            schema_version=str(doc.get("schema_version") or SCHEMA_VERSION),
            environment=environment if isinstance(environment, dict) else None,
            extra={k: v for k, v in doc.items() if k not in _KNOWN_KEYS},
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> Envelope:
        try:
            doc = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("envelope", f"Invalid JSON syntax: {exc}") from exc
        return cls.from_dict(doc)

    @property
    def record_id(self) -> str | None:
        """Top-level id, falling back to ``data.id``."""
        if self.id:
            return self.id
        inner = self.data.get("id")
        return inner if isinstance(inner, str) and inner else None

    def to_dict(self) -> dict[str, Any]:
        doc: dict[str, Any] = dict(self.extra)
        doc.update(
            {
                "type": self.type,
                "id": self.id,
                "schema_version": self.schema_version,
                "data": self.data,
            }
        )
        if self.environment:
            doc["environment"] = self.environment
        return doc

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")


@dataclass
class IndexRecord:
    """Validated projection of an envelope, ready for upsert."""

    category: CategoryConfig
    id: str
    r2_key: str
    values: dict[str, Any]
    tags: list[str] = field(default_factory=list)

    def row(self) -> dict[str, Any]:
        out = {"id": self.id}
        out.update(self.values)
        out["r2_key"] = self.r2_key
        return out


def validate_payload(category: str, data: Any) -> CategoryConfig:
    """Request-path validation of a client payload before anything is written."""
    config = get_category(category)
    if not isinstance(data, dict):
        raise ValidationError("data", 'Missing or invalid "data" field (must be an object)')
    config.validate(data)
    return config


def validate_envelope(
    envelope: Envelope,
    r2_key: str,
    *,
    expected_category: str | None = None,
) -> IndexRecord:
    """Decide insert/reject for a stored envelope and project its index row."""
    if expected_category is not None and envelope.type != expected_category:
        raise ValidationError(
            "type",
            f"Type mismatch: expected {expected_category!r}, envelope says {envelope.type!r}",
        )
    config = get_category(envelope.type)
    record_id = envelope.record_id
    if not record_id:
        raise ValidationError("id", "Missing id field (must be in top-level or data object)")
    values = config.validate(envelope.data)
    return IndexRecord(
        category=config,
        id=record_id,
        r2_key=r2_key,
        values=values,
        tags=config.extract_tags(envelope.data),
    )


__all__ = [
    "Envelope",
    "IndexRecord",
    "SCHEMA_VERSION",
    "validate_envelope",
    "validate_payload",
]
