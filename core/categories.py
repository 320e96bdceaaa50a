"""Per-category configuration records.

Every content category runs through the same pipeline; what differs is
captured here: the required fields and their types, the narrow projection
written to the metadata index, the secondary uniqueness key and whether tags
are normalised into the shared ``tags`` table.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from core.errors import ValidationError

_MONTH_RE = re.compile(r"^(\d{4}-(0[1-9]|1[0-2])|0?[1-9]|1[0-2])$")

# INTEGER fields land in Postgres INTEGER columns.
INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"  # ISO-8601 string or epoch seconds
    MONTH = "month"  # "YYYY-MM" or 1-12


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"epoch out of range: {value!r}") from exc
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ValueError(f"not a timestamp: {value!r}")


def coerce_value(value: Any, ftype: FieldType) -> Any:
    """Convert a payload value to its index representation or raise ValueError."""
    if ftype is FieldType.STRING:
        if isinstance(value, str) and value.strip():
            return value
        raise ValueError("expected a non-empty string")
    if ftype is FieldType.INTEGER:
        if isinstance(value, bool):
            raise ValueError("expected an integer")
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if not isinstance(value, int):
            raise ValueError("expected an integer")
        if not INT32_MIN <= value <= INT32_MAX:
            raise ValueError(f"integer out of range: {value}")
        return value
    if ftype is FieldType.NUMBER:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        raise ValueError("expected a number")
    if ftype is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        raise ValueError("expected a boolean")
    if ftype is FieldType.TIMESTAMP:
        return parse_timestamp(value)
    if ftype is FieldType.MONTH:
        if isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 12:
            return f"{value:02d}"
        if isinstance(value, str) and _MONTH_RE.match(value.strip()):
            text = value.strip()
            return text if "-" in text else f"{int(text):02d}"
        raise ValueError("expected YYYY-MM or a month number")
    raise ValueError(f"unknown field type {ftype}")


@dataclass(frozen=True)
class FieldSpec:
    """One indexed field: payload name, type, and column name."""

    name: str
    type: FieldType
    required: bool = True
    default: Any = None
    column: str | None = None

    @property
    def column_name(self) -> str:
        return self.column or self.name


@dataclass(frozen=True)
class CategoryConfig:
    name: str
    table: str
    fields: tuple[FieldSpec, ...]
    unique: tuple[str, ...] = ()
    tags: bool = False
    description: str = ""

    @property
    def prefix(self) -> str:
        return f"{self.name}/"

    @property
    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]

    @property
    def columns(self) -> list[str]:
        return ["id"] + [f.column_name for f in self.fields] + ["r2_key"]

    @property
    def tag_table(self) -> str:
        return f"{self.table}_tags"

    def validate(self, data: dict[str, Any]) -> dict[str, Any]:
        """Check required fields and build the column values for the index row.

        Optional fields with a missing or mistyped value fall back to their
        default. Fields not listed here are ignored.
        """
        row: dict[str, Any] = {}
        for spec in self.fields:
            value = data.get(spec.name)
            if spec.required:
                if value is None:
                    raise ValidationError(spec.name)
                try:
                    row[spec.column_name] = coerce_value(value, spec.type)
                except ValueError as exc:
                    raise ValidationError(spec.name, f"Missing or invalid field: {spec.name} ({exc})") from exc
                continue
            if value is None:
                row[spec.column_name] = spec.default
                continue
            try:
                row[spec.column_name] = coerce_value(value, spec.type)
            except ValueError:
                row[spec.column_name] = spec.default
        return row

    def extract_tags(self, data: dict[str, Any]) -> list[str]:
        if not self.tags:
            return []
        raw = data.get("tags")
        if not isinstance(raw, list):
            return []
        seen: list[str] = []
        for item in raw:
            if isinstance(item, str):
                name = item.strip().lower()
                if name and name not in seen:
                    seen.append(name)
        return seen


def _req(name: str, ftype: FieldType) -> FieldSpec:
    return FieldSpec(name=name, type=ftype)


def _opt(name: str, ftype: FieldType, default: Any = None) -> FieldSpec:
    return FieldSpec(name=name, type=ftype, required=False, default=default)


_PUBLISH = _opt("publish", FieldType.BOOLEAN, True)

CATEGORIES: dict[str, CategoryConfig] = {
    c.name: c
    for c in (
        CategoryConfig(
            name="chatter",
            table="chatter",
            fields=(
                _req("date_posted", FieldType.TIMESTAMP),
                _req("year", FieldType.INTEGER),
                _req("month", FieldType.MONTH),
                _req("slug", FieldType.STRING),
                _PUBLISH,
            ),
            unique=("slug",),
            tags=True,
            description="Short social posts, optionally located",
        ),
        CategoryConfig(
            name="checkins",
            table="checkins",
            fields=(
                _req("venue_id", FieldType.STRING),
                _req("latitude", FieldType.NUMBER),
                _req("longitude", FieldType.NUMBER),
                _req("datetime", FieldType.TIMESTAMP),
                _req("year", FieldType.INTEGER),
                _req("month", FieldType.MONTH),
                _req("slug", FieldType.STRING),
                _PUBLISH,
            ),
            unique=("slug",),
            description="Venue check-ins",
        ),
        CategoryConfig(
            name="films",
            table="films",
            fields=(
                _req("year", FieldType.INTEGER),
                _req("year_watched", FieldType.INTEGER),
                _req("date_watched", FieldType.TIMESTAMP),
                _req("month", FieldType.MONTH),
                _req("slug", FieldType.STRING),
                _opt("rewatch", FieldType.BOOLEAN, False),
                _PUBLISH,
                _opt("tmdb_id", FieldType.STRING),
                _opt("letterboxd_id", FieldType.STRING),
            ),
            unique=("slug",),
            description="Film diary entries",
        ),
        CategoryConfig(
            name="quotes",
            table="quotes",
            fields=(
                _req("author", FieldType.STRING),
                _req("date_added", FieldType.TIMESTAMP),
                _req("year", FieldType.INTEGER),
                _req("month", FieldType.MONTH),
                _req("slug", FieldType.STRING),
                _PUBLISH,
            ),
            unique=("slug",),
            tags=True,
            description="Collected quotations",
        ),
        CategoryConfig(
            name="shakespeare",
            table="shakespeare",
            fields=(
                _req("work_id", FieldType.STRING),
                _req("act", FieldType.INTEGER),
                _req("scene", FieldType.INTEGER),
                _req("character_id", FieldType.STRING),
                _req("word_count", FieldType.INTEGER),
                _req("timestamp", FieldType.TIMESTAMP),
            ),
            description="Shakespeare corpus paragraphs",
        ),
        CategoryConfig(
            name="topten",
            table="topten",
            fields=(
                _req("show", FieldType.STRING),
                _req("date", FieldType.STRING),
                _req("timestamp", FieldType.TIMESTAMP),
                _req("year", FieldType.INTEGER),
                _req("month", FieldType.MONTH),
                _req("slug", FieldType.STRING),
            ),
            unique=("slug",),
            description="Top ten lists from show episodes",
        ),
        CategoryConfig(
            name="photo",
            table="photographs",
            fields=(
                _req("original_name", FieldType.STRING),
                _req("cf_image_id", FieldType.STRING),
                _req("date_taken", FieldType.TIMESTAMP),
                _opt("latitude", FieldType.NUMBER),
                _opt("longitude", FieldType.NUMBER),
                _PUBLISH,
            ),
            tags=True,
            description="Photograph metadata; pixels live in the image service",
        ),
    )
}


def get_category(name: str) -> CategoryConfig:
    """Look up a category, raising ValidationError on the ``type`` field."""
    config = CATEGORIES.get(name)
    if config is None:
        raise ValidationError("type", f"Unsupported content type: {name!r}")
    return config


__all__ = [
    "CATEGORIES",
    "CategoryConfig",
    "FieldSpec",
    "FieldType",
    "coerce_value",
    "get_category",
    "parse_timestamp",
]
