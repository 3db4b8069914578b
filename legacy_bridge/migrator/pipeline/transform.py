"""
Row transformation primitives shared by every entity step.

Transforms are plain functions ``(row, context) -> TargetPayload`` that never
touch the database; the helpers here coerce legacy values into shapes the
destination accepts.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping

from legacy_bridge.migrator.errors import SkipRow

_SURROGATE_RE = re.compile("[\ud800-\udfff]")
_INT_RE = re.compile(r"(?:(?<![A-Za-z0-9_])-)?\d+")
_MILLISECOND_THRESHOLD = 1e12
REPLACEMENT_CHAR = "\ufffd"


@dataclass(frozen=True)
class PendingReference:
    """A pointer from ``column`` to the row whose legacy id is ``old_id``."""

    column: str
    old_id: str
    entity: str


@dataclass
class TargetPayload:
    """Destination column values for one source row plus engine bookkeeping."""

    old_id: str
    values: dict[str, Any]
    references: list[PendingReference] = field(default_factory=list)

    def reference(self, column: str, old_id: Any, entity: str) -> None:
        if old_id is None or str(old_id).strip() == "":
            return
        self.references.append(PendingReference(column=column, old_id=str(old_id).strip(), entity=entity))


def sanitize_text(value: Any) -> str | None:
    """Drop NUL characters and replace unpaired surrogates."""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    if "\x00" in text:
        text = text.replace("\x00", "")
    return _SURROGATE_RE.sub(REPLACEMENT_CHAR, text)


def sanitize_json(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, Mapping):
        return {sanitize_text(str(key)): sanitize_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_json(item) for item in value]
    return value


def parse_json_value(raw: Any, *, default: Callable[[], Any] = dict) -> Any:
    """
    Return a sanitized JSON structure of the same kind as ``default()``.

    Accepts native structures or string-encoded JSON. Anything absent,
    unparseable, or of the wrong kind yields ``default()``.
    """
    fallback = default()
    expected = type(fallback)
    value = raw
    if isinstance(raw, (bytes, bytearray)):
        value = raw.decode("utf-8", errors="replace")
    if isinstance(value, str):
        if not value.strip():
            return fallback
        try:
            value = json.loads(value)
        except ValueError:
            return fallback
    if isinstance(value, tuple):
        value = list(value)
    if not isinstance(value, expected):
        return fallback
    return sanitize_json(value)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Unify epoch seconds, epoch milliseconds and ISO strings into aware UTC datetimes.

    Numbers above 1e12 are treated as milliseconds. Malformed input yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    number: float | None = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            number = None
        if number is None:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parse_timestamp(parsed)
    if number is None:
        return None
    seconds = number / 1000.0 if abs(number) > _MILLISECOND_THRESHOLD else number
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def normalize_enum(value: Any, table: Mapping[str, str], default: str) -> str:
    """Look up a legacy code (case-insensitive); unknown codes map to ``default``."""
    if value is None:
        return default
    key = str(value).strip().lower()
    if not key:
        return default
    return table.get(key, default)


def to_int(value: Any, default: int | None = None) -> int | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def parse_step_to_int(value: Any) -> int | None:
    """Extract the first integer from free-form step identifiers like ``"step-12"``."""
    if value is None:
        return None
    match = _INT_RE.search(str(value).strip())
    return int(match.group(0)) if match else None


def safe_name(value: Any, fallback: str) -> str:
    text = sanitize_text(value)
    if text is None or not text.strip():
        return fallback
    return text.strip()


def require(row: Mapping[str, Any], *columns: str) -> None:
    """Raise SkipRow(missing_required) when any required column is empty."""
    missing = [column for column in columns if row.get(column) is None or str(row.get(column)).strip() == ""]
    if missing:
        raise SkipRow("missing_required", columns=missing)
