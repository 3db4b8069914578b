"""
Identity resolution for transformed payloads.

Partitions each batch into rows already present in the destination and true
insertion candidates, using one lookup per key strategy per batch, and hands
out deterministic synthetic keys for unique columns the source lacks.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping, Sequence

from sqlalchemy import Integer, Table, and_, func, literal, select, tuple_, union_all, values
from sqlalchemy.engine import Connection
from sqlalchemy.sql import column as sql_column

from legacy_bridge.migrator.errors import SyntheticKeyExhausted
from legacy_bridge.migrator.mapping import EntityMapping
from legacy_bridge.migrator.pipeline.transform import TargetPayload

logger = logging.getLogger(__name__)

_FIRST_WEIGHTS = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_SECOND_WEIGHTS = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def _check_digit(digits: str, weights: Sequence[int]) -> str:
    total = sum(int(digit) * weight for digit, weight in zip(digits, weights))
    remainder = total % 11
    return "0" if remainder < 2 else str(11 - remainder)


def is_valid_check_digit_key(value: Any) -> bool:
    """Validate a 14-digit registry number (CNPJ layout, mod-11 check digits)."""
    if value is None:
        return False
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    if len(digits) != 14 or digits == digits[0] * 14:
        return False
    first = _check_digit(digits[:12], _FIRST_WEIGHTS)
    second = _check_digit(digits[:12] + first, _SECOND_WEIGHTS)
    return digits[12:] == first + second


def generate_check_digit_key(old_id: str, seed: int, values: Mapping[str, Any] | None = None) -> str:
    """
    Build a valid 14-digit key from a legacy id and a collision seed.

    The 8-digit root comes from the id and the 4-digit branch from the seed,
    so each (old_id, seed) pair always yields the same key; ``values`` is not
    consulted.
    """
    text = str(old_id).strip()
    number = int(text) if text.isdigit() else zlib.crc32(text.encode("utf-8"))
    root = f"{number % 100_000_000:08d}"
    branch = f"{(seed % 9999) + 1:04d}"
    base = root + branch
    first = _check_digit(base, _FIRST_WEIGHTS)
    second = _check_digit(base + first, _SECOND_WEIGHTS)
    return base + first + second


class SyntheticKeyAllocator:
    """
    Reserve unique values in memory before they reach the destination.

    ``taken`` maps each assigned key to the legacy id owning it, so a row
    re-run against its own earlier assignment keeps the same key.
    """

    def __init__(self, generator, *, max_attempts: int, validator=None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.generator = generator
        self.validator = validator
        self.max_attempts = max_attempts
        self.taken: dict[str, str] = {}

    def seed(self, pairs: Iterable[tuple[Any, Any]]) -> None:
        for key, owner in pairs:
            if key is None or str(key).strip() == "":
                continue
            self.taken.setdefault(str(key), str(owner))

    def is_free(self, key: str, old_id: str) -> bool:
        owner = self.taken.get(key)
        return owner is None or owner == old_id

    def allocate(self, old_id: str, preferred: Any = None, values: Mapping[str, Any] | None = None) -> str:
        if preferred is not None and (self.validator is None or self.validator(preferred)):
            candidate = str(preferred)
            if self.is_free(candidate, old_id):
                self.taken[candidate] = old_id
                return candidate
        for seed in range(self.max_attempts):
            candidate = self.generator(old_id, seed, values or {})
            if self.is_free(candidate, old_id):
                self.taken[candidate] = old_id
                return candidate
        raise SyntheticKeyExhausted(old_id, self.max_attempts)


class OldToNewMap:
    """Append-only legacy id → destination id map; the first writer wins."""

    def __init__(self) -> None:
        self._entries: dict[str, int] = {}

    def add(self, old_id: str, new_id: int) -> bool:
        if old_id in self._entries:
            return False
        self._entries[old_id] = int(new_id)
        return True

    def get(self, old_id: str) -> int | None:
        return self._entries.get(old_id)

    def __contains__(self, old_id: object) -> bool:
        return old_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def items(self) -> Iterator[tuple[str, int]]:
        return iter(self._entries.items())


def normalize_key_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(sep=" ")
    if isinstance(value, bool):
        return int(value)
    return value


@dataclass
class IdentityResolution:
    existing: list[tuple[TargetPayload, int]] = field(default_factory=list)
    candidates: list[TargetPayload] = field(default_factory=list)
    errored: list[tuple[TargetPayload, str]] = field(default_factory=list)
    duplicates: list[TargetPayload] = field(default_factory=list)
    demoted: int = 0


class IdentityResolver:
    """Resolve destination identity for one entity step."""

    def __init__(
        self,
        connection: Connection,
        table: Table,
        mapping: EntityMapping,
        *,
        tenant_id: int | None = None,
        max_synthetic_attempts: int = 50,
    ):
        self.connection = connection
        self.table = table
        self.mapping = mapping
        self.tenant_id = tenant_id
        self.seen_keys: dict[tuple, str] = {}
        self.claimed_ids: set[int] = set()
        self.allocator: SyntheticKeyAllocator | None = None
        if mapping.synthetic_key is not None:
            self.allocator = SyntheticKeyAllocator(
                mapping.synthetic_key.generator,
                max_attempts=max_synthetic_attempts,
                validator=mapping.synthetic_key.validator,
            )

    def prime(self) -> None:
        """Seed the synthetic key set from destination state (unique across tenants)."""
        if self.allocator is None:
            return
        key_column = self.table.c[self.mapping.synthetic_key.column]
        owner_column = self.table.c[self.mapping.destination_pk]
        with self.connection.begin():
            rows = self.connection.execute(select(key_column, owner_column).where(key_column.is_not(None))).all()
        self.allocator.seed(rows)
        logger.debug(
            "Seeded synthetic key set",
            extra={"migrator_entity": self.mapping.entity, "migrator_seeded_keys": len(rows)},
        )

    def natural_key(self, payload: TargetPayload) -> tuple | None:
        parts = tuple(payload.values.get(name) for name in self.mapping.natural_key.columns)
        if any(part is None or part == "" for part in parts):
            return None
        return tuple(normalize_key_value(part) for part in parts)

    def fallback_key(self, values: Mapping[str, Any]) -> tuple | None:
        fallback = self.mapping.fallback_key
        if fallback is None:
            return None
        parts = []
        for name in fallback.columns:
            value = values.get(name)
            if name in fallback.blank_as_empty and value is None:
                value = ""
            parts.append(normalize_key_value(value))
        return tuple(parts)

    def resolve(self, payloads: Sequence[TargetPayload]) -> IdentityResolution:
        resolution = IdentityResolution()
        natural_rows: list[tuple[tuple, tuple, TargetPayload]] = []
        fallback_rows: list[TargetPayload] = []

        for payload in payloads:
            if self.allocator is not None:
                column = self.mapping.synthetic_key.column
                try:
                    payload.values[column] = self.allocator.allocate(
                        payload.old_id, payload.values.get(column), payload.values
                    )
                except SyntheticKeyExhausted as exc:
                    resolution.errored.append((payload, str(exc)))
                    continue

            key = self.natural_key(payload)
            if key is not None:
                owner = self.seen_keys.get(key)
                if owner is not None and owner != payload.old_id:
                    nullable = self.mapping.natural_key.nullable_column
                    if nullable is None or self.mapping.fallback_key is None:
                        resolution.duplicates.append(payload)
                        continue
                    payload.values[nullable] = None
                    resolution.demoted += 1
                    key = None
                else:
                    self.seen_keys[key] = payload.old_id
            if key is not None:
                raw = tuple(payload.values[name] for name in self.mapping.natural_key.columns)
                natural_rows.append((key, raw, payload))
            elif self.mapping.fallback_key is not None:
                fallback_rows.append(payload)
            else:
                resolution.candidates.append(payload)

        found = self._lookup_natural([raw for _, raw, _ in natural_rows])
        for key, _, payload in natural_rows:
            new_id = found.get(key)
            if new_id is None:
                resolution.candidates.append(payload)
            else:
                self.claimed_ids.add(new_id)
                resolution.existing.append((payload, new_id))

        matches = self._lookup_fallback(fallback_rows)
        for index, payload in enumerate(fallback_rows):
            new_id = next((item for item in matches.get(index, ()) if item not in self.claimed_ids), None)
            if new_id is None:
                resolution.candidates.append(payload)
            else:
                self.claimed_ids.add(new_id)
                resolution.existing.append((payload, new_id))
        return resolution

    def _tenant_clause(self):
        column = self.mapping.destination_tenant_column
        if self.tenant_id is None or column is None:
            return None
        return self.table.c[column] == self.tenant_id

    def _lookup_natural(self, keys: list[tuple]) -> dict[tuple, int]:
        if not keys:
            return {}
        columns = [self.table.c[name] for name in self.mapping.natural_key.columns]
        pk = self.table.c[self.mapping.destination_pk]
        unique_keys = list(dict.fromkeys(keys))
        if len(columns) == 1:
            condition = columns[0].in_([key[0] for key in unique_keys])
        else:
            condition = tuple_(*columns).in_(unique_keys)
        query = select(pk, *columns).where(condition)
        tenant_clause = self._tenant_clause()
        if tenant_clause is not None:
            query = query.where(tenant_clause)
        with self.connection.begin():
            rows = self.connection.execute(query.order_by(pk)).all()
        found: dict[tuple, int] = {}
        for row in rows:
            key = tuple(normalize_key_value(value) for value in row[1:])
            found.setdefault(key, int(row[0]))
        return found

    def _lookup_fallback(self, payloads: list[TargetPayload]) -> dict[int, list[int]]:
        if not payloads:
            return {}
        fallback = self.mapping.fallback_key
        candidates = self._inline_candidates(payloads)
        conditions = []
        nullable = self.mapping.natural_key.nullable_column
        if nullable is not None:
            conditions.append(func.coalesce(self.table.c[nullable], "") == "")
        for name in fallback.columns:
            target = self.table.c[name]
            if name in fallback.blank_as_empty:
                conditions.append(func.coalesce(target, "") == func.coalesce(candidates.c[name], ""))
            else:
                conditions.append(target.is_not_distinct_from(candidates.c[name]))
        pk = self.table.c[self.mapping.destination_pk]
        query = select(candidates.c.idx, pk).select_from(candidates.join(self.table, and_(*conditions)))
        tenant_clause = self._tenant_clause()
        if tenant_clause is not None:
            query = query.where(tenant_clause)
        with self.connection.begin():
            rows = self.connection.execute(query.order_by(candidates.c.idx, pk)).all()
        matches: dict[int, list[int]] = {}
        for idx, new_id in rows:
            matches.setdefault(int(idx), []).append(int(new_id))
        return matches

    def _inline_candidates(self, payloads: list[TargetPayload]):
        """Build the batch's fallback keys as an inline relation named ``candidates``."""
        names = self.mapping.fallback_key.columns
        types = {name: self.table.c[name].type for name in names}
        if self.connection.dialect.name == "postgresql":
            relation = values(
                sql_column("idx", Integer),
                *(sql_column(name, types[name]) for name in names),
                name="candidates",
            ).data([(index, *(payload.values.get(name) for name in names)) for index, payload in enumerate(payloads)])
            return relation
        selects = [
            select(
                literal(index, Integer).label("idx"),
                *(literal(payload.values.get(name), types[name]).label(name) for name in names),
            )
            for index, payload in enumerate(payloads)
        ]
        if len(selects) == 1:
            return selects[0].subquery("candidates")
        return union_all(*selects).subquery("candidates")
