"""
Matcher: decide, row by row, whether an incoming contact matches an
existing student, should create a new one, or should be skipped.

Classification never touches the store. ``build_index`` reads the store
once, in bulk, and everything after that works on the in-memory
snapshot it returns, so a preview can be recomputed as often as the
mapping changes.

Match keys (see normalization.py):
  email  trimmed, lowercased
  phone  last PHONE_MATCH_DIGITS digits
  name   trimmed, whitespace collapsed, lowercased

In-file duplicates: a row sharing any match key, or the matched
student, with an earlier row of the same file is a duplicate. The first
occurrence wins.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping

from app.schemas.imports import ColumnMapping, ImportOptions, MatchingStats, MatchStrategy
from app.services.entity_store import EntityRef, EntityStore, KeyField
from app.services.normalization import normalize_email, normalize_name, phone_match_key

STRATEGY_FIELDS: dict[MatchStrategy, tuple[KeyField, ...]] = {
    MatchStrategy.EMAIL: ("email",),
    MatchStrategy.PHONE: ("phone",),
    MatchStrategy.NAME: ("name",),
    # Email is consulted first
    MatchStrategy.EMAIL_OR_PHONE: ("email", "phone"),
}

_KEY_FUNCTIONS = {
    "email": normalize_email,
    "phone": phone_match_key,
    "name": normalize_name,
}


class Classification(str, Enum):
    WILL_MATCH = "will_match"
    WILL_CREATE = "will_create"
    WILL_SKIP = "will_skip"


class SkipReason(str, Enum):
    MISSING_KEY = "missing_key"
    DUPLICATE = "duplicate"
    CREATION_DISABLED = "creation_disabled"
    MISSING_NAME = "missing_name"


MatchKey = tuple[KeyField, str]


@dataclass(frozen=True)
class RowDecision:
    classification: Classification
    keys: tuple[MatchKey, ...] = ()
    entity: EntityRef | None = None
    duplicate: bool = False
    reason: SkipReason | None = None


# ─── Row Access ───────────────────────────────────────────────

def row_fields(row: Mapping[str, str], mapping: ColumnMapping) -> dict[str, str | None]:
    """Canonical field → raw cell value, for the fields the mapping covers."""
    fields: dict[str, str | None] = {}
    for name in ("name", "email", "phone"):
        column = mapping.column_for(name)
        value = row.get(column, "") if column else ""
        fields[name] = value.strip() or None
    return fields


def row_keys(
    row: Mapping[str, str],
    mapping: ColumnMapping,
    strategy: MatchStrategy,
) -> tuple[MatchKey, ...]:
    """Usable match keys of a row, in the order the strategy consults them."""
    fields = row_fields(row, mapping)
    keys: list[MatchKey] = []
    for key_field in STRATEGY_FIELDS[strategy]:
        key = _KEY_FUNCTIONS[key_field](fields[key_field])
        if key:
            keys.append((key_field, key))
    return tuple(keys)


# ─── Existing Index ───────────────────────────────────────────

@dataclass
class ExistingIndex:
    """Point-in-time view of existing students, keyed by normalized value."""
    by_field: dict[str, dict[str, EntityRef]] = field(default_factory=dict)

    def lookup(self, key: MatchKey) -> EntityRef | None:
        key_field, value = key
        return self.by_field.get(key_field, {}).get(value)

    def add(self, key: MatchKey, entity: EntityRef) -> None:
        key_field, value = key
        self.by_field.setdefault(key_field, {})[value] = entity


async def build_index(
    store: EntityStore,
    rows: Iterable[Mapping[str, str]],
    mapping: ColumnMapping,
    strategy: MatchStrategy,
) -> ExistingIndex:
    """Look up every key the rows carry with one bulk query per field."""
    wanted: dict[KeyField, set[str]] = {f: set() for f in STRATEGY_FIELDS[strategy]}
    for row in rows:
        for key_field, key in row_keys(row, mapping, strategy):
            wanted[key_field].add(key)

    index = ExistingIndex()
    for key_field, keys in wanted.items():
        if keys:
            index.by_field[key_field] = await store.find_by_normalized_keys(key_field, keys)
    return index


# ─── Classification ───────────────────────────────────────────

class RowClassifier:
    """
    Classifies the rows of one file in order.

    Holds the first-occurrence state, so one classifier serves exactly
    one pass over a file. During a commit, ``resolve`` reports which
    student a row ended up with; later duplicates then follow it.
    """

    def __init__(self, mapping: ColumnMapping, options: ImportOptions):
        self.mapping = mapping
        self.options = options
        # key → student resolved by the first row carrying it (None while unknown)
        self._seen: dict[MatchKey, EntityRef | None] = {}
        # keys whose first row is set to create a student not yet written
        self._pending: set[MatchKey] = set()
        self._claimed: set[uuid.UUID] = set()

    def classify(self, row: Mapping[str, str], index: ExistingIndex) -> RowDecision:
        keys = row_keys(row, self.mapping, self.options.match_strategy)
        if not keys:
            return RowDecision(Classification.WILL_SKIP, reason=SkipReason.MISSING_KEY)

        duplicate = any(k in self._seen for k in keys)

        entity = next((e for e in map(index.lookup, keys) if e is not None), None)
        if entity is None and duplicate:
            entity = next((self._seen[k] for k in keys if self._seen.get(k) is not None), None)
        if entity is not None and entity.id in self._claimed:
            duplicate = True
        pending = entity is None and any(k in self._pending for k in keys)

        if (
            entity is None
            and not pending
            and self.options.create_new_entities
            and not (duplicate and self.options.skip_duplicates)
            and row_fields(row, self.mapping)["name"] is None
        ):
            # Creation would fail; the keys stay free for a later named row
            return RowDecision(
                Classification.WILL_SKIP,
                keys=keys,
                duplicate=duplicate,
                reason=SkipReason.MISSING_NAME,
            )

        self._remember_keys(keys, entity)

        if duplicate and self.options.skip_duplicates:
            return RowDecision(
                Classification.WILL_SKIP,
                keys=keys,
                entity=entity,
                duplicate=True,
                reason=SkipReason.DUPLICATE,
            )

        if entity is not None or pending:
            if entity is not None:
                self._claimed.add(entity.id)
            return RowDecision(Classification.WILL_MATCH, keys=keys, entity=entity, duplicate=duplicate)

        if not self.options.create_new_entities:
            return RowDecision(
                Classification.WILL_SKIP,
                keys=keys,
                duplicate=duplicate,
                reason=SkipReason.CREATION_DISABLED,
            )

        self._pending.update(keys)
        return RowDecision(Classification.WILL_CREATE, keys=keys, duplicate=duplicate)

    def resolve(self, decision: RowDecision, entity: EntityRef | None) -> None:
        """
        Record the outcome of a created row.

        ``entity`` is None when the write failed; a later row with the
        same key then gets its own chance to create.
        """
        self._pending.difference_update(decision.keys)
        if entity is None:
            return
        self._claimed.add(entity.id)
        for key in decision.keys:
            self._seen[key] = entity

    def _remember_keys(self, keys: tuple[MatchKey, ...], entity: EntityRef | None) -> None:
        for key in keys:
            if self._seen.get(key) is None:
                self._seen[key] = entity


def preview(
    rows: Iterable[Mapping[str, str]],
    mapping: ColumnMapping,
    options: ImportOptions,
    index: ExistingIndex,
) -> MatchingStats:
    """Dry-run classification counts. Deterministic for a given index."""
    classifier = RowClassifier(mapping, options)
    stats = MatchingStats()
    for row in rows:
        decision = classifier.classify(row, index)
        if decision.classification == Classification.WILL_MATCH:
            stats.will_match += 1
        elif decision.classification == Classification.WILL_CREATE:
            stats.will_create += 1
        else:
            stats.will_skip += 1
        if decision.duplicate:
            stats.duplicates += 1
    return stats
