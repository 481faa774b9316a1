"""
Column mapping: suggest which upload columns feed the canonical student
fields, and check a mapping against the headers it will be applied to.
"""

import re
from typing import Sequence

from app.schemas.imports import ColumnMapping
from app.services.import_errors import MappingError, MappingErrorKind

CANONICAL_FIELDS = ("name", "email", "phone")

# Synonyms are compared against the header lowercased with punctuation
# turned into spaces ("E-mail Address" → "e mail address").
FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "email": (
        "email",
        "e mail",
        "email address",
        "mail",
    ),
    "phone": (
        "phone",
        "phone number",
        "mobile",
        "mobile number",
        "cell",
        "contact",
        "contact number",
        "whatsapp",
        "tel",
        "telephone",
    ),
    "name": (
        "name",
        "full name",
        "student",
        "student name",
        "fullname",
    ),
}

# Synonyms this short only count as whole words: "tel" must not hit "hotel".
_WHOLE_WORD_MAX_LEN = 4


def _normalize_header(header: str) -> str:
    return " ".join(re.sub(r"[^0-9a-z]+", " ", header.lower()).split())


def _score(header: str, synonym: str) -> int:
    """
    How strongly a normalized header suggests a synonym, 0 if not at all.

    exact > header ends with the synonym > synonym anywhere in the header;
    longer synonyms beat shorter ones at the same level.
    """
    if header == synonym:
        return 1000 + len(synonym)
    words = header.split()
    if len(synonym) <= _WHOLE_WORD_MAX_LEN and " " not in synonym:
        if synonym not in words:
            return 0
        return 500 + len(synonym) if words[-1] == synonym else 100 + len(synonym)
    if header.endswith(synonym):
        return 500 + len(synonym)
    if synonym in header:
        return 100 + len(synonym)
    return 0


def infer_mapping(headers: Sequence[str]) -> ColumnMapping:
    """
    Suggest a mapping from headers. Best effort; never fails.

    Every (field, header) pair is scored, then assigned greedily from the
    strongest pair down, so one header feeds at most one field and each
    field takes at most one header. Ties go to the earlier header.
    """
    candidates: list[tuple[int, int, str, str]] = []
    for position, header in enumerate(headers):
        normalized = _normalize_header(header)
        if not normalized:
            continue
        for field in CANONICAL_FIELDS:
            best = max(_score(normalized, s) for s in FIELD_SYNONYMS[field])
            if best:
                candidates.append((best, position, field, header))

    # Highest score first; earlier column first on ties
    candidates.sort(key=lambda c: (-c[0], c[1]))

    chosen: dict[str, str] = {}
    used_headers: set[str] = set()
    for _score_value, _position, field, header in candidates:
        if field in chosen or header in used_headers:
            continue
        chosen[field] = header
        used_headers.add(header)

    return ColumnMapping(**chosen)


def validate_mapping(headers: Sequence[str], mapping: ColumnMapping) -> None:
    """
    Raise MappingError if the mapping cannot be applied to these headers.

      - MISSING_REQUIRED_FIELD: no column chosen for ``name``
      - UNKNOWN_COLUMN: a chosen column is not one of the headers
    """
    if not mapping.name:
        raise MappingError(
            MappingErrorKind.MISSING_REQUIRED_FIELD,
            "A column must be mapped to 'name'.",
        )

    known = set(headers)
    for field in CANONICAL_FIELDS:
        column = mapping.column_for(field)
        if column and column not in known:
            raise MappingError(
                MappingErrorKind.UNKNOWN_COLUMN,
                f"Column '{column}' mapped to '{field}' is not in the file headers.",
            )
