"""
Contact value normalization utilities.

Used for import matching: every match key is produced here, so the
preview and the commit compare values the same way.
Keys are built by chaining the small helpers below.
"""

import re

from app.core.config import settings


def normalize_whitespace(value: str) -> str:
    """Collapse whitespace and strip."""
    return re.sub(r"\s+", " ", value.strip())


def normalize_case(value: str) -> str:
    """Lowercase for case-insensitive comparison."""
    return value.lower()


def normalize_identifier(value: str) -> str:
    """
    Standard identifier normalization chain.
    'Jane  DOE' → 'jane doe'
    '  Md.   Rahim  ' → 'md. rahim'
    """
    return normalize_case(normalize_whitespace(value))


# ─── Match Keys ───────────────────────────────────────────────

def normalize_name(value: str | None) -> str | None:
    """Name match key: trimmed, whitespace collapsed, lowercased."""
    if value is None:
        return None
    key = normalize_identifier(value)
    return key or None


def normalize_email(value: str | None) -> str | None:
    """Email match key: trimmed and lowercased."""
    if value is None:
        return None
    key = value.strip().lower()
    return key or None


def phone_digits(value: str | None) -> str:
    """
    Digits only.
    '+880 1712-345678' → '8801712345678'
    '(415) 555-1234'   → '4155551234'
    """
    if not value:
        return ""
    return re.sub(r"\D", "", value)


def phone_match_key(value: str | None, significant_digits: int | None = None) -> str | None:
    """
    Phone match key: the trailing significant digits.

    Country codes and trunk prefixes fall outside the window, so
    '+8801712345678' and '01712345678' share the key '12345678'.
    Numbers shorter than the window are not reliable enough to match on
    and produce no key.
    """
    digits = phone_digits(value)
    width = significant_digits or settings.PHONE_MATCH_DIGITS
    if len(digits) < width:
        return None
    return digits[-width:]


# ─── Validation ───────────────────────────────────────────────

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(value: str) -> bool:
    """Loose structural email check: one '@', a dotted domain, no spaces."""
    return bool(_EMAIL_PATTERN.match(value))
