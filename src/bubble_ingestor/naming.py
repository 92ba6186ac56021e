"""Identifier helpers shared by the mapper, the store and the patch workflow."""

from __future__ import annotations

import re

MAX_IDENTIFIER_LENGTH = 63

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_UNSAFE_TABLE_CHARS_RE = re.compile(r"[^a-z0-9_]")


class InvalidIdentifierError(ValueError):
    """Raised for table or column names PostgreSQL cannot hold."""


def validate_identifier(name: str) -> str:
    """Accept any name the dialect can quote.

    Bubble field names carry arbitrary punctuation ("Paid?", "Status: Open",
    "2nd Payment %"); quoting makes those safe, so only empty names, NUL bytes
    and names past PostgreSQL's identifier limit are refused.
    """
    if not isinstance(name, str) or not name or "\x00" in name:
        raise InvalidIdentifierError(f"Refusing to use {name!r} as an SQL identifier")
    if len(name.encode("utf-8")) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(
            f"Identifier {name!r} exceeds {MAX_IDENTIFIER_LENGTH} bytes"
        )
    return name


def normalize_name(name: str) -> str:
    """Lower-case ``name`` and collapse every run of non-alphanumerics to ``_``."""
    return _NON_ALNUM_RE.sub("_", name.lower())


def safe_table_name(source_type: str) -> str:
    """Destination table name for a source data type."""
    return _UNSAFE_TABLE_CHARS_RE.sub("_", source_type.lower())


def title_case_guess(column_name: str) -> str:
    """Best-effort reverse of :func:`normalize_name`."""
    return " ".join(word[:1].upper() + word[1:] for word in column_name.split("_"))
