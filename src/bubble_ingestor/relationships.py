"""Classify array values as lists of linked record ids or opaque data."""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

LOGGER = logging.getLogger("bubble.ingestor.mapping")

# Bubble record ids: a millisecond timestamp, a literal "x", then a long
# random suffix, e.g. "1700000000000x123456789012345678".
EXTERNAL_ID_SEPARATOR = "x"
EXTERNAL_ID_PATTERN = re.compile(r"^\d{10,}%s\d{15,}$" % EXTERNAL_ID_SEPARATOR)
LOOSE_ID_PATTERN = re.compile(r"^\d+%s\d+$" % EXTERNAL_ID_SEPARATOR)
LONG_STRING_THRESHOLD = 20

RELATIONSHIP_KEYWORDS = (
    "linked",
    "related",
    "list",
    "ids",
    "users",
    "agents",
    "customers",
    "contacts",
    "invoices",
    "items",
    "products",
    "payments",
    "members",
)


def is_external_id(value: Any) -> bool:
    return isinstance(value, str) and EXTERNAL_ID_PATTERN.match(value) is not None


def _name_suggests_relationship(field_name: str) -> bool:
    lowered = field_name.lower()
    return any(keyword in lowered for keyword in RELATIONSHIP_KEYWORDS)


def is_relationship_array(values: Sequence[Any], field_name: str) -> bool:
    """Return True when ``values`` looks like a list of linked record ids.

    The source sends linked records and plain lists with the same wire shape,
    so the decision is heuristic, checked in order of confidence:

    1. every element is a full external id;
    2. the field name suggests a relationship and the first element is id-like;
    3. every element is a string longer than ``LONG_STRING_THRESHOLD``.
    """
    if not values:
        return False

    if all(is_external_id(value) for value in values):
        return True

    first = values[0]
    if (
        _name_suggests_relationship(field_name)
        and isinstance(first, str)
        and LOOSE_ID_PATTERN.match(first)
    ):
        LOGGER.debug("Field %r classified as relationship by name", field_name)
        return True

    if all(isinstance(value, str) and len(value) > LONG_STRING_THRESHOLD for value in values):
        LOGGER.debug(
            "Field %r classified as relationship by value length (sample %r); review",
            field_name,
            first,
        )
        return True

    return False
