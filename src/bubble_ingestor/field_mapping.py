"""Map Bubble records onto destination columns and column-friendly values."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from dateutil import parser as dtparse

from .conventions import Convention
from .naming import normalize_name
from .relationships import is_relationship_array

LOGGER = logging.getLogger("bubble.ingestor.mapping")

SOURCE_ID_FIELD = "_id"
ID_COLUMNS = {
    Convention.NORMALIZED: "bubble_id",
    Convention.RAW: "_id",
}

# 2024-05-01, 2024-05-01T10:20:30, 2024-05-01T10:20:30.123Z, 2024-05-01T10:20:30+08:00 ...
ISO_DATE_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}"
    r"(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d{1,6})?)?(?:Z|[+-]\d{2}(?::?\d{2})?)?)?$"
)


class MissingExternalIdError(ValueError):
    """Raised for records that carry no ``_id``."""


def id_column(convention: Convention) -> str:
    return ID_COLUMNS[convention]


def map_field(source_field: str, convention: Convention) -> str:
    if convention is Convention.RAW:
        return source_field
    return normalize_name(source_field)


def parse_timestamp(value: str) -> Optional[datetime]:
    if not ISO_DATE_PATTERN.match(value):
        return None
    try:
        return dtparse.isoparse(value)
    except (ValueError, OverflowError):
        LOGGER.debug("Date-like value %r failed to parse; keeping the string", value)
        return None


def coerce_value(value: Any, field_name: str = "") -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        parsed = parse_timestamp(value)
        return parsed if parsed is not None else value
    if isinstance(value, (list, tuple)):
        if is_relationship_array(value, field_name):
            return list(value)
        return json.dumps(list(value), default=str)
    if isinstance(value, Mapping):
        return json.dumps(dict(value), default=str)
    return value


@dataclass
class MappedRecord:
    external_id: str
    id_column: str
    values: Dict[str, Any] = field(default_factory=dict)
    # destination column -> source field it came from
    sources: Dict[str, str] = field(default_factory=dict)

    def row(self) -> Dict[str, Any]:
        return {self.id_column: self.external_id, **self.values}


def map_record(record: Mapping[str, Any], convention: Convention) -> MappedRecord:
    external_id = record.get(SOURCE_ID_FIELD) or record.get("id")
    if not isinstance(external_id, str) or not external_id:
        raise MissingExternalIdError("Record missing required _id field")

    mapped = MappedRecord(external_id=external_id, id_column=id_column(convention))
    for source_field, value in record.items():
        if source_field in (SOURCE_ID_FIELD, "id"):
            continue
        column_name = map_field(source_field, convention)
        if column_name == mapped.id_column:
            continue
        if column_name in mapped.sources:
            LOGGER.warning(
                "Fields %r and %r of record %s both map to column %s; keeping %r",
                mapped.sources[column_name],
                source_field,
                external_id,
                column_name,
                source_field,
            )
        mapped.values[column_name] = coerce_value(value, source_field)
        mapped.sources[column_name] = source_field
    return mapped
