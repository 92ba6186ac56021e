"""Detect which column-naming convention a destination table uses."""

from __future__ import annotations

import enum
import logging
from typing import Dict, Iterable, Optional

from .store import DestinationStore

LOGGER = logging.getLogger("bubble.ingestor.mapping")


class Convention(str, enum.Enum):
    NORMALIZED = "normalized"
    RAW = "raw"


def classify_columns(column_names: Iterable[str]) -> Convention:
    """Raw tables keep Bubble field names verbatim, so any space or capital gives them away."""
    for name in column_names:
        if " " in name or any(char.isupper() for char in name):
            return Convention.RAW
    return Convention.NORMALIZED


class ConventionCache:
    """Per-table convention decisions.

    Callers that drop or recreate a destination table must call
    :meth:`invalidate` for it, or later mappings keep using the old answer.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Convention] = {}

    def get(self, table_name: str) -> Optional[Convention]:
        return self._entries.get(table_name)

    def put(self, table_name: str, convention: Convention) -> None:
        self._entries[table_name] = convention

    def invalidate(self, table_name: Optional[str] = None) -> None:
        if table_name is None:
            self._entries.clear()
        else:
            self._entries.pop(table_name, None)

    def __contains__(self, table_name: str) -> bool:
        return table_name in self._entries


class SchemaTypeDetector:
    def __init__(self, store: DestinationStore, cache: Optional[ConventionCache] = None) -> None:
        self._store = store
        self.cache = cache if cache is not None else ConventionCache()

    async def detect(self, table_name: str) -> Convention:
        cached = self.cache.get(table_name)
        if cached is not None:
            return cached

        columns = await self._store.table_columns(table_name)
        if not columns:
            # Not created yet; answer without caching so the real table is probed later.
            LOGGER.debug("Table %s has no columns; assuming normalized names", table_name)
            return Convention.NORMALIZED

        convention = classify_columns(columns)
        self.cache.put(table_name, convention)
        LOGGER.info("Detected %s column naming for %s", convention.value, table_name)
        return convention

    def invalidate(self, table_name: Optional[str] = None) -> None:
        self.cache.invalidate(table_name)
