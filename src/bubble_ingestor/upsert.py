"""Existence-checked writes of source records into their destination table."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .conventions import SchemaTypeDetector
from .field_mapping import SOURCE_ID_FIELD, MappedRecord, map_record
from .naming import safe_table_name
from .patches import PendingPatchService
from .store import DestinationStore, StoreError

LOGGER = logging.getLogger("bubble.ingestor.upsert")


class SyncMode(str, enum.Enum):
    FULL_REFRESH = "full_refresh"
    INCREMENTAL_INSERT_ONLY = "incremental"


class UpsertAction(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class UpsertOutcome:
    action: UpsertAction
    external_id: str


@dataclass(frozen=True)
class RecordFailure:
    external_id: Optional[str]
    message: str
    patch_request_id: Optional[int] = None


@dataclass
class BatchResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failures: List[RecordFailure] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return len(self.failures)

    @property
    def synced(self) -> int:
        return self.inserted + self.updated

    def count(self, outcome: UpsertOutcome) -> None:
        if outcome.action is UpsertAction.INSERTED:
            self.inserted += 1
        elif outcome.action is UpsertAction.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1


class UpsertEngine:
    """Write mapped records one at a time under a :class:`SyncMode` policy.

    ``upsert_one`` inserts or overwrites, ``insert_if_new`` never touches a
    row that already exists. Both go through the same convention detection and
    field mapping, so the two modes cannot drift apart.
    """

    def __init__(
        self,
        store: DestinationStore,
        detector: SchemaTypeDetector,
        patches: Optional[PendingPatchService] = None,
    ) -> None:
        self._store = store
        self._detector = detector
        self._patches = patches

    async def upsert_one(self, table_name: str, record: Mapping[str, Any]) -> UpsertOutcome:
        destination, mapped = await self._prepare(table_name, record)
        return await self._upsert_mapped(destination, mapped)

    async def insert_if_new(self, table_name: str, record: Mapping[str, Any]) -> UpsertOutcome:
        destination, mapped = await self._prepare(table_name, record)
        return await self._insert_mapped(destination, mapped)

    async def apply(
        self, table_name: str, record: Mapping[str, Any], mode: SyncMode
    ) -> UpsertOutcome:
        if mode is SyncMode.FULL_REFRESH:
            return await self.upsert_one(table_name, record)
        return await self.insert_if_new(table_name, record)

    async def sync_records(
        self,
        table_name: str,
        records: Iterable[Mapping[str, Any]],
        mode: SyncMode,
        run_id: Optional[str] = None,
    ) -> BatchResult:
        """Apply ``records`` in order; a failing record is counted, never raised."""
        destination = safe_table_name(table_name)
        batch = BatchResult()

        for record in records:
            external_id = record.get(SOURCE_ID_FIELD)
            mapped: Optional[MappedRecord] = None
            try:
                destination, mapped = await self._prepare(table_name, record)
                if mode is SyncMode.FULL_REFRESH:
                    outcome = await self._upsert_mapped(destination, mapped)
                else:
                    outcome = await self._insert_mapped(destination, mapped)
            except (StoreError, ValueError) as exc:
                message = str(exc)
                LOGGER.error(
                    "[%s] Failed to sync record %s into %s: %s",
                    run_id,
                    external_id,
                    destination,
                    message,
                )
                patch_id = await self._request_patch(
                    message, run_id, destination, mapped.sources if mapped else {}
                )
                batch.failures.append(
                    RecordFailure(
                        external_id=external_id,
                        message=message,
                        patch_request_id=patch_id,
                    )
                )
                continue
            batch.count(outcome)

        LOGGER.info(
            "[%s] %s: %s inserted, %s updated, %s skipped, %s errors",
            run_id,
            destination,
            batch.inserted,
            batch.updated,
            batch.skipped,
            batch.errors,
        )
        return batch

    async def _prepare(
        self, table_name: str, record: Mapping[str, Any]
    ) -> Tuple[str, MappedRecord]:
        destination = safe_table_name(table_name)
        convention = await self._detector.detect(destination)
        return destination, map_record(record, convention)

    async def _upsert_mapped(self, destination: str, mapped: MappedRecord) -> UpsertOutcome:
        if await self._store.row_exists(destination, mapped.id_column, mapped.external_id):
            await self._store.update_row(
                destination, mapped.id_column, mapped.external_id, mapped.values
            )
            LOGGER.debug("Updated %s in %s", mapped.external_id, destination)
            return UpsertOutcome(UpsertAction.UPDATED, mapped.external_id)
        await self._store.insert_row(destination, mapped.row())
        LOGGER.debug("Inserted %s into %s", mapped.external_id, destination)
        return UpsertOutcome(UpsertAction.INSERTED, mapped.external_id)

    async def _insert_mapped(self, destination: str, mapped: MappedRecord) -> UpsertOutcome:
        if await self._store.row_exists(destination, mapped.id_column, mapped.external_id):
            return UpsertOutcome(UpsertAction.SKIPPED, mapped.external_id)
        await self._store.insert_row(destination, mapped.row())
        LOGGER.debug("Inserted %s into %s", mapped.external_id, destination)
        return UpsertOutcome(UpsertAction.INSERTED, mapped.external_id)

    async def _request_patch(
        self,
        message: str,
        run_id: Optional[str],
        destination: str,
        field_sources: Dict[str, str],
    ) -> Optional[int]:
        if self._patches is None:
            return None
        try:
            request = await self._patches.create_pending_request(
                message,
                run_id,
                {"table": destination, "field_sources": field_sources},
            )
        except SQLAlchemyError as exc:
            LOGGER.warning("[%s] Could not record schema patch for %s: %s", run_id, destination, exc)
            return None
        return request.id if request is not None else None
