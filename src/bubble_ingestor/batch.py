"""Sync every data type the Bubble app exposes, one table after another."""

from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from .api_client import ApiClientError, SourceClient
from .fetcher import FetchError
from .logging_utils import new_run_id
from .models import DEFAULT_BATCH_LIMIT
from .store import StoreError
from .sync import SyncOrchestrator, SyncResult

LOGGER = logging.getLogger("bubble.ingestor.batch")


class DiscoveredTable(BaseModel):
    name: str
    has_data: bool


class TableSyncOutcome(BaseModel):
    table: str
    order: int
    success: bool
    result: Optional[SyncResult] = None
    error: Optional[str] = None
    duration: float = 0.0


class BatchSyncResult(BaseModel):
    run_id: str
    global_limit: int
    discovered: int = 0
    attempted: int = 0
    successful: int = 0
    failed: int = 0
    # Discovered tables left out by the filters.
    tables_skipped: int = 0
    synced: int = 0
    errors: int = 0
    skipped: int = 0
    results: List[TableSyncOutcome] = Field(default_factory=list)
    duration: float = 0.0

    def add(self, outcome: TableSyncOutcome) -> None:
        self.results.append(outcome)
        if outcome.result is None:
            self.failed += 1
            return
        self.successful += 1
        self.synced += outcome.result.synced
        self.errors += outcome.result.errors
        self.skipped += outcome.result.skipped


class BatchSyncError(Exception):
    """A table failed and the batch was told to stop; ``result`` holds what ran."""

    def __init__(self, message: str, result: BatchSyncResult) -> None:
        super().__init__(message)
        self.result = result


class BatchSyncRunner:
    """Discover data types through the meta endpoint, then run an incremental
    sync of each with the same record limit.

    Tables run sequentially. A table that fails to fetch either stops the
    batch (the default) or is recorded as failed while the rest carry on.
    """

    def __init__(self, client: SourceClient, orchestrator: SyncOrchestrator) -> None:
        self._client = client
        self._orchestrator = orchestrator

    async def discover(self, run_id: Optional[str] = None) -> List[DiscoveredTable]:
        try:
            names = await self._client.list_data_types()
        except ApiClientError as exc:
            LOGGER.error("[%s] Data type discovery failed: %s", run_id, exc)
            raise
        LOGGER.info("[%s] Meta endpoint lists %s data types", run_id, len(names))

        tables: List[DiscoveredTable] = []
        for name in names:
            try:
                page = await self._client.fetch_page(name, 0, 1)
            except ApiClientError as exc:
                LOGGER.warning("[%s] Data type %s is not accessible: %s", run_id, name, exc)
                continue
            tables.append(DiscoveredTable(name=name, has_data=bool(page.records)))

        LOGGER.info(
            "[%s] %s accessible data types, %s with data",
            run_id,
            len(tables),
            sum(1 for table in tables if table.has_data),
        )
        return tables

    async def sync_all(
        self,
        global_limit: int = DEFAULT_BATCH_LIMIT,
        only_with_data: bool = True,
        continue_on_error: bool = False,
        max_tables: Optional[int] = None,
        skip_tables: Iterable[str] = (),
    ) -> BatchSyncResult:
        run_id = new_run_id()
        started = time.monotonic()
        result = BatchSyncResult(run_id=run_id, global_limit=global_limit)
        LOGGER.info(
            "[%s] Starting batch sync (limit %s per table, only_with_data=%s, continue_on_error=%s)",
            run_id,
            global_limit,
            only_with_data,
            continue_on_error,
        )

        discovered = await self.discover(run_id)
        result.discovered = len(discovered)
        tables = _select(discovered, only_with_data, set(skip_tables), max_tables)
        result.attempted = len(tables)
        result.tables_skipped = result.discovered - result.attempted
        if not tables:
            LOGGER.warning("[%s] No tables left to sync after filtering", run_id)

        for order, table in enumerate(tables, start=1):
            LOGGER.info("[%s] Syncing table %s/%s: %s", run_id, order, len(tables), table.name)
            table_started = time.monotonic()
            try:
                table_result = await self._orchestrator.run_incremental_sync(
                    table.name, global_limit
                )
            except (FetchError, StoreError, SQLAlchemyError) as exc:
                result.add(
                    TableSyncOutcome(
                        table=table.name,
                        order=order,
                        success=False,
                        error=str(exc),
                        duration=time.monotonic() - table_started,
                    )
                )
                LOGGER.error("[%s] Table %s failed: %s", run_id, table.name, exc)
                if not continue_on_error:
                    result.duration = time.monotonic() - started
                    raise BatchSyncError(
                        f"Batch sync failed on table '{table.name}': {exc}", result
                    ) from exc
                LOGGER.warning(
                    "[%s] Continuing with %s remaining table(s)", run_id, len(tables) - order
                )
                continue
            result.add(
                TableSyncOutcome(
                    table=table.name,
                    order=order,
                    success=True,
                    result=table_result,
                    duration=time.monotonic() - table_started,
                )
            )

        result.duration = time.monotonic() - started
        LOGGER.info(
            "[%s] Batch sync finished in %.2fs: %s/%s tables succeeded, %s synced, %s errors",
            run_id,
            result.duration,
            result.successful,
            result.attempted,
            result.synced,
            result.errors,
        )
        return result


def _select(
    tables: List[DiscoveredTable],
    only_with_data: bool,
    skip: set,
    max_tables: Optional[int],
) -> List[DiscoveredTable]:
    selected = [
        table
        for table in tables
        if (table.has_data or not only_with_data) and table.name not in skip
    ]
    if max_tables is not None and max_tables > 0:
        selected = selected[:max_tables]
    return selected
