"""One sync run for one table: cursor, fetch, upsert, cursor."""

from __future__ import annotations

import enum
import logging
import time
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from .cursor_store import CursorStore
from .fetcher import FetchError, PaginatedFetcher
from .logging_utils import new_run_id
from .models import DEFAULT_SYNC_LIMIT
from .upsert import BatchResult, SyncMode, UpsertEngine

LOGGER = logging.getLogger("bubble.ingestor.sync")


class SyncState(str, enum.Enum):
    IDLE = "idle"
    FETCHING_CURSOR = "fetching_cursor"
    FETCHING = "fetching"
    UPSERTING = "upserting"
    UPDATING_CURSOR = "updating_cursor"
    DONE = "done"
    ERRORED = "errored"


class SyncResult(BaseModel):
    table: str
    mode: SyncMode
    run_id: str
    new_records: int = 0
    fetched: int = 0
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    previous_cursor: int = 0
    new_cursor: int = 0
    cursor_updated: bool = False
    state: SyncState = SyncState.IDLE
    duration: float = 0.0
    error_messages: List[str] = Field(default_factory=list)
    patch_request_ids: List[int] = Field(default_factory=list)

    def apply_batch(self, batch: BatchResult) -> None:
        self.new_records = batch.inserted
        self.synced = batch.synced
        self.skipped = batch.skipped
        self.errors = batch.errors
        self.error_messages = [failure.message for failure in batch.failures]
        self.patch_request_ids = sorted(
            {
                failure.patch_request_id
                for failure in batch.failures
                if failure.patch_request_id is not None
            }
        )


class SyncOrchestrator:
    """Run a table through ``Idle -> FetchingCursor -> Fetching -> Upserting
    -> UpdatingCursor -> Done``.

    A fetch failure moves the run to ``Errored`` and is raised to the caller.
    Record-level failures are absorbed by the upsert engine; when any occurred
    the run ends in ``Done`` with the cursor where it was, so the cursor only
    ever moves over batches that went through completely.
    """

    def __init__(
        self,
        cursors: CursorStore,
        fetcher: PaginatedFetcher,
        upserts: UpsertEngine,
        default_limit: int = DEFAULT_SYNC_LIMIT,
    ) -> None:
        self._cursors = cursors
        self._fetcher = fetcher
        self._upserts = upserts
        self._default_limit = default_limit
        self.state = SyncState.IDLE

    async def run_incremental_sync(self, table_name: str, limit: Optional[int] = None) -> SyncResult:
        return await self.run_sync(table_name, limit, SyncMode.INCREMENTAL_INSERT_ONLY)

    async def run_full_refresh(self, table_name: str, limit: Optional[int] = None) -> SyncResult:
        return await self.run_sync(table_name, limit, SyncMode.FULL_REFRESH)

    async def run_sync(
        self,
        table_name: str,
        limit: Optional[int] = None,
        mode: SyncMode = SyncMode.INCREMENTAL_INSERT_ONLY,
    ) -> SyncResult:
        run_id = new_run_id()
        limit = self._default_limit if limit is None else limit
        started = time.monotonic()
        result = SyncResult(table=table_name, mode=mode, run_id=run_id)
        self._enter(result, SyncState.IDLE)
        LOGGER.info("[%s] Starting %s sync of %s (limit %s)", run_id, mode.value, table_name, limit)

        self._enter(result, SyncState.FETCHING_CURSOR)
        result.previous_cursor = await self._cursors.get(table_name, run_id)
        result.new_cursor = result.previous_cursor
        # Full refresh rewrites what is already there, so it always starts at the top.
        start = 0 if mode is SyncMode.FULL_REFRESH else result.previous_cursor

        self._enter(result, SyncState.FETCHING)
        try:
            fetched = await self._fetcher.fetch(table_name, start, limit)
        except FetchError:
            self._enter(result, SyncState.ERRORED)
            result.duration = time.monotonic() - started
            LOGGER.error("[%s] Sync of %s aborted; cursor stays at %s", run_id, table_name, result.previous_cursor)
            raise
        result.fetched = len(fetched.records)

        self._enter(result, SyncState.UPSERTING)
        batch = await self._upserts.sync_records(table_name, fetched.records, mode, run_id)
        result.apply_batch(batch)

        if batch.errors:
            LOGGER.warning(
                "[%s] %s record(s) of %s failed; cursor not advanced",
                run_id,
                batch.errors,
                table_name,
            )
        elif mode is SyncMode.INCREMENTAL_INSERT_ONLY:
            self._enter(result, SyncState.UPDATING_CURSOR)
            await self._advance_cursor(result, batch.synced)

        self._enter(result, SyncState.DONE)
        result.duration = time.monotonic() - started
        LOGGER.info(
            "[%s] Finished %s in %.2fs: %s new, %s synced, %s skipped, %s errors, cursor %s -> %s",
            run_id,
            table_name,
            result.duration,
            result.new_records,
            result.synced,
            result.skipped,
            result.errors,
            result.previous_cursor,
            result.new_cursor,
        )
        return result

    async def _advance_cursor(self, result: SyncResult, synced: int) -> None:
        target = result.previous_cursor + synced
        try:
            await self._cursors.set(result.table, target, result.run_id)
        except SQLAlchemyError as exc:
            LOGGER.error(
                "[%s] Could not store cursor %s for %s: %s",
                result.run_id,
                target,
                result.table,
                exc,
            )
            return
        result.new_cursor = target
        result.cursor_updated = True

    def _enter(self, result: SyncResult, state: SyncState) -> None:
        self.state = state
        result.state = state
        LOGGER.debug("[%s] %s -> %s", result.run_id, result.table, state.value)
