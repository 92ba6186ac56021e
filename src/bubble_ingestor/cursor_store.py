from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .naming import safe_table_name
from .schema import sync_cursors
from .store import DestinationStore, StoreError, TableNotFoundError

LOGGER = logging.getLogger("bubble.ingestor.cursor")

CORRECTION_MARKER = "auto_correct"
RESET_MARKER = "manual_reset"
SET_MARKER = "manual_set"
MANUAL_MARKERS = (RESET_MARKER, SET_MARKER)


@dataclass(frozen=True)
class CursorRecord:
    table_name: str
    last_cursor: int
    last_sync_at: Optional[datetime]
    sync_run_id: Optional[str]


@dataclass(frozen=True)
class CursorStatus:
    record: CursorRecord
    actual: Optional[int]
    error: Optional[str] = None

    @property
    def aligned(self) -> bool:
        return self.actual is not None and self.actual == self.record.last_cursor

    @property
    def difference(self) -> Optional[int]:
        if self.actual is None:
            return None
        return self.actual - self.record.last_cursor


class CursorStore:
    """Per-table count of source records already retrieved.

    Every :meth:`get` compares the stored value with the number of rows
    actually present in the destination table and adopts the latter when they
    disagree, so manual deletes or a half-applied migration heal themselves on
    the next run. Cursors placed by :meth:`reset` or a manual :meth:`set` are
    taken as they are until a sync run writes over them.
    """

    def __init__(self, engine: AsyncEngine, store: DestinationStore) -> None:
        self._engine = engine
        self._store = store

    async def get(self, table_name: str, run_id: Optional[str] = None) -> int:
        try:
            record = await self.stored(table_name)
            stored = record.last_cursor if record is not None else 0
            if record is not None and record.sync_run_id in MANUAL_MARKERS:
                # An operator placed this cursor; honour it until a sync moves it.
                LOGGER.info(
                    "[%s] Cursor for %s pinned at %s (%s)",
                    run_id,
                    table_name,
                    stored,
                    record.sync_run_id,
                )
                return stored
            actual = await self.detect_actual(table_name)
        except (SQLAlchemyError, StoreError, OSError, ValueError) as exc:
            LOGGER.warning(
                "[%s] Cursor lookup for %s failed, starting from 0: %s",
                run_id,
                table_name,
                exc,
            )
            return 0

        if actual == stored:
            LOGGER.info("[%s] Cursor for %s at %s", run_id, table_name, stored)
            return stored

        LOGGER.warning(
            "[%s] Cursor for %s drifted: stored %s, destination holds %s rows; correcting",
            run_id,
            table_name,
            stored,
            actual,
        )
        marker = f"{CORRECTION_MARKER}_{run_id}" if run_id else CORRECTION_MARKER
        try:
            await self.set(table_name, actual, marker)
        except SQLAlchemyError as exc:
            LOGGER.warning("[%s] Could not persist cursor correction for %s: %s", run_id, table_name, exc)
        return actual

    async def detect_actual(self, table_name: str) -> int:
        try:
            return await self._store.count_rows(safe_table_name(table_name))
        except TableNotFoundError:
            return 0

    async def stored(self, table_name: str) -> Optional[CursorRecord]:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(
                    select(sync_cursors).where(sync_cursors.c.table_name == table_name)
                )
            ).mappings().first()
        return _record(row) if row is not None else None

    async def set(self, table_name: str, value: int, run_id: Optional[str] = None) -> None:
        if value < 0:
            raise ValueError(f"Cursor for {table_name} cannot be negative (got {value})")

        now = datetime.now(timezone.utc)
        values = {
            "last_cursor": value,
            "last_sync_at": now,
            "sync_run_id": run_id or SET_MARKER,
            "updated_at": now,
        }
        async with self._engine.begin() as conn:
            existing = (
                await conn.execute(
                    select(sync_cursors.c.id).where(sync_cursors.c.table_name == table_name)
                )
            ).first()
            if existing is None:
                await conn.execute(
                    sync_cursors.insert().values(table_name=table_name, created_at=now, **values)
                )
            else:
                await conn.execute(
                    update(sync_cursors)
                    .where(sync_cursors.c.table_name == table_name)
                    .values(**values)
                )
        LOGGER.info("Cursor for %s set to %s (%s)", table_name, value, values["sync_run_id"])

    async def reset(self, table_name: str, run_id: Optional[str] = None) -> None:
        await self.set(table_name, 0, run_id or RESET_MARKER)

    async def list_cursors(self) -> List[CursorStatus]:
        async with self._engine.connect() as conn:
            rows = (
                await conn.execute(select(sync_cursors).order_by(sync_cursors.c.table_name))
            ).mappings().all()

        statuses: List[CursorStatus] = []
        for row in rows:
            record = _record(row)
            try:
                actual = await self.detect_actual(record.table_name)
            except (SQLAlchemyError, StoreError, ValueError) as exc:
                statuses.append(CursorStatus(record=record, actual=None, error=str(exc)))
                continue
            statuses.append(CursorStatus(record=record, actual=actual))
        return statuses


def _record(row) -> CursorRecord:
    return CursorRecord(
        table_name=row["table_name"],
        last_cursor=row["last_cursor"],
        last_sync_at=row["last_sync_at"],
        sync_run_id=row["sync_run_id"],
    )
