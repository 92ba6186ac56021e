"""
Shared fixtures: a throwaway SQLite database for the bookkeeping tables,
an in-memory destination store and a scripted Bubble source.
"""
from __future__ import annotations

from typing import Any, AsyncGenerator, Dict, List, Mapping, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from bubble_ingestor.api_client import (ApiClientError, ResourceNotFoundError,
                                        SourcePage)
from bubble_ingestor.conventions import SchemaTypeDetector
from bubble_ingestor.cursor_store import CursorStore
from bubble_ingestor.fetcher import PaginatedFetcher
from bubble_ingestor.patches import PendingPatchService
from bubble_ingestor.schema import metadata
from bubble_ingestor.store import StoreError, TableNotFoundError
from bubble_ingestor.sync import SyncOrchestrator
from bubble_ingestor.upsert import UpsertEngine


def make_id(n: int) -> str:
    """A Bubble-shaped record id: 13 digits, ``x``, 18 digits."""
    return f"{1700000000000 + n}x{n:018d}"


class FakeStore:
    """In-memory destination store that fails the way PostgreSQL words it."""

    def __init__(self) -> None:
        self.columns: Dict[str, Dict[str, str]] = {}
        self.rows: Dict[str, List[Dict[str, Any]]] = {}

    def create_table(self, table_name: str, columns: Mapping[str, str]) -> None:
        self.columns[table_name] = dict(columns)
        self.rows[table_name] = []

    def truncate(self, table_name: str) -> None:
        self.rows[table_name] = []

    def find(self, table_name: str, id_column: str, external_id: str) -> Optional[Dict[str, Any]]:
        for row in self.rows.get(table_name, []):
            if row.get(id_column) == external_id:
                return row
        return None

    async def table_columns(self, table_name: str) -> list[str]:
        return list(self.columns.get(table_name, {}))

    async def count_rows(self, table_name: str) -> int:
        if table_name not in self.columns:
            raise TableNotFoundError(f'relation "{table_name}" does not exist')
        return len(self.rows[table_name])

    async def row_exists(self, table_name: str, id_column: str, external_id: str) -> bool:
        self._require(table_name)
        return self.find(table_name, id_column, external_id) is not None

    async def insert_row(self, table_name: str, row: Mapping[str, Any]) -> None:
        self._require(table_name)
        self._check(table_name, row)
        self.rows[table_name].append(dict(row))

    async def update_row(
        self,
        table_name: str,
        id_column: str,
        external_id: str,
        values: Mapping[str, Any],
    ) -> None:
        self._require(table_name)
        self._check(table_name, values)
        row = self.find(table_name, id_column, external_id)
        if row is not None:
            row.update(values)

    async def add_column(self, table_name: str, column_name: str, column_type: str) -> None:
        self._require(table_name)
        self.columns[table_name].setdefault(column_name, column_type)

    async def alter_column_type(self, table_name: str, column_name: str, column_type: str) -> None:
        self._require(table_name)
        if column_name not in self.columns[table_name]:
            raise StoreError(f'column "{column_name}" of relation "{table_name}" does not exist')
        self.columns[table_name][column_name] = column_type

    def _require(self, table_name: str) -> None:
        if table_name not in self.columns:
            raise StoreError(f'relation "{table_name}" does not exist')

    def _check(self, table_name: str, values: Mapping[str, Any]) -> None:
        columns = self.columns[table_name]
        for name, value in values.items():
            if name not in columns:
                raise StoreError(f'column "{name}" of relation "{table_name}" does not exist')
            if columns[name] == "integer" and isinstance(value, float):
                raise StoreError(
                    f'column "{name}" is of type integer but expression is of type numeric'
                )


class FakeSourceClient:
    """Serves ``records`` per data type the way ``/obj/<type>`` pages them.

    ``data_types`` is what the meta endpoint lists (defaults to the keys of
    ``records``). Names in ``hidden`` answer 404; names in ``failing`` answer
    503 to every request except the single-record discovery probe.
    """

    def __init__(
        self,
        records: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        fail_at: Optional[int] = None,
    ) -> None:
        self.records = records or {}
        self.fail_at = fail_at
        self.data_types: Optional[List[str]] = None
        self.hidden: set = set()
        self.failing: set = set()
        self.calls: List[tuple] = []

    async def list_data_types(self) -> List[str]:
        if self.data_types is not None:
            return list(self.data_types)
        return list(self.records)

    async def fetch_page(self, table_name: str, cursor: int, limit: int) -> SourcePage:
        self.calls.append((table_name, cursor, limit))
        if table_name in self.hidden:
            raise ResourceNotFoundError("HTTP 404 for https://app.example.com/api/1.1/obj/" + table_name)
        failing = table_name in self.failing and limit > 1
        if failing or (self.fail_at is not None and cursor >= self.fail_at):
            raise ApiClientError("HTTP 503 for https://app.example.com/api/1.1/obj/" + table_name)
        records = self.records.get(table_name, [])
        page = records[cursor:cursor + limit]
        return SourcePage(
            results=page,
            cursor=cursor,
            count=len(page),
            remaining=max(0, len(records) - cursor - len(page)),
        )


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite file per test holding ``sync_cursors`` and ``pending_schema_patches``."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ingestor.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def source() -> FakeSourceClient:
    return FakeSourceClient()


@pytest.fixture
def cursors(engine: AsyncEngine, store: FakeStore) -> CursorStore:
    return CursorStore(engine, store)


@pytest.fixture
def patches(engine: AsyncEngine, store: FakeStore) -> PendingPatchService:
    return PendingPatchService(engine, store)


@pytest.fixture
def detector(store: FakeStore) -> SchemaTypeDetector:
    return SchemaTypeDetector(store)


@pytest.fixture
def upserts(store: FakeStore, detector: SchemaTypeDetector, patches: PendingPatchService) -> UpsertEngine:
    return UpsertEngine(store, detector, patches)


@pytest.fixture
def orchestrator(
    cursors: CursorStore,
    source: FakeSourceClient,
    upserts: UpsertEngine,
) -> SyncOrchestrator:
    fetcher = PaginatedFetcher(source, max_batch=100, request_delay=0)
    return SyncOrchestrator(cursors, fetcher, upserts, default_limit=100)


@pytest.fixture
def make_record():
    """Build a source record with a Bubble id derived from ``n``."""

    def _make(n: int, **fields: Any) -> Dict[str, Any]:
        return {"_id": make_id(n), **fields}

    return _make
