from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from .api_client import BubbleApiClient
from .batch import BatchSyncRunner
from .conventions import SchemaTypeDetector
from .cursor_store import CursorStore
from .db_connector import DatabaseSession
from .fetcher import PaginatedFetcher
from .models import IngestionConfig
from .patches import PendingPatchService
from .store import SqlAlchemyStore
from .sync import SyncOrchestrator
from .upsert import UpsertEngine

LOGGER = logging.getLogger("bubble.ingestor")


@dataclass
class IngestorServices:
    engine: AsyncEngine
    store: SqlAlchemyStore
    cursors: CursorStore
    patches: PendingPatchService
    detector: SchemaTypeDetector
    orchestrator: Optional[SyncOrchestrator] = None
    batch: Optional[BatchSyncRunner] = None


def build_services(engine: AsyncEngine) -> IngestorServices:
    store = SqlAlchemyStore(engine)
    return IngestorServices(
        engine=engine,
        store=store,
        cursors=CursorStore(engine, store),
        patches=PendingPatchService(engine, store),
        detector=SchemaTypeDetector(store),
    )


def build_orchestrator(
    services: IngestorServices, client: BubbleApiClient, config: IngestionConfig
) -> SyncOrchestrator:
    fetcher = PaginatedFetcher(
        client,
        max_batch=config.api.max_batch,
        request_delay=config.api.request_delay,
    )
    upserts = UpsertEngine(services.store, services.detector, services.patches)
    return SyncOrchestrator(
        services.cursors,
        fetcher,
        upserts,
        default_limit=config.sync.default_limit,
    )


@asynccontextmanager
async def open_services(
    config: IngestionConfig,
    with_source: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[IngestorServices]:
    """Connect to the database (and the source, if asked) for the duration of the block."""
    session = DatabaseSession(config.database)
    engine = await session.open()
    try:
        await session.ensure_schema()
        services = build_services(engine)
        if not with_source:
            yield services
            return
        async with BubbleApiClient(config.api, transport=transport) as client:
            services.orchestrator = build_orchestrator(services, client, config)
            services.batch = BatchSyncRunner(client, services.orchestrator)
            yield services
    finally:
        await session.dispose()
        LOGGER.debug("Database engine disposed")
