from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .api_client import ApiClientError, SourceClient
from .models import DEFAULT_MAX_BATCH, DEFAULT_REQUEST_DELAY

LOGGER = logging.getLogger("bubble.ingestor.fetch")


class FetchError(Exception):
    """A batch could not be fetched; nothing fetched so far is kept."""

    def __init__(self, table_name: str, cursor: int, message: str) -> None:
        super().__init__(f"Fetching {table_name} at cursor {cursor} failed: {message}")
        self.table_name = table_name
        self.cursor = cursor


@dataclass
class FetchResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    final_cursor: int = 0


class PaginatedFetcher:
    """Collect up to ``limit`` records in pages no larger than the source allows."""

    def __init__(
        self,
        client: SourceClient,
        max_batch: int = DEFAULT_MAX_BATCH,
        request_delay: float = DEFAULT_REQUEST_DELAY,
    ) -> None:
        if max_batch < 1:
            raise ValueError("max_batch must be at least 1")
        self._client = client
        self._max_batch = max_batch
        self._request_delay = request_delay

    async def fetch(self, table_name: str, start_cursor: int, limit: int) -> FetchResult:
        records: List[Dict[str, Any]] = []
        cursor = start_cursor
        remaining = max(0, limit)

        while remaining > 0:
            batch_size = min(remaining, self._max_batch)
            LOGGER.debug(
                "Fetching %s records of %s at cursor %s", batch_size, table_name, cursor
            )
            try:
                page = await self._client.fetch_page(table_name, cursor, batch_size)
            except ApiClientError as exc:
                LOGGER.error(
                    "Fetch of %s failed at cursor %s after %s records: %s",
                    table_name,
                    cursor,
                    len(records),
                    exc,
                )
                raise FetchError(table_name, cursor, str(exc)) from exc

            batch = page.records
            records.extend(batch)
            cursor += len(batch)
            remaining -= len(batch)

            if len(batch) < batch_size or page.remaining <= 0:
                break
            if remaining > 0 and self._request_delay > 0:
                await asyncio.sleep(self._request_delay)

        LOGGER.info(
            "Fetched %s records of %s (cursor %s -> %s)",
            len(records),
            table_name,
            start_cursor,
            cursor,
        )
        return FetchResult(records=records, final_cursor=cursor)
