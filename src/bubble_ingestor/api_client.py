"""Async HTTP client for the Bubble Data API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import ApiConfig

LOGGER = logging.getLogger("bubble.ingestor.api")

RETRYABLE_STATUS_CODES = frozenset({408, 429})


class ApiClientError(Exception):
    """Base exception for Bubble API client errors."""


class ResourceNotFoundError(ApiClientError):
    """Raised when a requested data type does not exist."""


class SourcePage(BaseModel):
    """One page of records as returned under ``response`` by ``/obj/<type>``."""

    results: List[Dict[str, Any]] = Field(default_factory=list)
    remaining: int = 0
    cursor: int = 0
    count: Optional[int] = None

    model_config = ConfigDict(extra="allow")

    @property
    def records(self) -> List[Dict[str, Any]]:
        return self.results


class SourceClient(Protocol):
    async def fetch_page(self, table_name: str, cursor: int, limit: int) -> SourcePage: ...

    async def list_data_types(self) -> List[str]: ...


class BubbleApiClient:
    """Async client with retry and backoff logic for the Bubble Data API."""

    def __init__(self, config: ApiConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {config.api_key}",
        }

    async def __aenter__(self) -> "BubbleApiClient":
        self._client = httpx.AsyncClient(timeout=self._config.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_page(self, table_name: str, cursor: int, limit: int) -> SourcePage:
        payload = await self._request_json(
            f"api/1.1/obj/{table_name}",
            params={"cursor": cursor, "limit": min(limit, self._config.max_batch)},
        )
        response = payload.get("response") if isinstance(payload, Mapping) else None
        if not isinstance(response, Mapping):
            raise ApiClientError(
                f"Data type {table_name} returned unexpected payload: {_preview(payload)}"
            )
        try:
            return SourcePage.model_validate(response)
        except ValidationError as exc:
            raise ApiClientError(f"Data type {table_name} returned malformed page: {exc}") from exc

    async def list_data_types(self) -> List[str]:
        """Names of every data type the app exposes, from ``/api/1.1/meta``."""
        payload = await self._request_json("api/1.1/meta")
        names = payload.get("get") if isinstance(payload, Mapping) else None
        if not isinstance(names, list) or not all(isinstance(name, str) for name in names):
            raise ApiClientError(f"Meta endpoint returned unexpected payload: {_preview(payload)}")
        return names

    async def _request_json(
        self, path: str, params: Optional[Mapping[str, Any]] = None
    ) -> Any:
        if self._client is None:
            raise RuntimeError("HTTP client is not ready")

        url = f"{self._config.url.rstrip('/')}/{path.lstrip('/')}"
        attempts = max(1, self._config.max_retries + 1)
        for attempt, delay in enumerate(self._retry_delays(attempts), start=1):
            try:
                return await self._get_json(url, params)
            except _TransientError as exc:
                if delay is None:
                    LOGGER.error("%s; giving up after %s attempts", exc, attempts)
                    raise ApiClientError(str(exc)) from exc.__cause__
                LOGGER.warning(
                    "%s (attempt %s/%s); retrying in %.1fs", exc, attempt, attempts, delay
                )
                await asyncio.sleep(delay)
        raise AssertionError("retry schedule ended without a final attempt")

    async def _get_json(self, url: str, params: Optional[Mapping[str, Any]]) -> Any:
        LOGGER.debug("GET %s %s", url, dict(params or {}))
        try:
            response = await self._client.get(url, headers=self._headers, params=params)
        except httpx.RequestError as exc:
            raise _TransientError(f"Network error for {url}: {exc}") from exc

        if response.is_success:
            return response.json()

        status = response.status_code
        preview = response.text[:500]
        message = f"HTTP {status} for {url}"
        if preview:
            message += f"; response preview: {preview}"
        if status == 404:
            LOGGER.warning("Resource not found at %s (preview: %s)", url, preview)
            raise ResourceNotFoundError(message)
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            raise _TransientError(message)
        LOGGER.error("%s", message)
        raise ApiClientError(message)

    def _retry_delays(self, attempts: int) -> Iterator[Optional[float]]:
        """Pause after each failed attempt, doubling up to ``backoff_max``; ``None`` after the last."""
        delay = max(self._config.backoff_factor, 0.0) or 1.0
        ceiling = self._config.backoff_max if self._config.backoff_max > 0 else float("inf")
        for _ in range(attempts - 1):
            yield min(delay, ceiling)
            delay *= 2
        yield None


class _TransientError(Exception):
    """A network error or retryable status; the request may be attempted again."""


def _preview(payload: Any) -> str:
    text = str(payload)
    return text if len(text) <= 500 else text[:500] + "…"
