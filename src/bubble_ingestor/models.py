from __future__ import annotations

from dataclasses import dataclass

DEFAULT_API_URL = "https://eternalgy.bubbleapps.io"
DEFAULT_API_TIMEOUT = 30.0
DEFAULT_API_MAX_RETRIES = 3
DEFAULT_API_BACKOFF_FACTOR = 1.0
DEFAULT_API_BACKOFF_MAX = 30.0
DEFAULT_MAX_BATCH = 100
DEFAULT_REQUEST_DELAY = 0.3
DEFAULT_DB_CONNECT_TIMEOUT = 60.0
DEFAULT_SYNC_LIMIT = 100
DEFAULT_BATCH_LIMIT = 5


@dataclass(frozen=True)
class ApiConfig:
    url: str
    api_key: str
    timeout: float = DEFAULT_API_TIMEOUT
    max_retries: int = DEFAULT_API_MAX_RETRIES
    backoff_factor: float = DEFAULT_API_BACKOFF_FACTOR
    backoff_max: float = DEFAULT_API_BACKOFF_MAX
    max_batch: int = DEFAULT_MAX_BATCH
    request_delay: float = DEFAULT_REQUEST_DELAY


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    connect_timeout: float = DEFAULT_DB_CONNECT_TIMEOUT


@dataclass(frozen=True)
class SyncConfig:
    default_limit: int = DEFAULT_SYNC_LIMIT
    batch_limit: int = DEFAULT_BATCH_LIMIT


@dataclass(frozen=True)
class IngestionConfig:
    api: ApiConfig
    database: DatabaseConfig
    sync: SyncConfig = SyncConfig()
