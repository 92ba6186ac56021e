"""Configuration loading for the Bubble ingestor."""

from __future__ import annotations

import os
from typing import Mapping, Optional

from dotenv import load_dotenv

from .models import (DEFAULT_API_BACKOFF_FACTOR, DEFAULT_API_BACKOFF_MAX,
                     DEFAULT_API_MAX_RETRIES, DEFAULT_API_TIMEOUT,
                     DEFAULT_API_URL, DEFAULT_BATCH_LIMIT,
                     DEFAULT_DB_CONNECT_TIMEOUT, DEFAULT_MAX_BATCH,
                     DEFAULT_REQUEST_DELAY,
                     DEFAULT_SYNC_LIMIT, ApiConfig, DatabaseConfig,
                     IngestionConfig, SyncConfig)


class ConfigurationError(RuntimeError):
    """Raised when the environment does not describe a usable configuration."""


def _int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _database_url(env: Mapping[str, str]) -> str:
    url = env.get("DATABASE_URL")
    if url:
        # Plain postgres URLs (as handed out by most hosts) need the async driver.
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://"):]
        if url.startswith("postgresql://"):
            url = "postgresql+asyncpg://" + url[len("postgresql://"):]
        return url

    pg_user = env.get("POSTGRES_USER")
    pg_password = env.get("POSTGRES_PASSWORD")
    pg_db = env.get("POSTGRES_DB")
    pg_host = env.get("POSTGRES_HOST", env.get("PGHOST", "localhost"))
    pg_port = env.get("POSTGRES_PORT", env.get("PGPORT", "5432"))
    if not (pg_user and pg_password and pg_db):
        raise ConfigurationError(
            "DATABASE_URL or POSTGRES_USER, POSTGRES_PASSWORD and POSTGRES_DB "
            "environment variables are required"
        )
    return f"postgresql+asyncpg://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"


def load_config(env: Optional[Mapping[str, str]] = None) -> IngestionConfig:
    """Load ingestion configuration from environment variables.

    ``env`` defaults to ``os.environ`` after a ``.env`` file (if any) has been
    merged into it.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    api_key = (env.get("BUBBLE_API_KEY") or "").strip()
    if not api_key:
        raise ConfigurationError("BUBBLE_API_KEY environment variable is required")

    api = ApiConfig(
        url=env.get("BUBBLE_BASE_URL", DEFAULT_API_URL).rstrip("/"),
        api_key=api_key,
        timeout=_float(env.get("BUBBLE_API_TIMEOUT"), DEFAULT_API_TIMEOUT),
        max_retries=max(0, _int(env.get("BUBBLE_API_MAX_RETRIES"), DEFAULT_API_MAX_RETRIES)),
        backoff_factor=_float(env.get("BUBBLE_API_BACKOFF_FACTOR"), DEFAULT_API_BACKOFF_FACTOR),
        backoff_max=_float(env.get("BUBBLE_API_BACKOFF_MAX"), DEFAULT_API_BACKOFF_MAX),
        # The Data API refuses pages above 100 records.
        max_batch=min(100, max(1, _int(env.get("BUBBLE_MAX_BATCH"), DEFAULT_MAX_BATCH))),
        request_delay=max(0.0, _float(env.get("BUBBLE_REQUEST_DELAY"), DEFAULT_REQUEST_DELAY)),
    )
    database = DatabaseConfig(
        url=_database_url(env),
        connect_timeout=_float(env.get("DATABASE_CONNECT_TIMEOUT"), DEFAULT_DB_CONNECT_TIMEOUT),
    )
    sync = SyncConfig(
        default_limit=max(1, _int(env.get("SYNC_DEFAULT_LIMIT"), DEFAULT_SYNC_LIMIT)),
        batch_limit=max(1, _int(env.get("SYNC_BATCH_LIMIT"), DEFAULT_BATCH_LIMIT)),
    )
    return IngestionConfig(api=api, database=database, sync=sync)
