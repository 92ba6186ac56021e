"""Bookkeeping tables owned by the ingestor itself."""

from __future__ import annotations

from sqlalchemy import (Column, DateTime, Index, Integer, MetaData, Table,
                        Text, func, text)

metadata = MetaData()

sync_cursors = Table(
    "sync_cursors",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("table_name", Text, nullable=False, unique=True),
    Column("last_cursor", Integer, nullable=False, server_default=text("0")),
    Column("last_sync_at", DateTime(timezone=True), server_default=func.now()),
    Column("sync_run_id", Text),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    comment="Number of source records already retrieved, per destination table",
)

pending_schema_patches = Table(
    "pending_schema_patches",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("table_name", Text, nullable=False),
    Column("field_name", Text, nullable=False),
    Column("original_field_name", Text),
    Column("suggested_type", Text, nullable=False),
    Column("error_message", Text),
    Column("status", Text, nullable=False, server_default=text("'pending'")),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("approved_at", DateTime(timezone=True)),
    Column("approved_by", Text),
    Column("executed_at", DateTime(timezone=True)),
    Column("execution_result", Text),
    Column("sync_run_id", Text),
    comment="Schema changes proposed by failed syncs, awaiting approval",
)

# Only one open request per column; settled requests do not block new ones.
Index(
    "uq_pending_schema_patches_open",
    pending_schema_patches.c.table_name,
    pending_schema_patches.c.field_name,
    unique=True,
    postgresql_where=pending_schema_patches.c.status == "pending",
    sqlite_where=pending_schema_patches.c.status == "pending",
)
