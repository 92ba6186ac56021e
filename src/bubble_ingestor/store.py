"""Destination store: the relational tables records are replicated into."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from sqlalchemy import (column, func, insert, inspect, literal, select, table,
                        update)
from sqlalchemy.exc import DBAPIError, NoSuchTableError
from sqlalchemy.ext.asyncio import AsyncEngine

from .naming import validate_identifier

LOGGER = logging.getLogger("bubble.ingestor.db")

# Suggested patch types and the DDL type each one is executed as.
SQL_TYPES = {
    "timestamp": "TIMESTAMPTZ",
    "decimal": "DECIMAL",
    "integer": "INTEGER",
    "boolean": "BOOLEAN",
    "text": "TEXT",
}


class StoreError(Exception):
    """A destination statement failed; ``str(exc)`` is the driver's message."""


class TableNotFoundError(StoreError):
    """The destination table does not exist (yet)."""


class DestinationStore(Protocol):
    async def table_columns(self, table_name: str) -> list[str]: ...

    async def count_rows(self, table_name: str) -> int: ...

    async def row_exists(self, table_name: str, id_column: str, external_id: str) -> bool: ...

    async def insert_row(self, table_name: str, row: Mapping[str, Any]) -> None: ...

    async def update_row(
        self,
        table_name: str,
        id_column: str,
        external_id: str,
        values: Mapping[str, Any],
    ) -> None: ...

    async def add_column(self, table_name: str, column_name: str, column_type: str) -> None: ...

    async def alter_column_type(
        self, table_name: str, column_name: str, column_type: str
    ) -> None: ...


def _driver_message(exc: DBAPIError) -> str:
    return str(exc.orig) if exc.orig is not None else str(exc)


def _lightweight_table(table_name: str, column_names: list[str]):
    validate_identifier(table_name)
    return table(table_name, *(column(validate_identifier(name)) for name in column_names))


def _sql_type(column_type: str) -> str:
    try:
        return SQL_TYPES[column_type]
    except KeyError:
        raise ValueError(f"Unsupported column type {column_type!r}") from None


class SqlAlchemyStore:
    """:class:`DestinationStore` over an async SQLAlchemy engine.

    Statements are built from SQLAlchemy Core ``table()``/``column()``
    constructs: identifiers are length-checked and quoted by the dialect, and
    values are always bound parameters.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def table_columns(self, table_name: str) -> list[str]:
        validate_identifier(table_name)

        def _columns(sync_conn) -> list[str]:
            try:
                return [col["name"] for col in inspect(sync_conn).get_columns(table_name)]
            except NoSuchTableError:
                return []

        try:
            async with self._engine.connect() as conn:
                return await conn.run_sync(_columns)
        except DBAPIError as exc:
            raise StoreError(_driver_message(exc)) from exc

    async def count_rows(self, table_name: str) -> int:
        validate_identifier(table_name)
        try:
            async with self._engine.connect() as conn:
                exists = await conn.run_sync(lambda c: inspect(c).has_table(table_name))
                if not exists:
                    raise TableNotFoundError(f'relation "{table_name}" does not exist')
                result = await conn.execute(
                    select(func.count()).select_from(table(table_name))
                )
                return int(result.scalar_one())
        except DBAPIError as exc:
            raise StoreError(_driver_message(exc)) from exc

    async def row_exists(self, table_name: str, id_column: str, external_id: str) -> bool:
        target = _lightweight_table(table_name, [id_column])
        stmt = (
            select(literal(1))
            .select_from(target)
            .where(target.c[id_column] == external_id)
            .limit(1)
        )
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(stmt)
                return result.first() is not None
        except DBAPIError as exc:
            raise StoreError(_driver_message(exc)) from exc

    async def insert_row(self, table_name: str, row: Mapping[str, Any]) -> None:
        target = _lightweight_table(table_name, list(row))
        try:
            async with self._engine.begin() as conn:
                await conn.execute(insert(target).values(dict(row)))
        except DBAPIError as exc:
            raise StoreError(_driver_message(exc)) from exc

    async def update_row(
        self,
        table_name: str,
        id_column: str,
        external_id: str,
        values: Mapping[str, Any],
    ) -> None:
        if not values:
            return
        target = _lightweight_table(table_name, [id_column, *values])
        stmt = (
            update(target)
            .where(target.c[id_column] == external_id)
            .values(dict(values))
        )
        try:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)
        except DBAPIError as exc:
            raise StoreError(_driver_message(exc)) from exc

    async def add_column(self, table_name: str, column_name: str, column_type: str) -> None:
        if column_name in await self.table_columns(table_name):
            LOGGER.info("Column %s.%s already present; nothing to add", table_name, column_name)
            return
        await self._execute_ddl(
            "ALTER TABLE {table} ADD COLUMN {column} " + _sql_type(column_type),
            table_name,
            column_name,
        )

    async def alter_column_type(
        self, table_name: str, column_name: str, column_type: str
    ) -> None:
        sql_type = _sql_type(column_type)
        await self._execute_ddl(
            "ALTER TABLE {table} ALTER COLUMN {column} TYPE "
            + sql_type
            + " USING {column}::"
            + sql_type,
            table_name,
            column_name,
        )

    async def _execute_ddl(self, template: str, table_name: str, column_name: str) -> None:
        validate_identifier(table_name)
        validate_identifier(column_name)
        try:
            async with self._engine.begin() as conn:
                quote = conn.dialect.identifier_preparer.quote
                statement = template.format(table=quote(table_name), column=quote(column_name))
                LOGGER.info("Executing schema patch: %s", statement)
                # Quoted names may contain ":", which text() would read as a bind parameter.
                await conn.exec_driver_sql(statement)
        except DBAPIError as exc:
            raise StoreError(_driver_message(exc)) from exc
