from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from bubble_ingestor.naming import InvalidIdentifierError
from bubble_ingestor.store import SqlAlchemyStore, StoreError, TableNotFoundError

RECORD_ID = "1700000000000x123456789012345678"


@pytest.fixture
async def sql_store(engine) -> SqlAlchemyStore:
    async with engine.begin() as conn:
        await conn.execute(
            text("CREATE TABLE invoice_item (bubble_id TEXT PRIMARY KEY, name TEXT, amount NUMERIC)")
        )
        await conn.execute(text('CREATE TABLE agent ("_id" TEXT PRIMARY KEY, "Full Name" TEXT)'))
    return SqlAlchemyStore(engine)


async def test_table_columns(sql_store) -> None:
    assert await sql_store.table_columns("invoice_item") == ["bubble_id", "name", "amount"]
    assert await sql_store.table_columns("agent") == ["_id", "Full Name"]
    assert await sql_store.table_columns("missing") == []


async def test_insert_count_and_exists(sql_store) -> None:
    assert await sql_store.count_rows("invoice_item") == 0

    await sql_store.insert_row("invoice_item", {"bubble_id": RECORD_ID, "name": "Panel", "amount": 12.5})

    assert await sql_store.count_rows("invoice_item") == 1
    assert await sql_store.row_exists("invoice_item", "bubble_id", RECORD_ID) is True
    assert await sql_store.row_exists("invoice_item", "bubble_id", "other") is False


async def test_update_row(sql_store, engine) -> None:
    await sql_store.insert_row("agent", {"_id": RECORD_ID, "Full Name": "Ali"})

    await sql_store.update_row("agent", "_id", RECORD_ID, {"Full Name": "Ali Hassan"})

    async with engine.connect() as conn:
        name = (await conn.execute(text('SELECT "Full Name" FROM agent'))).scalar_one()
    assert name == "Ali Hassan"


async def test_values_are_bound_not_interpolated(sql_store) -> None:
    hostile = "x'); DROP TABLE invoice_item; --"
    await sql_store.insert_row("invoice_item", {"bubble_id": hostile, "name": hostile})

    assert await sql_store.row_exists("invoice_item", "bubble_id", hostile) is True
    assert await sql_store.count_rows("invoice_item") == 1


async def test_missing_table_count(sql_store) -> None:
    with pytest.raises(TableNotFoundError):
        await sql_store.count_rows("missing")


async def test_unknown_column_raises_store_error(sql_store) -> None:
    with pytest.raises(StoreError):
        await sql_store.insert_row("invoice_item", {"bubble_id": RECORD_ID, "bonus_pct": 1.5})


async def test_hostile_identifiers_stay_quoted(sql_store) -> None:
    with pytest.raises(StoreError):
        await sql_store.insert_row("invoice_item", {"bubble_id": RECORD_ID, 'name"; --': "x"})
    with pytest.raises(TableNotFoundError):
        await sql_store.count_rows("invoice_item; DROP TABLE agent")

    assert await sql_store.count_rows("agent") == 0
    assert await sql_store.count_rows("invoice_item") == 0


async def test_overlong_identifiers_are_refused(sql_store) -> None:
    with pytest.raises(InvalidIdentifierError):
        await sql_store.insert_row("invoice_item", {"bubble_id": RECORD_ID, "x" * 64: "x"})
    with pytest.raises(InvalidIdentifierError):
        await sql_store.table_columns("t" * 64)


async def test_raw_names_with_punctuation(engine) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            text('CREATE TABLE agent ("_id" TEXT PRIMARY KEY, "Full Name" TEXT, "Paid?" BOOLEAN)')
        )
    sql_store = SqlAlchemyStore(engine)

    await sql_store.insert_row("agent", {"_id": RECORD_ID, "Full Name": "Ali", "Paid?": True})
    await sql_store.add_column("agent", "Status: Open", "text")
    await sql_store.update_row("agent", "_id", RECORD_ID, {"Status: Open": "yes", "Paid?": False})

    assert "Status: Open" in await sql_store.table_columns("agent")
    async with engine.connect() as conn:
        row = (await conn.execute(text('SELECT "Paid?", "Status: Open" FROM agent'))).one()
    assert tuple(row) == (0, "yes")


@pytest.fixture
async def unreachable_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x' / 'y.db'}")
    yield SqlAlchemyStore(engine)
    await engine.dispose()


async def test_connection_failures_surface_as_store_errors(unreachable_store) -> None:
    with pytest.raises(StoreError):
        await unreachable_store.table_columns("invoice_item")
    with pytest.raises(StoreError):
        await unreachable_store.count_rows("invoice_item")
    with pytest.raises(StoreError):
        await unreachable_store.insert_row("invoice_item", {"bubble_id": RECORD_ID})


async def test_add_column_is_idempotent(sql_store) -> None:
    await sql_store.add_column("invoice_item", "bonus_pct", "decimal")
    await sql_store.add_column("invoice_item", "bonus_pct", "decimal")

    assert "bonus_pct" in await sql_store.table_columns("invoice_item")
    await sql_store.insert_row("invoice_item", {"bubble_id": RECORD_ID, "bonus_pct": 1.5})


async def test_unsupported_type_is_refused(sql_store) -> None:
    with pytest.raises(ValueError):
        await sql_store.add_column("invoice_item", "blob", "bytea")


async def test_ddl_failures_surface_as_store_errors(sql_store) -> None:
    # SQLite has no ALTER COLUMN ... TYPE; the driver error must come through.
    with pytest.raises(StoreError):
        await sql_store.alter_column_type("invoice_item", "amount", "text")
