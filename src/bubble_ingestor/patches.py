"""Turn destination schema errors into human-approved column patches.

Bubble never declares its schema and sparse optional fields appear long after
a table was first created, so a sync regularly hits columns that do not exist
or hold the wrong type. Instead of failing or altering tables on its own, the
sync records a *pending schema patch*; an operator approves or rejects it, and
approval runs the ``ALTER TABLE`` as a :class:`SchemaPatchCommand`.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from .naming import title_case_guess
from .schema import pending_schema_patches
from .store import DestinationStore, StoreError

LOGGER = logging.getLogger("bubble.ingestor.patches")

MISSING_COLUMN_RE = re.compile(r'column "([^"]+)" of relation "([^"]+)" does not exist')
TYPE_MISMATCH_RE = re.compile(
    r'column "([^"]+)" is of type (\w[\w ]*?) but expression is of type (\w+)'
)
RELATION_RE = re.compile(r'relation "([^"]+)"')

_PG_TYPE_FAMILIES = {
    "integer": "integer",
    "int": "integer",
    "int2": "integer",
    "int4": "integer",
    "int8": "integer",
    "smallint": "integer",
    "bigint": "integer",
    "numeric": "decimal",
    "decimal": "decimal",
    "real": "decimal",
    "double": "decimal",
    "float4": "decimal",
    "float8": "decimal",
    "boolean": "boolean",
    "bool": "boolean",
    "timestamp": "timestamp",
    "timestamptz": "timestamp",
    "date": "timestamp",
    "text": "text",
    "character": "text",
    "varchar": "text",
    "json": "text",
    "jsonb": "text",
}

_DECIMAL_HINTS = ("amount", "price", "rate", "bonus", "percent", "pct", "%", "commission")
_INTEGER_HINTS = ("count", "number", "qty", "quantity")
_BOOLEAN_PREFIXES = ("is_", "has_", "can_", "should_", "is ", "has ")


class PatchStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class PatchAction(str, enum.Enum):
    ADD_COLUMN = "ADD_COLUMN"
    ALTER_COLUMN_TYPE = "ALTER_COLUMN_TYPE"


class PatchNotFoundError(LookupError):
    pass


def suggest_column_type(field_name: str) -> str:
    lowered = field_name.lower()
    if "date" in lowered or "time" in lowered:
        return "timestamp"
    if any(hint in lowered for hint in _DECIMAL_HINTS):
        return "decimal"
    if any(hint in lowered for hint in _INTEGER_HINTS):
        return "integer"
    if lowered.startswith(_BOOLEAN_PREFIXES):
        return "boolean"
    return "text"


def type_family(pg_type: str) -> Optional[str]:
    words = pg_type.strip().lower().split()
    return _PG_TYPE_FAMILIES.get(words[0]) if words else None


def resolve_best_type(current_type: str, attempted_type: str) -> str:
    """Pick the type able to hold both sides; ``text`` whenever unsure."""
    current = type_family(current_type)
    attempted = type_family(attempted_type)
    if current is None or attempted is None:
        return "text"
    if current == attempted:
        return current
    if {current, attempted} == {"integer", "decimal"}:
        return "decimal"
    return "text"


@dataclass(frozen=True)
class ParsedColumnError:
    action: PatchAction
    table_name: str
    field_name: str
    original_field_name: str
    suggested_type: str
    current_type: Optional[str] = None
    attempted_type: Optional[str] = None


def parse_column_error(
    message: str,
    context_table: Optional[str] = None,
    field_sources: Optional[Mapping[str, str]] = None,
) -> Optional[ParsedColumnError]:
    sources = field_sources or {}

    match = MISSING_COLUMN_RE.search(message)
    if match:
        field_name, table_name = match.group(1), match.group(2)
        return ParsedColumnError(
            action=PatchAction.ADD_COLUMN,
            table_name=table_name,
            field_name=field_name,
            original_field_name=sources.get(field_name) or title_case_guess(field_name),
            suggested_type=suggest_column_type(field_name),
        )

    match = TYPE_MISMATCH_RE.search(message)
    if match:
        field_name, current_type, attempted_type = match.groups()
        table_name = context_table
        if not table_name:
            relation = RELATION_RE.search(message)
            table_name = relation.group(1) if relation else "unknown_table"
        return ParsedColumnError(
            action=PatchAction.ALTER_COLUMN_TYPE,
            table_name=table_name,
            field_name=field_name,
            original_field_name=sources.get(field_name) or title_case_guess(field_name),
            suggested_type=resolve_best_type(current_type, attempted_type),
            current_type=current_type,
            attempted_type=attempted_type,
        )

    return None


@dataclass(frozen=True)
class PatchRequest:
    id: int
    table_name: str
    field_name: str
    original_field_name: Optional[str]
    suggested_type: str
    error_message: Optional[str]
    status: PatchStatus
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    executed_at: Optional[datetime] = None
    execution_result: Optional[str] = None
    sync_run_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PatchRequest":
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            field_name=row["field_name"],
            original_field_name=row["original_field_name"],
            suggested_type=row["suggested_type"],
            error_message=row["error_message"],
            status=PatchStatus(row["status"]),
            created_at=row["created_at"],
            approved_at=row["approved_at"],
            approved_by=row["approved_by"],
            executed_at=row["executed_at"],
            execution_result=row["execution_result"],
            sync_run_id=row["sync_run_id"],
        )

    @property
    def action(self) -> PatchAction:
        if self.error_message and TYPE_MISMATCH_RE.search(self.error_message):
            return PatchAction.ALTER_COLUMN_TYPE
        return PatchAction.ADD_COLUMN


@dataclass(frozen=True)
class PatchResult:
    success: bool
    request_id: int
    action: Optional[PatchAction] = None
    table_name: Optional[str] = None
    field_name: Optional[str] = None
    message: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class SchemaPatchCommand:
    """One approved schema change, executed against the destination store."""

    request_id: int
    action: PatchAction
    table_name: str
    field_name: str
    column_type: str

    @classmethod
    def for_request(cls, request: PatchRequest) -> "SchemaPatchCommand":
        return cls(
            request_id=request.id,
            action=request.action,
            table_name=request.table_name,
            field_name=request.field_name,
            column_type=request.suggested_type,
        )

    def describe(self) -> str:
        if self.action is PatchAction.ALTER_COLUMN_TYPE:
            return f"Changed column type of {self.table_name}.{self.field_name} to {self.column_type}"
        return f"Added column {self.table_name}.{self.field_name} with type {self.column_type}"

    async def execute(self, store: DestinationStore) -> PatchResult:
        try:
            if self.action is PatchAction.ALTER_COLUMN_TYPE:
                await store.alter_column_type(self.table_name, self.field_name, self.column_type)
            else:
                await store.add_column(self.table_name, self.field_name, self.column_type)
        except (StoreError, ValueError) as exc:
            return PatchResult(
                success=False,
                request_id=self.request_id,
                action=self.action,
                table_name=self.table_name,
                field_name=self.field_name,
                error=str(exc),
            )
        return PatchResult(
            success=True,
            request_id=self.request_id,
            action=self.action,
            table_name=self.table_name,
            field_name=self.field_name,
            message=self.describe(),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingPatchService:
    """Durable approval queue for schema patches."""

    def __init__(self, engine: AsyncEngine, store: DestinationStore) -> None:
        self._engine = engine
        self._store = store

    async def create_pending_request(
        self,
        error_message: str,
        run_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[PatchRequest]:
        """Record a patch for ``error_message``; returns None if it is not a column error.

        An open request for the same column is returned instead of a duplicate.
        """
        context = context or {}
        parsed = parse_column_error(
            error_message,
            context_table=context.get("table"),
            field_sources=context.get("field_sources"),
        )
        if parsed is None:
            LOGGER.debug("No column error recognised in %r", error_message)
            return None

        existing = await self._find_open(parsed.table_name, parsed.field_name)
        if existing is not None:
            LOGGER.info(
                "Pending request %s already open for %s.%s",
                existing.id,
                parsed.table_name,
                parsed.field_name,
            )
            return existing

        table = pending_schema_patches
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    table.insert().values(
                        table_name=parsed.table_name,
                        field_name=parsed.field_name,
                        original_field_name=parsed.original_field_name,
                        suggested_type=parsed.suggested_type,
                        error_message=error_message,
                        status=PatchStatus.PENDING.value,
                        created_at=_utcnow(),
                        sync_run_id=run_id,
                    )
                )
                request_id = result.inserted_primary_key[0]
        except IntegrityError:
            # Lost a race against another writer for the same column.
            existing = await self._find_open(parsed.table_name, parsed.field_name)
            if existing is None:
                raise
            return existing

        request = await self.get(request_id)
        LOGGER.info(
            "[%s] Pending patch %s created: %s %s.%s (%s)",
            run_id,
            request_id,
            parsed.action.value,
            parsed.table_name,
            parsed.field_name,
            parsed.suggested_type,
        )
        return request

    async def get(self, request_id: int) -> PatchRequest:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(
                    select(pending_schema_patches).where(
                        pending_schema_patches.c.id == request_id
                    )
                )
            ).mappings().first()
        if row is None:
            raise PatchNotFoundError(f"Pending request {request_id} not found")
        return PatchRequest.from_row(row)

    async def list_pending(self) -> List[PatchRequest]:
        table = pending_schema_patches
        stmt = (
            select(table)
            .where(table.c.status == PatchStatus.PENDING.value)
            .order_by(table.c.created_at.desc(), table.c.id.desc())
        )
        return await self._fetch(stmt)

    async def history(self, limit: int = 50) -> List[PatchRequest]:
        table = pending_schema_patches
        settled = [
            PatchStatus.APPROVED.value,
            PatchStatus.REJECTED.value,
            PatchStatus.FAILED.value,
        ]
        stmt = (
            select(table)
            .where(table.c.status.in_(settled))
            .order_by(table.c.created_at.desc(), table.c.id.desc())
            .limit(limit)
        )
        return await self._fetch(stmt)

    async def approve(self, request_id: int, approved_by: str = "user") -> PatchResult:
        try:
            request = await self.get(request_id)
        except PatchNotFoundError as exc:
            return PatchResult(success=False, request_id=request_id, error=str(exc))

        if request.status is not PatchStatus.PENDING:
            return PatchResult(
                success=False,
                request_id=request_id,
                error=f"Request already {request.status.value}",
            )

        command = SchemaPatchCommand.for_request(request)
        result = await command.execute(self._store)
        now = _utcnow()
        if result.success:
            values = {
                "status": PatchStatus.APPROVED.value,
                "approved_at": now,
                "approved_by": approved_by,
                "executed_at": now,
                "execution_result": "success",
            }
            LOGGER.info("Patch %s approved by %s: %s", request_id, approved_by, result.message)
        else:
            values = {
                "status": PatchStatus.FAILED.value,
                "approved_by": approved_by,
                "executed_at": now,
                "execution_result": result.error,
            }
            LOGGER.error("Patch %s failed to execute: %s", request_id, result.error)

        await self._update(request_id, values)
        return result

    async def reject(self, request_id: int, rejected_by: str = "user", reason: str = "") -> None:
        request = await self.get(request_id)
        if request.status is not PatchStatus.PENDING:
            raise ValueError(f"Request {request_id} already {request.status.value}")
        await self._update(
            request_id,
            {
                "status": PatchStatus.REJECTED.value,
                "approved_by": rejected_by,
                "execution_result": reason or "Rejected by user",
            },
        )
        LOGGER.info("Patch %s rejected by %s", request_id, rejected_by)

    async def _find_open(self, table_name: str, field_name: str) -> Optional[PatchRequest]:
        table = pending_schema_patches
        stmt = select(table).where(
            table.c.table_name == table_name,
            table.c.field_name == field_name,
            table.c.status == PatchStatus.PENDING.value,
        )
        found = await self._fetch(stmt)
        return found[0] if found else None

    async def _fetch(self, stmt) -> List[PatchRequest]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [PatchRequest.from_row(row) for row in rows]

    async def _update(self, request_id: int, values: Mapping[str, Any]) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                update(pending_schema_patches)
                .where(pending_schema_patches.c.id == request_id)
                .values(**values)
            )
