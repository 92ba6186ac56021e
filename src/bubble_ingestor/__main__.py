from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional, Sequence

import httpx
from rich.console import Console
from rich.table import Table

from .api_client import ApiClientError
from .batch import BatchSyncError, BatchSyncResult
from .config import ConfigurationError, load_config
from .cursor_store import CursorStatus
from .fetcher import FetchError
from .logging_utils import configure_logging
from .models import IngestionConfig
from .patches import PatchNotFoundError, PatchRequest
from .service import IngestorServices, open_services
from .sync import SyncResult
from .upsert import SyncMode

console = Console()
LOGGER = logging.getLogger("bubble.ingestor")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bubble-ingestor",
        description="Incrementally replicate Bubble data types into PostgreSQL.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Sync one data type.")
    sync.add_argument("table", help="Bubble data type, e.g. invoice_item")
    sync.add_argument("--limit", type=int, default=None, help="Maximum records to fetch.")
    sync.add_argument(
        "--full",
        action="store_true",
        help="Re-read from the start and update rows that already exist.",
    )

    sync_all = commands.add_parser(
        "sync-all", help="Discover every data type and sync each with the same limit."
    )
    sync_all.add_argument(
        "--limit", type=int, default=None, help="Records per table (default SYNC_BATCH_LIMIT)."
    )
    sync_all.add_argument(
        "--skip", action="append", default=[], metavar="TABLE", help="Leave a data type out."
    )
    sync_all.add_argument("--max-tables", type=int, default=None, help="Sync at most N tables.")
    sync_all.add_argument(
        "--include-empty",
        action="store_true",
        help="Also sync data types that currently hold no records.",
    )
    sync_all.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep going when a table fails instead of stopping the batch.",
    )

    cursor = commands.add_parser("cursor", help="Inspect or move sync cursors.")
    cursor_commands = cursor.add_subparsers(dest="action", required=True)
    show = cursor_commands.add_parser("show", help="Show the (self-corrected) cursor of a table.")
    show.add_argument("table")
    cursor_commands.add_parser("list", help="List every stored cursor with its actual row count.")
    set_cursor = cursor_commands.add_parser("set", help="Place a cursor manually.")
    set_cursor.add_argument("table")
    set_cursor.add_argument("value", type=int)
    reset = cursor_commands.add_parser("reset", help="Move a cursor back to 0.")
    reset.add_argument("table")

    patches = commands.add_parser("patches", help="Review pending schema patches.")
    patch_commands = patches.add_subparsers(dest="action", required=True)
    patch_commands.add_parser("list", help="List pending patches.")
    history = patch_commands.add_parser("history", help="List settled patches.")
    history.add_argument("--limit", type=int, default=50)
    approve = patch_commands.add_parser("approve", help="Approve and execute a patch.")
    approve.add_argument("request_id", type=int)
    approve.add_argument("--by", default=os.getenv("USER", "user"))
    reject = patch_commands.add_parser("reject", help="Reject a patch.")
    reject.add_argument("request_id", type=int)
    reject.add_argument("--by", default=os.getenv("USER", "user"))
    reject.add_argument("--reason", default="")

    return parser


def render_sync_result(result: SyncResult) -> None:
    table = Table(title=f"{result.mode.value} sync of {result.table}", show_header=False)
    table.add_row("Run", result.run_id)
    table.add_row("Fetched", str(result.fetched))
    table.add_row("New records", str(result.new_records))
    table.add_row("Synced", str(result.synced))
    table.add_row("Skipped", str(result.skipped))
    table.add_row("Errors", str(result.errors))
    table.add_row("Cursor", f"{result.previous_cursor} -> {result.new_cursor}")
    table.add_row("Cursor updated", "yes" if result.cursor_updated else "no")
    table.add_row("Duration", f"{result.duration:.2f}s")
    console.print(table)
    for request_id in result.patch_request_ids:
        console.print(f"Pending schema patch {request_id} awaits review (patches list)")


def render_batch_result(result: BatchSyncResult) -> None:
    table = Table(title=f"Batch sync {result.run_id} (limit {result.global_limit} per table)")
    for header in ("#", "Table", "Status", "New", "Synced", "Skipped", "Errors", "Cursor", "Duration"):
        table.add_column(header)
    for outcome in result.results:
        run = outcome.result
        if run is None:
            blanks = [""] * 5
            table.add_row(
                str(outcome.order),
                outcome.table,
                f"failed: {outcome.error}",
                *blanks,
                f"{outcome.duration:.2f}s",
            )
            continue
        table.add_row(
            str(outcome.order),
            outcome.table,
            "ok" if run.errors == 0 else "record errors",
            str(run.new_records),
            str(run.synced),
            str(run.skipped),
            str(run.errors),
            f"{run.previous_cursor} -> {run.new_cursor}",
            f"{outcome.duration:.2f}s",
        )
    console.print(table)
    console.print(
        f"Tables: {result.discovered} discovered, {result.attempted} attempted, "
        f"{result.successful} succeeded, {result.failed} failed, {result.tables_skipped} filtered out"
    )
    console.print(
        f"Records: {result.synced} synced, {result.skipped} skipped, {result.errors} errors "
        f"in {result.duration:.2f}s"
    )


def render_cursors(statuses: Sequence[CursorStatus]) -> None:
    table = Table(title="Sync cursors")
    for header in ("Table", "Cursor", "Rows", "Aligned", "Last sync", "Run"):
        table.add_column(header)
    for status in statuses:
        record = status.record
        table.add_row(
            record.table_name,
            str(record.last_cursor),
            str(status.actual) if status.actual is not None else status.error or "?",
            "yes" if status.aligned else "no",
            record.last_sync_at.isoformat() if record.last_sync_at else "",
            record.sync_run_id or "",
        )
    console.print(table)


def render_patches(title: str, requests: Sequence[PatchRequest]) -> None:
    table = Table(title=title)
    for header in ("Id", "Table", "Column", "Source field", "Type", "Status", "Created"):
        table.add_column(header)
    for request in requests:
        table.add_row(
            str(request.id),
            request.table_name,
            request.field_name,
            request.original_field_name or "",
            request.suggested_type,
            request.status.value,
            request.created_at.isoformat() if request.created_at else "",
        )
    console.print(table)


async def run_sync_command(config: IngestionConfig, args: argparse.Namespace) -> None:
    mode = SyncMode.FULL_REFRESH if args.full else SyncMode.INCREMENTAL_INSERT_ONLY
    async with open_services(config, with_source=True) as services:
        with console.status(f"Syncing {args.table}..."):
            result = await services.orchestrator.run_sync(args.table, args.limit, mode)
    render_sync_result(result)


async def run_batch_command(config: IngestionConfig, args: argparse.Namespace) -> None:
    limit = config.sync.batch_limit if args.limit is None else args.limit
    async with open_services(config, with_source=True) as services:
        try:
            with console.status("Syncing all data types..."):
                result = await services.batch.sync_all(
                    global_limit=limit,
                    only_with_data=not args.include_empty,
                    continue_on_error=args.continue_on_error,
                    max_tables=args.max_tables,
                    skip_tables=args.skip,
                )
        except BatchSyncError as exc:
            render_batch_result(exc.result)
            raise
    render_batch_result(result)


async def run_cursor_command(services: IngestorServices, args: argparse.Namespace) -> None:
    cursors = services.cursors
    if args.action == "show":
        console.print(f"{args.table}: {await cursors.get(args.table)}")
    elif args.action == "list":
        render_cursors(await cursors.list_cursors())
    elif args.action == "set":
        await cursors.set(args.table, args.value)
        console.print(f"Cursor for {args.table} set to {args.value}")
    elif args.action == "reset":
        await cursors.reset(args.table)
        console.print(f"Cursor for {args.table} reset to 0")


async def run_patch_command(services: IngestorServices, args: argparse.Namespace) -> None:
    patches = services.patches
    if args.action == "list":
        render_patches("Pending schema patches", await patches.list_pending())
    elif args.action == "history":
        render_patches("Schema patch history", await patches.history(args.limit))
    elif args.action == "approve":
        result = await patches.approve(args.request_id, args.by)
        if result.success:
            console.print(result.message)
            # Column layout changed; mappings must look at the table again.
            services.detector.invalidate(result.table_name)
        else:
            console.print(f"Patch {args.request_id} not applied: {result.error}")
    elif args.action == "reject":
        await patches.reject(args.request_id, args.by, args.reason)
        console.print(f"Patch {args.request_id} rejected")


async def dispatch(config: IngestionConfig, args: argparse.Namespace) -> None:
    if args.command == "sync":
        await run_sync_command(config, args)
        return
    if args.command == "sync-all":
        await run_batch_command(config, args)
        return
    async with open_services(config) as services:
        if args.command == "cursor":
            await run_cursor_command(services, args)
        else:
            await run_patch_command(services, args)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(os.getenv("LOG_LEVEL", "INFO"), console=console)
    try:
        config = load_config()
    except ConfigurationError as exc:
        LOGGER.error("Configuration error: %s", exc)
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        asyncio.run(dispatch(config, args))
    except (ApiClientError, FetchError) as exc:
        LOGGER.exception("Bubble API error")
        print(f"API error: {exc}", file=sys.stderr)
        sys.exit(2)
    except httpx.RequestError as exc:
        LOGGER.exception("HTTP error while accessing the Bubble API")
        print(f"HTTP error: {exc}", file=sys.stderr)
        sys.exit(2)
    except BatchSyncError as exc:
        print(f"Batch sync stopped: {exc}", file=sys.stderr)
        sys.exit(3)
    except (PatchNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(3)
    except Exception as exc:  # pragma: no cover - guard for CLI usage
        LOGGER.exception("Command failed")
        print(f"Command failed: {exc}", file=sys.stderr)
        sys.exit(3)


if __name__ == "__main__":
    main()
