"""Logging setup helpers using Rich."""

from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

_RUN_ID_ALPHABET = string.digits + string.ascii_lowercase


def configure_logging(level: str = "INFO", console: Optional[Console] = None) -> None:
    """Configure root logging to use Rich's console rendering."""
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=False,
        show_path=False,
        markup=False,
    )
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


def new_run_id() -> str:
    """Return an opaque id tying log lines and persisted state to one run."""
    suffix = "".join(secrets.choice(_RUN_ID_ALPHABET) for _ in range(9))
    return f"run_{int(time.time() * 1000)}_{suffix}"
