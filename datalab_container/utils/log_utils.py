"""Logging utilities shared across the datalab_container package."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape


_CONFIGURED: bool = False

DEFAULT_CONSOLE_LEVEL = "INFO"
DEFAULT_FILE_LEVEL = "DEBUG"
DEFAULT_FILE_ROTATION = "5 MB"
DEFAULT_FILE_RETENTION = 2

# Console output goes to stderr so `--format json` / `tags-only` stdout stays clean.
_RICH_HANDLER_KWARGS: dict[str, Any] = {
    "markup": True,
    "show_time": False,
    "show_path": False,
}


def _configure_logging(*, force: bool = False) -> None:
    """Configure the shared logger once per process."""
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    logger.remove()

    logger.add(
        RichHandler(console=Console(stderr=True), **_RICH_HANDLER_KWARGS),  # type: ignore[arg-type]
        level=os.getenv("DATALAB_LOG_LEVEL", DEFAULT_CONSOLE_LEVEL).upper(),
        format="{message}",
    )

    file_path = os.getenv("DATALAB_LOG_FILE", "")
    if file_path:
        resolved_file_path = Path(file_path).expanduser().resolve()
        resolved_file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(resolved_file_path),
            level=DEFAULT_FILE_LEVEL,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}",
            rotation=DEFAULT_FILE_ROTATION,
            retention=DEFAULT_FILE_RETENTION,
            enqueue=True,
        )

    _CONFIGURED = True


def print_info(message: str) -> None:
    logger.info(f"[blue]ℹ[/blue] {escape(message)}")


def print_success(message: str) -> None:
    logger.info(f"[green]✓[/green] {escape(message)}")


def print_warning(message: str) -> None:
    logger.warning(f"[yellow]⚠[/yellow] {escape(message)}")


def print_error(message: str) -> None:
    logger.error(f"[red]✗[/red] {escape(message)}")


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Return ``value`` with all but the last ``visible`` characters hidden."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


__all__ = [
    "logger",
    "print_info",
    "print_success",
    "print_warning",
    "print_error",
    "mask_secret",
]

# Configure logging on import so callers only need to import `logger`.
_configure_logging()
