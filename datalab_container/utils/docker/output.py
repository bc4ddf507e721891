"""Relay ``docker`` CLI and container output through the shared logger."""

from __future__ import annotations

import re

from rich.markup import escape

from datalab_container.utils.log_utils import logger


ANSI_ESCAPE_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


def clean_lines(text: str, limit: int | None = None) -> list[str]:
    """Split raw output into printable lines, keeping only the last ``limit``.

    Colour codes, carriage returns (progress bars) and blank lines are dropped.
    """
    lines = [strip_ansi(line).replace("\r", "").rstrip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    if limit is not None:
        lines = lines[-limit:] if limit > 0 else []
    return lines


def relay_output(
    text: str | None,
    source: str,
    *,
    level: str = "info",
    limit: int | None = None,
) -> int:
    """Log each line of ``text`` as ``[source] line``; return the number logged."""
    if not text:
        return 0
    log_fn = getattr(logger, level)
    prefix = escape(f"[{source}]")
    lines = clean_lines(text, limit)
    for line in lines:
        log_fn(f"{prefix} {escape(line)}")
    return len(lines)


__all__ = ["strip_ansi", "clean_lines", "relay_output"]
