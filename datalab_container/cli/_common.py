from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import wraps
from typing import ParamSpec, TypeVar

import click
import typer

from datalab_container.errors import DatalabError
from datalab_container.utils.log_utils import logger, print_error


_P = ParamSpec("_P")
_T = TypeVar("_T")


def report_error(error: DatalabError) -> None:
    """Render a fatal error and its remediation hints on stderr."""
    print_error(error.message)
    for hint in error.hints:
        print_error(hint)
    if error.__cause__ is not None:
        logger.debug(f"Caused by: {error.__cause__!r}")


def fatal_errors(handler: Callable[_P, _T]) -> Callable[_P, _T]:
    """Map package errors to exit code 1 and Ctrl+C to 130."""

    @wraps(handler)
    def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> _T:
        try:
            return handler(*args, **kwargs)
        except DatalabError as err:
            report_error(err)
            raise typer.Exit(code=1) from err
        except KeyboardInterrupt as err:
            logger.info("Interrupted by user")
            raise typer.Exit(code=130) from err

    return wrapper


def invoke(app: typer.Typer, argv: Sequence[str] | None = None) -> int:
    """Run ``app`` without exiting the interpreter and return its exit code."""
    try:
        result = app(args=list(argv) if argv is not None else None, standalone_mode=False)
    except click.exceptions.ClickException as exc:
        exc.show()
        return exc.exit_code
    except SystemExit as exc:
        return int(exc.code or 0)
    return result if isinstance(result, int) else 0

