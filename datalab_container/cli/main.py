from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import typer

from . import run as run_module
from ._common import fatal_errors, invoke


HELP = """Datalab Inference Container Runner

Pulls and runs the Datalab inference container. Without a mode flag the
container runs in the foreground until Ctrl+C.

Required environment variables: DATALAB_LICENSE_KEY, SERVICE_ACCOUNT_KEY_FILE.
Optional: CONTAINER_VERSION (latest), INFERENCE_PORT (8000), INFERENCE_HOST
(127.0.0.1, use 0.0.0.0 for external access), DOCKER_EXTRA_ARGS,
DATALAB_LICENSE_SERVER.
"""

app = typer.Typer(
    help=HELP,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _select_mode(daemon: bool, status: bool, stop: bool) -> run_module.Mode:
    selected = [
        mode
        for flag, mode in (
            (daemon, run_module.Mode.DAEMON),
            (status, run_module.Mode.STATUS),
            (stop, run_module.Mode.STOP),
        )
        if flag
    ]
    if len(selected) > 1:
        raise typer.BadParameter(
            "Use only one of --daemon, --status or --stop.",
            param_hint="--daemon/--status/--stop",
        )
    return selected[0] if selected else run_module.Mode.RUN


@app.command()
@fatal_errors
def inference_command(
    daemon: bool = typer.Option(
        False,
        "--daemon",
        help="Start the container in the background and wait until it is healthy.",
    ),
    status: bool = typer.Option(
        False,
        "--status",
        help="Report whether the background instance is running and healthy.",
    ),
    stop: bool = typer.Option(
        False,
        "--stop",
        help="Stop the background instance (no-op when none is running).",
    ),
    supervise: bool = typer.Option(
        False,
        "--supervise",
        help="(daemon) Stay in the foreground and restart the instance after crashes.",
    ),
    max_restarts: int | None = typer.Option(
        None,
        "--max-restarts",
        min=0,
        help="(supervise) Restart ceiling. Defaults to DAEMON_MAX_RESTARTS or unlimited.",
    ),
    restart_delay: float | None = typer.Option(
        None,
        "--restart-delay",
        min=0.0,
        help="(supervise) Seconds to wait before a restart. Defaults to DAEMON_RESTART_DELAY or 5.",
    ),
    backoff: str | None = typer.Option(
        None,
        "--backoff",
        help="(supervise) Restart backoff: fixed or exponential.",
    ),
    startup_timeout: float | None = typer.Option(
        None,
        "--startup-timeout",
        min=0.0,
        help="(daemon) Seconds to wait for the health check. Defaults to DAEMON_STARTUP_TIMEOUT or 600.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Read defaults from this .env file instead of ./.env.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
) -> int:
    options = run_module.RunOptions(
        mode=_select_mode(daemon, status, stop),
        supervise=supervise,
        max_restarts=max_restarts,
        restart_delay=restart_delay,
        backoff=backoff,
        startup_timeout=startup_timeout,
        env_file=env_file,
    )
    result = run_module.run(options)
    if result != 0:
        raise typer.Exit(code=result)
    return result


def main(argv: Sequence[str] | None = None) -> int:
    return invoke(app, argv)


if __name__ == "__main__":  # pragma: no cover
    app()
