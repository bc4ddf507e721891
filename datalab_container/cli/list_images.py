from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import typer

from datalab_container import registry
from datalab_container.config import get_settings, require_key_file
from datalab_container.utils.log_utils import print_info

from ._common import fatal_errors, invoke


HELP = """Datalab Inference Container Image Lister

Lists all available image tags in the Datalab inference container repository.

Required environment variables: SERVICE_ACCOUNT_KEY_FILE.
Optional: FORMAT (table, json or tags-only; default table).
"""

app = typer.Typer(
    help=HELP,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)


@dataclass(slots=True)
class ListOptions:
    output_format: str | None = None
    env_file: Path | None = None


def run(options: ListOptions) -> int:
    settings = get_settings(options.env_file)
    # Both checks happen before any network access.
    fmt = registry.OutputFormat.parse(options.output_format or settings.output_format)
    key_file = require_key_file(settings.service_account_key_file)

    print_info("Authenticating and listing tags...")
    session = registry.authenticate(key_file)
    records = registry.list_tags(session)
    typer.echo(registry.format_tags(records, fmt))
    return 0


@app.command()
@fatal_errors
def list_images_command(
    output_format: str | None = typer.Option(
        None,
        "--format",
        "-f",
        help="Output format: table, json or tags-only. Defaults to $FORMAT, then table.",
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
    return run(ListOptions(output_format=output_format, env_file=env_file))


def main(argv: Sequence[str] | None = None) -> int:
    return invoke(app, argv)


if __name__ == "__main__":  # pragma: no cover
    app()
