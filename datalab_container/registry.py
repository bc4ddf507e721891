"""Artifact Registry client: service-account authentication and tag listing.

Authentication exchanges the service account key for an OAuth access token.
The same token is handed to Docker (``oauth2accesstoken`` login, the scheme
``gcloud auth configure-docker`` sets up) so that pulls and registry queries
share one session.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from enum import Enum
import json
import os
from pathlib import Path
from typing import Any

import docker
from google.api_core.exceptions import GoogleAPICallError
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.cloud import artifactregistry_v1
from google.oauth2 import service_account
from rich.console import Console
from rich.table import Table

from datalab_container.config import require_key_file
from datalab_container.errors import AuthError, ConfigError, RegistryError
from datalab_container.images import ResolvedImageReference, resolve
from datalab_container.utils.docker import ContainerRuntime
from datalab_container.utils.log_utils import logger, print_success


SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
DOCKER_TOKEN_USERNAME = "oauth2accesstoken"


class OutputFormat(str, Enum):
    TABLE = "table"
    JSON = "json"
    TAGS_ONLY = "tags-only"

    @classmethod
    def parse(cls, value: str | None) -> OutputFormat:
        if value is None or value.strip() == "":
            return cls.TABLE
        try:
            return cls(value.strip().lower())
        except ValueError as e:
            valid = ", ".join(f.value for f in cls)
            raise ConfigError(f"Invalid format: {value}. Valid options: {valid}") from e


@dataclass(frozen=True)
class TagRecord:
    tag: str
    digest: str
    name: str
    version: str


@dataclass
class RegistrySession:
    """Authenticated registry session.

    Attributes:
        credentials: Refreshed service account credentials.
        registry_host: Registry the Docker login targets.
    """

    credentials: Any
    registry_host: str

    @property
    def token(self) -> str:
        return self.credentials.token

    @property
    def auth_config(self) -> dict[str, str]:
        return {"username": DOCKER_TOKEN_USERNAME, "password": self.token}


def _load_credentials(key_file: Path) -> Any:
    return service_account.Credentials.from_service_account_file(str(key_file), scopes=SCOPES)


def _make_client(credentials: Any) -> Any:
    return artifactregistry_v1.ArtifactRegistryClient(credentials=credentials)


def authenticate(
    key_file: str | os.PathLike[str] | None,
    *,
    registry_host: str | None = None,
) -> RegistrySession:
    """Exchange the service account key file for a registry session.

    Raises:
        ConfigError: Key file missing, unreadable or not a service account key.
        AuthError: Google rejected the credentials or could not be reached.
    """
    path = require_key_file(key_file)
    try:
        credentials = _load_credentials(path)
    except (OSError, ValueError) as e:
        raise ConfigError(
            f"Service account key file could not be read: {path}",
            hints=["Make sure the file is a JSON service account key downloaded from Google Cloud."],
        ) from e

    try:
        credentials.refresh(Request())
    except RefreshError as e:
        raise AuthError(
            "Failed to authenticate with Google Cloud using service account key",
            hints=["Check that the service account key is valid and has not been revoked."],
        ) from e
    except TransportError as e:
        raise AuthError(
            "Failed to authenticate with Google Cloud using service account key",
            hints=["Could not reach Google Cloud; check your internet connection."],
            transient=True,
        ) from e

    host = registry_host or resolve().registry
    logger.debug(f"Authenticated as {getattr(credentials, 'service_account_email', '?')}")
    return RegistrySession(credentials=credentials, registry_host=host)


def configure_runtime(session: RegistrySession, runtime: ContainerRuntime) -> None:
    """Log the container runtime in to the registry with the session token."""
    try:
        runtime.login(
            username=DOCKER_TOKEN_USERNAME,
            password=session.token,
            registry=f"https://{session.registry_host}",
        )
    except docker.errors.APIError as e:
        raise AuthError(
            "Failed to configure Docker authentication",
            hints=[f"Docker rejected the registry token for {session.registry_host}."],
        ) from e
    print_success("Docker authentication configured")


def _location_from_host(registry_host: str) -> str:
    # "us-docker.pkg.dev" -> "us", "europe-west1-docker.pkg.dev" -> "europe-west1"
    return registry_host.split(".", 1)[0].removesuffix("-docker")


def package_parent(ref: ResolvedImageReference) -> str:
    """Artifact Registry resource name of the image package."""
    location = _location_from_host(ref.registry)
    return (
        f"projects/{ref.project}/locations/{location}/"
        f"repositories/{ref.repository}/packages/{ref.image}"
    )


def list_tags(
    session: RegistrySession,
    ref: ResolvedImageReference | None = None,
    *,
    client: Any | None = None,
) -> list[TagRecord]:
    """Return every tag of the image package in the order the registry reports them.

    Raises:
        RegistryError: The query failed or the repository holds no tags.
    """
    ref = ref or resolve()
    parent = package_parent(ref)
    client = client or _make_client(session.credentials)
    try:
        tags = [
            TagRecord(
                tag=tag.name.rsplit("/", 1)[-1],
                digest=tag.version.rsplit("/", 1)[-1],
                name=tag.name,
                version=tag.version,
            )
            for tag in client.list_tags(request={"parent": parent})
        ]
    except GoogleAPICallError as e:
        raise RegistryError(
            "Failed to list image tags",
            hints=[
                f"Repository: {ref.repository_path}",
                "Check that the service account may read the repository.",
            ],
        ) from e
    if not tags:
        raise RegistryError(
            "Failed to list image tags",
            hints=[f"No tags found in {ref.repository_path}"],
        )
    return tags


def format_tags(records: Sequence[TagRecord], fmt: OutputFormat | str) -> str:
    """Render tag records; the same records back every format."""
    fmt = OutputFormat.parse(fmt) if isinstance(fmt, str) else fmt
    if fmt is OutputFormat.TAGS_ONLY:
        return "\n".join(record.tag for record in records)
    if fmt is OutputFormat.JSON:
        return json.dumps([asdict(record) for record in records], indent=2)

    table = Table(box=None, header_style="bold", pad_edge=False)
    table.add_column("TAG")
    table.add_column("DIGEST")
    for record in records:
        table.add_row(record.tag, record.digest)
    console = Console(width=200, color_system=None, highlight=False)
    with console.capture() as capture:
        console.print(table)
    return capture.get().rstrip("\n")


__all__ = [
    "OutputFormat",
    "TagRecord",
    "RegistrySession",
    "authenticate",
    "configure_runtime",
    "package_parent",
    "list_tags",
    "format_tags",
]
