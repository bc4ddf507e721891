"""Low-level Docker SDK access (internal)."""

from __future__ import annotations

import contextlib
import shutil
from typing import TYPE_CHECKING

import docker

from .errors import DockerError


if TYPE_CHECKING:  # pragma: no cover - typing only
    from docker import DockerClient as _DockerClient
    from docker.models.containers import Container as _DockerContainer
else:  # pragma: no cover - runtime fallback when typing info unavailable
    _DockerClient = object
    _DockerContainer = object


def ensure_docker_sdk() -> _DockerClient:
    """Return connected Docker client or raise DockerError with guidance."""
    try:
        client = docker.from_env()
        client.ping()
        return client
    except FileNotFoundError as e:  # pragma: no cover
        raise DockerError(
            "Could not find the Docker socket. Is the Docker daemon running?",
            hints=["Start it (e.g., 'systemctl start docker' or Docker Desktop) and retry."],
        ) from e
    except PermissionError as e:  # pragma: no cover
        raise DockerError(
            "Permission denied accessing the Docker socket.",
            hints=["Add your user to the 'docker' group or run with appropriate permissions."],
        ) from e
    except docker.errors.DockerException as e:  # pragma: no cover
        raise DockerError(
            "Failed to connect to Docker daemon via SDK.",
            hints=["Ensure Docker is installed and the daemon is running."],
        ) from e


def docker_cli() -> str:
    """Return the path of the ``docker`` executable or raise DockerError."""
    path = shutil.which("docker")
    if path is None:
        raise DockerError("Docker is not installed or not in PATH")
    return path


def container_is_running(container: _DockerContainer) -> bool:
    """Return True if docker container object status is 'running'."""
    with contextlib.suppress(docker.errors.NotFound):
        container.reload()
        return getattr(container, "status", None) == "running"
    return False


__all__ = ["ensure_docker_sdk", "docker_cli", "container_is_running"]
