"""Container runtime queries: find by name, pull, registry login.

``DockerRuntime`` is the single place that talks to the Docker daemon through
the SDK. Higher layers depend on the ``ContainerRuntime`` protocol so tests
can pass an in-memory fake instead of a live daemon.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import docker

from datalab_container.utils.log_utils import logger

from .container import DockerContainer
from .errors import DockerError
from .sdk import ensure_docker_sdk


class ContainerRuntime(Protocol):
    def find(self, name: str) -> DockerContainer | None: ...

    def get(self, container_id: str) -> DockerContainer | None: ...

    def image_exists(self, reference: str) -> bool: ...

    def pull(
        self, repository: str, tag: str, auth_config: Mapping[str, str] | None = None
    ) -> str: ...

    def login(self, *, username: str, password: str, registry: str) -> None: ...


class DockerRuntime:
    """``ContainerRuntime`` backed by the Docker SDK.

    The client is created lazily so that merely constructing a runtime (e.g.
    while parsing arguments) has no side effects.
    """

    def __init__(self, client: Any | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = ensure_docker_sdk()
        return self._client

    def connect(self) -> Any:
        """Connect to the daemon now rather than on first use."""
        return self.client

    def find(self, name: str) -> DockerContainer | None:
        """Return the container whose name is exactly ``name``, running or not."""
        try:
            candidates = self.client.containers.list(all=True, filters={"name": name})
        except docker.errors.APIError as e:
            raise DockerError(f"Failed to query Docker for container '{name}'.") from e
        # The name filter is a substring/regex match; keep exact matches only.
        for container in candidates:
            if (getattr(container, "name", "") or "").lstrip("/") == name:
                return DockerContainer.from_sdk(container)
        return None

    def get(self, container_id: str) -> DockerContainer | None:
        """Return the container with id (or unique id prefix) ``container_id``."""
        try:
            container = self.client.containers.get(container_id)
        except docker.errors.NotFound:
            return None
        except docker.errors.APIError as e:
            raise DockerError(f"Failed to inspect container '{container_id[:12]}'.") from e
        return DockerContainer.from_sdk(container)

    def image_exists(self, reference: str) -> bool:
        try:
            self.client.images.get(reference)
        except docker.errors.ImageNotFound:
            return False
        except docker.errors.APIError as e:
            raise DockerError(f"Failed to inspect local image '{reference}'.") from e
        return True

    def pull(
        self, repository: str, tag: str, auth_config: Mapping[str, str] | None = None
    ) -> str:
        """Pull ``repository:tag`` and return the local image id.

        Pulling an image that is already present and current only refreshes
        the tag, so repeated calls are safe.
        """
        image = self.client.images.pull(
            repository, tag=tag, auth_config=dict(auth_config) if auth_config else None
        )
        logger.debug(f"Pulled {repository}:{tag} -> {getattr(image, 'id', '?')}")
        return getattr(image, "id", "") or ""

    def login(self, *, username: str, password: str, registry: str) -> None:
        self.client.login(username=username, password=password, registry=registry, reauth=True)


__all__ = ["ContainerRuntime", "DockerRuntime"]
