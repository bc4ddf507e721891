"""Image reference resolution and pulling.

The registry coordinates are fixed: only the version tag varies between
invocations. ``resolve`` is pure string composition; ``pull`` goes through the
container runtime with the credentials obtained by ``registry.authenticate``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import docker
import requests

from datalab_container.errors import PullError
from datalab_container.utils.docker import ContainerRuntime
from datalab_container.utils.log_utils import logger, print_info, print_success


if TYPE_CHECKING:  # pragma: no cover - typing only
    from datalab_container.registry import RegistrySession


REGISTRY_URL = "us-docker.pkg.dev"
PROJECT_ID = "datalab-customer-images"
REPOSITORY_NAME = "datalab-inference-container"
IMAGE_NAME = "datalab-inference"
DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ResolvedImageReference:
    registry: str
    project: str
    repository: str
    image: str
    tag: str

    @property
    def repository_path(self) -> str:
        """Fully-qualified path without the tag."""
        return f"{self.registry}/{self.project}/{self.repository}/{self.image}"

    @property
    def reference(self) -> str:
        return f"{self.repository_path}:{self.tag}"

    def __str__(self) -> str:
        return self.reference


def resolve(version: str | None = DEFAULT_TAG) -> ResolvedImageReference:
    """Compose the fully-qualified image reference for ``version``.

    Blank or missing versions resolve to ``latest``. No network access.
    """
    tag = (version or "").strip() or DEFAULT_TAG
    return ResolvedImageReference(
        registry=REGISTRY_URL,
        project=PROJECT_ID,
        repository=REPOSITORY_NAME,
        image=IMAGE_NAME,
        tag=tag,
    )


def pull(
    runtime: ContainerRuntime,
    ref: ResolvedImageReference,
    session: RegistrySession,
) -> str:
    """Pull ``ref`` using the authenticated ``session`` and return the image id.

    Raises:
        PullError: On network failure, unknown tag or missing registry
            permission. The three causes are not told apart; the message
            lists all of them.
    """
    print_info(f"Pulling container image: {ref}")
    try:
        image_id = runtime.pull(ref.repository_path, ref.tag, auth_config=session.auth_config)
    except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
        logger.debug(f"Pull of {ref} failed: {e}")
        raise PullError(
            "Failed to pull container image",
            hints=[
                "Please check:",
                "  1. Your service account has access to the repository",
                f"  2. The container version '{ref.tag}' exists",
                "  3. Your internet connection is working",
            ],
        ) from e
    print_success("Container image pulled successfully")
    return image_id


__all__ = [
    "REGISTRY_URL",
    "PROJECT_ID",
    "REPOSITORY_NAME",
    "IMAGE_NAME",
    "ResolvedImageReference",
    "resolve",
    "pull",
]
