"""Docker access layer.

This package provides structured helpers for:
    * Connecting to the Docker daemon through the SDK (``ensure_docker_sdk``)
    * Looking containers up by their well-known name, pulling images and
        logging in to a registry (``DockerRuntime``)
    * Wrapping a container snapshot with lifecycle helpers (``DockerContainer``)

Principles:
    * Keep low-level SDK usage encapsulated (see ``sdk.py``) so higher-level
        code can be easily mocked in tests.
    * Avoid side effects at import time (no client construction until needed).

Public API (re-exported):
        - DockerError
        - DockerContainer
        - ContainerRuntime
        - DockerRuntime
        - docker_cli
"""

from .container import DockerContainer
from .errors import DockerError
from .runtime import ContainerRuntime, DockerRuntime
from .sdk import docker_cli


__all__ = [
    "DockerError",
    "DockerContainer",
    "ContainerRuntime",
    "DockerRuntime",
    "docker_cli",
]
