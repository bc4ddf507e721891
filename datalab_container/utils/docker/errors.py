"""Custom exception types for Docker helpers."""

from __future__ import annotations

from datalab_container.errors import DatalabError


class DockerError(DatalabError):
    """Raised when the Docker daemon cannot be reached or queried.

    This covers a missing SDK connection, socket permission problems and
    unexpected API failures while inspecting containers by name.
    """

    pass


__all__ = ["DockerError"]
