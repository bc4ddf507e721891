"""Dataclass wrapper for a Docker container instance."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import datetime
import re
from typing import Any

import docker

from .errors import DockerError
from .sdk import container_is_running


_DOCKER_TIME_RE = re.compile(r"^(?P<base>[^.Z+]+)(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d\d:\d\d)?$")


def _parse_docker_time(value: str | None) -> datetime | None:
    """Parse Docker's RFC 3339 timestamps (nanosecond precision, ``Z`` suffix)."""
    if not value or value.startswith("0001-01-01"):
        return None
    match = _DOCKER_TIME_RE.match(value)
    if match is None:
        return None
    frac = (match.group("frac") or "0")[:6].ljust(6, "0")
    tz = match.group("tz") or "Z"
    if tz == "Z":
        tz = "+00:00"
    try:
        return datetime.fromisoformat(f"{match.group('base')}.{frac}{tz}")
    except ValueError:
        return None


@dataclass(slots=True)
class DockerContainer:
    """A lightweight handle to a Docker container looked up by name.

    Attributes:
        id: Container ID (hash string).
        name: Container name.
        image: Image reference used to create it.
        status: Docker state string (``running``, ``exited``, ``created``...).
        exit_code: Exit code once the container has stopped.
        oom_killed: Whether the kernel OOM killer terminated it.
        started_at: Last start time reported by Docker.
        labels: Container labels.
    """

    id: str
    name: str
    image: str
    status: str
    _container: Any = field(repr=False)
    exit_code: int | None = None
    oom_killed: bool = False
    started_at: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_sdk(cls, container: Any) -> DockerContainer:
        attrs: dict[str, Any] = getattr(container, "attrs", None) or {}
        state: dict[str, Any] = attrs.get("State") or {}
        config: dict[str, Any] = attrs.get("Config") or {}
        status = state.get("Status") or getattr(container, "status", "") or ""
        exit_code = state.get("ExitCode") if status in {"exited", "dead"} else None
        return cls(
            id=getattr(container, "id", "") or "",
            name=(getattr(container, "name", "") or "").lstrip("/"),
            image=config.get("Image", ""),
            status=status,
            exit_code=exit_code,
            oom_killed=bool(state.get("OOMKilled", False)),
            started_at=_parse_docker_time(state.get("StartedAt")),
            labels=dict(config.get("Labels") or {}),
            _container=container,
        )

    def is_running(self) -> bool:
        """Return whether the container is still running."""
        return container_is_running(self._container)

    def rename(self, new_name: str) -> None:
        try:
            self._container.rename(new_name)
        except docker.errors.APIError as e:
            raise DockerError(f"Failed to rename container '{self.name}'.") from e
        self.name = new_name

    def stop(self, timeout: float = 10.0) -> None:
        """Send SIGTERM, then SIGKILL after ``timeout`` seconds."""
        try:
            self._container.stop(timeout=int(timeout))
        except docker.errors.NotFound:
            return
        except docker.errors.APIError as e:
            raise DockerError(f"Failed to stop container '{self.name}'.") from e

    def remove(self) -> None:
        with contextlib.suppress(docker.errors.NotFound):
            try:
                self._container.remove(force=True)
            except docker.errors.APIError as e:
                # Removal already in progress (e.g. auto-remove) is not an error.
                if "already in progress" not in str(e):
                    raise DockerError(f"Failed to remove container '{self.name}'.") from e

    def logs(self, tail: int | None = None) -> str:
        """Return combined stdout/stderr logs as text snapshot."""
        try:
            logs = self._container.logs(
                tail=tail if tail is not None else "all", stdout=True, stderr=True
            )
        except docker.errors.APIError as e:  # pragma: no cover
            raise DockerError("Failed to retrieve container logs.") from e
        if isinstance(logs, bytes | bytearray):
            return logs.decode("utf-8", errors="replace")
        return str(logs)


__all__ = ["DockerContainer"]
