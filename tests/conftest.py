"""Shared fakes for the Docker runtime and an isolated settings environment."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import docker
import pytest

from datalab_container.config import settings as settings_module
from datalab_container.utils.docker import DockerContainer


_ENV_KEYS = (
    "DATALAB_LICENSE_KEY",
    "SERVICE_ACCOUNT_KEY_FILE",
    "CONTAINER_VERSION",
    "INFERENCE_PORT",
    "INFERENCE_HOST",
    "DOCKER_EXTRA_ARGS",
    "DATALAB_LICENSE_SERVER",
    "FORMAT",
    "DAEMON_MAX_RESTARTS",
    "DAEMON_RESTART_DELAY",
    "DAEMON_RESTART_BACKOFF",
    "DAEMON_STARTUP_TIMEOUT",
    "DAEMON_HEALTH_INTERVAL",
)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Run every test in an empty directory with no ambient configuration."""
    for key in _ENV_KEYS:
        # setenv first so teardown also removes values loaded from .env files.
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    settings_module._load_settings.cache_clear()
    yield
    settings_module._load_settings.cache_clear()


@pytest.fixture
def key_file(tmp_path: Path) -> Path:
    path = tmp_path / "key.json"
    path.write_text('{"type": "service_account"}', encoding="utf-8")
    return path


class FakeSdkContainer:
    """Mimics the parts of ``docker.models.containers.Container`` we use."""

    def __init__(
        self,
        runtime: FakeRuntime,
        name: str,
        *,
        status: str = "running",
        exit_code: int = 0,
        oom_killed: bool = False,
        logs: bytes = b"",
        image: str = "",
        labels: dict[str, str] | None = None,
    ) -> None:
        self.runtime = runtime
        self.id = f"{name}-0123456789abcdef"
        self.name = name
        self.status = status
        self.exit_code = exit_code
        self.oom_killed = oom_killed
        self.log_bytes = logs
        self.image = image
        self.labels = dict(labels or {})
        self.stop_timeouts: list[int] = []
        self.stop_error: Exception | None = None

    @property
    def attrs(self) -> dict[str, Any]:
        return {
            "State": {
                "Status": self.status,
                "ExitCode": self.exit_code,
                "OOMKilled": self.oom_killed,
                "StartedAt": "2026-01-02T03:04:05.123456789Z",
            },
            "Config": {"Image": self.image, "Labels": self.labels},
        }

    def reload(self) -> None:
        if self not in self.runtime.containers:
            raise docker.errors.NotFound("No such container")

    def stop(self, timeout: int = 10) -> None:
        self.stop_timeouts.append(timeout)
        if self.stop_error is not None:
            raise self.stop_error
        self.status = "exited"
        self.exit_code = 143

    def remove(self, force: bool = False) -> None:
        if self not in self.runtime.containers:
            raise docker.errors.NotFound("No such container")
        self.runtime.containers.remove(self)

    def rename(self, name: str) -> None:
        self.name = name

    def logs(self, **kwargs: Any) -> bytes:
        return self.log_bytes

    def crash(self, exit_code: int = 1, logs: bytes = b"") -> None:
        self.status = "exited"
        self.exit_code = exit_code
        self.log_bytes = logs


class FakeRuntime:
    """In-memory ``ContainerRuntime``."""

    def __init__(self) -> None:
        self.containers: list[FakeSdkContainer] = []
        self.images: set[str] = set()
        self.pulls: list[tuple[str, str, dict[str, str] | None]] = []
        self.logins: list[dict[str, str]] = []
        self.pull_error: Exception | None = None

    def add(self, name: str, **kwargs: Any) -> FakeSdkContainer:
        container = FakeSdkContainer(self, name, **kwargs)
        self.containers.append(container)
        return container

    def sdk(self, name: str) -> FakeSdkContainer | None:
        return next((c for c in self.containers if c.name == name), None)

    def find(self, name: str) -> DockerContainer | None:
        container = self.sdk(name)
        return DockerContainer.from_sdk(container) if container is not None else None

    def get(self, container_id: str) -> DockerContainer | None:
        container = next((c for c in self.containers if c.id.startswith(container_id)), None)
        return DockerContainer.from_sdk(container) if container is not None else None

    def image_exists(self, reference: str) -> bool:
        return reference in self.images

    def pull(self, repository: str, tag: str, auth_config: Any = None) -> str:
        self.pulls.append((repository, tag, dict(auth_config) if auth_config else None))
        if self.pull_error is not None:
            raise self.pull_error
        self.images.add(f"{repository}:{tag}")
        return "sha256:feedface"

    def login(self, *, username: str, password: str, registry: str) -> None:
        self.logins.append({"username": username, "password": password, "registry": registry})


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
