"""Centralised environment configuration for the inference container manager.

This module ensures `.env` loading happens in one place and exposes a
typed snapshot of the license, registry credentials, runtime bindings and
daemon tuning knobs. Downstream modules receive a `RunConfiguration` built
from that snapshot instead of touching `os.environ` directly, making it
easier to validate values and override behaviour in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path
import shlex

from dotenv import load_dotenv

from datalab_container.errors import ConfigError


DEFAULT_CONTAINER_VERSION = "latest"
DEFAULT_INFERENCE_PORT = 8000
DEFAULT_INFERENCE_HOST = "127.0.0.1"

_USAGE_EXAMPLE = "DATALAB_LICENSE_KEY=your-key SERVICE_ACCOUNT_KEY_FILE=./key.json datalab-inference"


def _coerce_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _coerce_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class DaemonSettings:
    max_restarts: int | None
    restart_delay: float | None
    restart_backoff: str | None
    startup_timeout: float | None
    health_interval: float | None


@dataclass(frozen=True)
class DatalabSettings:
    """Top-level snapshot of raw configuration values.

    Values are kept as read from the environment; validation happens when a
    `RunConfiguration` is built so that commands which do not need the
    license (``--status``, ``--stop``, the image lister) never fail on it.
    """

    env_file: Path
    license_key: str | None
    service_account_key_file: str | None
    container_version: str | None
    inference_port: str | None
    inference_host: str | None
    docker_extra_args: str | None
    license_server: str | None
    output_format: str | None
    daemon: DaemonSettings


def require_key_file(value: str | os.PathLike[str] | None) -> Path:
    """Return the service account key path or raise `ConfigError`.

    The file must exist and be a regular file. No network access happens
    here, so a missing key always fails before authentication is attempted.
    """
    if value is None or str(value).strip() == "":
        raise ConfigError(
            "SERVICE_ACCOUNT_KEY_FILE environment variable is required",
            hints=[f"Example: {_USAGE_EXAMPLE}"],
        )
    path = Path(value).expanduser()
    if not path.is_file():
        raise ConfigError(f"Service account key file not found: {path}")
    return path


def parse_port(value: str | None) -> int:
    if value is None or value.strip() == "":
        return DEFAULT_INFERENCE_PORT
    try:
        port = int(value)
    except ValueError as e:
        raise ConfigError(f"INFERENCE_PORT must be an integer, got '{value}'") from e
    if not (0 < port < 65536):
        raise ConfigError(f"INFERENCE_PORT value out of range: {port}")
    return port


def _parse_extra_args(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    try:
        return tuple(shlex.split(value))
    except ValueError as e:
        raise ConfigError(f"DOCKER_EXTRA_ARGS could not be parsed: {e}") from e


@dataclass(frozen=True)
class RunConfiguration:
    """Immutable, validated input for one run/daemon invocation."""

    license_key: str
    service_account_key_file: Path
    container_version: str = DEFAULT_CONTAINER_VERSION
    inference_port: int = DEFAULT_INFERENCE_PORT
    inference_host: str = DEFAULT_INFERENCE_HOST
    docker_extra_args: tuple[str, ...] = ()
    license_server: str | None = None

    @classmethod
    def from_settings(cls, settings: DatalabSettings) -> RunConfiguration:
        """Validate a settings snapshot and build the run configuration.

        Raises:
            ConfigError: When the license key or key file is missing, the key
                file does not exist, or the port or extra args are malformed.
        """
        license_key = _blank_to_none(settings.license_key)
        if license_key is None:
            raise ConfigError(
                "DATALAB_LICENSE_KEY environment variable is required",
                hints=[f"Example: {_USAGE_EXAMPLE}"],
            )
        key_file = require_key_file(settings.service_account_key_file)
        return cls(
            license_key=license_key,
            service_account_key_file=key_file,
            container_version=_blank_to_none(settings.container_version)
            or DEFAULT_CONTAINER_VERSION,
            inference_port=parse_port(settings.inference_port),
            inference_host=_blank_to_none(settings.inference_host) or DEFAULT_INFERENCE_HOST,
            docker_extra_args=_parse_extra_args(settings.docker_extra_args),
            license_server=_blank_to_none(settings.license_server),
        )

    @property
    def exposes_externally(self) -> bool:
        return self.inference_host in {"0.0.0.0", "::", "[::]"}


def _resolve_env_path(env_file: os.PathLike[str] | str | None) -> Path:
    if env_file is None:
        return (Path.cwd() / ".env").resolve()
    return Path(env_file).resolve()


@lru_cache(maxsize=4)
def _load_settings(env_path: Path) -> DatalabSettings:
    # Existing environment variables take precedence over `.env` defaults.
    load_dotenv(dotenv_path=env_path, override=False)

    daemon = DaemonSettings(
        max_restarts=_coerce_int(os.getenv("DAEMON_MAX_RESTARTS")),
        restart_delay=_coerce_float(os.getenv("DAEMON_RESTART_DELAY")),
        restart_backoff=os.getenv("DAEMON_RESTART_BACKOFF"),
        startup_timeout=_coerce_float(os.getenv("DAEMON_STARTUP_TIMEOUT")),
        health_interval=_coerce_float(os.getenv("DAEMON_HEALTH_INTERVAL")),
    )

    return DatalabSettings(
        env_file=env_path,
        license_key=os.getenv("DATALAB_LICENSE_KEY"),
        service_account_key_file=os.getenv("SERVICE_ACCOUNT_KEY_FILE"),
        container_version=os.getenv("CONTAINER_VERSION"),
        inference_port=os.getenv("INFERENCE_PORT"),
        inference_host=os.getenv("INFERENCE_HOST"),
        docker_extra_args=os.getenv("DOCKER_EXTRA_ARGS"),
        license_server=os.getenv("DATALAB_LICENSE_SERVER"),
        output_format=os.getenv("FORMAT"),
        daemon=daemon,
    )


def get_settings(
    env_file: os.PathLike[str] | str | None = None,
    *,
    reload: bool = False,
) -> DatalabSettings:
    """Return the cached settings snapshot.

    Args:
        env_file: Optional explicit path to a `.env` file. When omitted the
            `.env` file in the current working directory is used (if any).
        reload: When True the cached snapshot is cleared before loading.
    """
    env_path = _resolve_env_path(env_file)
    if reload:
        _load_settings.cache_clear()
    return _load_settings(env_path)
