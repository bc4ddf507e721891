"""Health polling for the inference server's ``/health_check`` endpoint."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import time

import httpx

from datalab_container.errors import LaunchError, StartupTimeoutError
from datalab_container.utils.log_utils import logger


HEALTH_PATH = "/health_check"
DEFAULT_REQUEST_TIMEOUT = 5.0
_WILDCARD_HOSTS = {"0.0.0.0", "::", "[::]", ""}


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HealthCheckResult:
    status: HealthStatus
    checked_at: datetime = field(default_factory=_now)
    detail: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY


Poller = Callable[[str, int, float], HealthCheckResult]


def health_url(host: str, port: int) -> str:
    """URL of the health endpoint; wildcard binds are polled on loopback."""
    target = "127.0.0.1" if host in _WILDCARD_HOSTS else host
    if ":" in target and not target.startswith("["):
        target = f"[{target}]"
    return f"http://{target}:{port}{HEALTH_PATH}"


def poll(
    host: str,
    port: int,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    *,
    client: httpx.Client | None = None,
) -> HealthCheckResult:
    """Issue one bounded request to the health endpoint.

    Only a ``200`` response whose JSON body is ``{"status": "healthy"}`` counts
    as healthy. Error statuses, malformed payloads, timeouts and connection
    errors all map to ``unhealthy``.
    """
    url = health_url(host, port)
    try:
        if client is None:
            response = httpx.get(url, timeout=timeout)
        else:
            response = client.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        return HealthCheckResult(HealthStatus.UNHEALTHY, detail=f"{type(e).__name__}: {e}")

    if response.status_code != 200:
        return HealthCheckResult(HealthStatus.UNHEALTHY, detail=f"HTTP {response.status_code}")
    try:
        payload = response.json()
    except ValueError:
        return HealthCheckResult(HealthStatus.UNHEALTHY, detail="malformed payload")
    if isinstance(payload, dict) and payload.get("status") == "healthy":
        return HealthCheckResult(HealthStatus.HEALTHY)
    return HealthCheckResult(HealthStatus.UNHEALTHY, detail=f"unexpected payload: {payload!r}")


def wait_until_healthy(
    host: str,
    port: int,
    *,
    deadline: float,
    interval: float,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    poller: Poller = poll,
    is_alive: Callable[[], bool] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> HealthCheckResult:
    """Poll at a fixed interval until healthy or ``deadline`` seconds pass.

    Args:
        host: Bind host of the instance.
        port: Inference port of the instance.
        deadline: Overall startup budget in seconds.
        interval: Pause between polls in seconds.
        request_timeout: Per-request timeout in seconds.
        poller: Single-poll function (``poll`` by default).
        is_alive: Optional liveness check run before each poll; when it
            returns False the wait ends early.
        clock: Monotonic clock used for the deadline.
        sleep: Sleep function used between polls.

    Raises:
        StartupTimeoutError: The deadline passed without a healthy result.
            The process may still become healthy later.
        LaunchError: ``is_alive`` reported the process as gone.
    """
    end = clock() + deadline
    attempts = 0
    while True:
        if is_alive is not None and not is_alive():
            raise LaunchError(
                "Container exited before the health check succeeded",
                hints=["Inspect the container output for license or startup errors."],
            )
        attempts += 1
        result = poller(host, port, request_timeout)
        if result.healthy:
            logger.debug(f"Health check passed after {attempts} attempt(s)")
            return result
        logger.debug(f"Health check attempt {attempts}: {result.detail or result.status.value}")
        remaining = end - clock()
        if remaining <= 0:
            raise StartupTimeoutError(
                f"Inference server did not report healthy within {deadline:g}s",
                hints=[
                    "The container may still be starting; check it with --status.",
                    "Increase DAEMON_STARTUP_TIMEOUT for slow model loads.",
                ],
            )
        sleep(min(interval, remaining))


__all__ = [
    "HEALTH_PATH",
    "HealthStatus",
    "HealthCheckResult",
    "health_url",
    "poll",
    "wait_until_healthy",
]
