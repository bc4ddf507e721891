"""Operator tooling for the Datalab inference container.

Authenticates to the private registry, resolves and pulls a versioned image,
detects GPUs, launches the container attached or detached, and supervises a
background instance with health-gated start, status, stop and crash restarts.
"""

from .config import RunConfiguration, get_settings
from .errors import (
    AlreadyRunningError,
    AuthError,
    ConfigError,
    DatalabError,
    LaunchError,
    NotRunningError,
    PullError,
    RegistryError,
    StartupTimeoutError,
)
from .gpu import RuntimeCapabilities
from .health import HealthCheckResult, HealthStatus
from .images import ResolvedImageReference, resolve
from .supervisor import DaemonSupervisor, InstanceState, RestartPolicy, StatusReport


__version__ = "0.1.0"

__all__ = [
    "AlreadyRunningError",
    "AuthError",
    "ConfigError",
    "DaemonSupervisor",
    "DatalabError",
    "HealthCheckResult",
    "HealthStatus",
    "InstanceState",
    "LaunchError",
    "NotRunningError",
    "PullError",
    "RegistryError",
    "ResolvedImageReference",
    "RestartPolicy",
    "RunConfiguration",
    "RuntimeCapabilities",
    "StartupTimeoutError",
    "StatusReport",
    "get_settings",
    "resolve",
]
