"""Exception taxonomy for the inference container manager.

Every fatal condition is one of the subclasses below. Components translate
lower-level failures (Docker SDK, Google API, httpx, subprocess) at their own
boundary and chain the original exception, so the CLI only ever has to render
a ``DatalabError``.
"""

from __future__ import annotations

from collections.abc import Iterable


class DatalabError(RuntimeError):
    """Base class for all fatal errors raised by this package.

    Attributes:
        hints: Ordered remediation suggestions shown below the message.
    """

    def __init__(self, message: str, hints: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.hints: tuple[str, ...] = tuple(hints)


class ConfigError(DatalabError):
    """Required input is missing or malformed (raised before any network call)."""


class AuthError(DatalabError):
    """The registry rejected the service account credentials.

    Attributes:
        transient: True when Google could not be reached, as opposed to the
            credentials being refused. Only transient failures are worth
            retrying.
    """

    def __init__(self, message: str, hints: Iterable[str] = (), *, transient: bool = False) -> None:
        super().__init__(message, hints)
        self.transient = transient


class RegistryError(DatalabError):
    """Listing or querying the registry failed after authentication."""


class PullError(DatalabError):
    """The container image could not be fetched."""


class LaunchError(DatalabError):
    """Docker refused or failed to run the container."""


class AlreadyRunningError(DatalabError):
    """An instance with the well-known name is already running."""


class NotRunningError(DatalabError):
    """No instance with the well-known name exists."""


class StartupTimeoutError(DatalabError):
    """The health endpoint did not confirm readiness before the deadline."""


__all__ = [
    "DatalabError",
    "ConfigError",
    "AuthError",
    "RegistryError",
    "PullError",
    "LaunchError",
    "AlreadyRunningError",
    "NotRunningError",
    "StartupTimeoutError",
]
