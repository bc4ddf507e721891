"""Configuration helpers for the inference container manager.

Expose `get_settings` as the canonical accessor for environment-driven
configuration and `RunConfiguration` as the validated, immutable input every
component receives. Modules should never read `os.environ` themselves.
"""

from .settings import (
    DaemonSettings,
    DatalabSettings,
    RunConfiguration,
    get_settings,
    require_key_file,
)


__all__ = [
    "DaemonSettings",
    "DatalabSettings",
    "RunConfiguration",
    "get_settings",
    "require_key_file",
]
