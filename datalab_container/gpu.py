"""GPU capability detection.

Detection is best-effort: a GPU is an optimisation, never a requirement, so
every failure mode (tool missing, driver error, timeout) reads as "no GPU".
The launcher only sees the resulting ``RuntimeCapabilities`` and never how it
was obtained.
"""

from __future__ import annotations

from dataclasses import dataclass
import shutil
import subprocess
from typing import Protocol

from datalab_container.utils.log_utils import logger, print_success, print_warning


@dataclass(frozen=True)
class RuntimeCapabilities:
    gpu_available: bool
    gpu_count: int = 0

    @classmethod
    def cpu_only(cls) -> RuntimeCapabilities:
        return cls(gpu_available=False, gpu_count=0)

    @classmethod
    def with_gpus(cls, count: int) -> RuntimeCapabilities:
        if count < 1:
            return cls.cpu_only()
        return cls(gpu_available=True, gpu_count=count)


class CapabilityProvider(Protocol):
    def probe(self) -> RuntimeCapabilities: ...


class StaticCapabilityProvider:
    """Always reports the same GPU count (0 forces CPU-only mode)."""

    def __init__(self, gpu_count: int = 0) -> None:
        self.gpu_count = gpu_count

    def probe(self) -> RuntimeCapabilities:
        return RuntimeCapabilities.with_gpus(self.gpu_count)


class NvidiaSmiProvider:
    """Counts GPUs listed by ``nvidia-smi -L``."""

    def __init__(self, executable: str = "nvidia-smi", timeout: float = 10.0) -> None:
        self.executable = executable
        self.timeout = timeout

    def probe(self) -> RuntimeCapabilities:
        path = shutil.which(self.executable)
        if path is None:
            logger.debug(f"{self.executable} not found in PATH")
            return RuntimeCapabilities.cpu_only()
        try:
            result = subprocess.run(
                [path, "-L"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"{self.executable} failed: {e}")
            return RuntimeCapabilities.cpu_only()
        if result.returncode != 0:
            logger.debug(f"{self.executable} exit {result.returncode}: {result.stderr.strip()}")
            return RuntimeCapabilities.cpu_only()
        count = sum(1 for line in result.stdout.splitlines() if line.strip())
        return RuntimeCapabilities.with_gpus(count)


def probe(provider: CapabilityProvider | None = None) -> RuntimeCapabilities:
    """Probe the host and report the outcome on the console."""
    capabilities = (provider or NvidiaSmiProvider()).probe()
    if capabilities.gpu_available:
        print_success(f"Found {capabilities.gpu_count} GPU(s), enabling GPU support")
    else:
        print_warning("No GPUs detected, running in CPU-only mode (performance will be limited)")
    return capabilities


__all__ = [
    "RuntimeCapabilities",
    "CapabilityProvider",
    "StaticCapabilityProvider",
    "NvidiaSmiProvider",
    "probe",
]
