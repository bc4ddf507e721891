from __future__ import annotations

import subprocess
from typing import Any

import pytest

from datalab_container import gpu
from datalab_container.gpu import NvidiaSmiProvider, RuntimeCapabilities, StaticCapabilityProvider


def _fake_which(monkeypatch: pytest.MonkeyPatch, path: str | None) -> None:
    monkeypatch.setattr(gpu.shutil, "which", lambda name: path)


def test_missing_nvidia_smi_means_cpu_only(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_which(monkeypatch, None)

    def unexpected(*args: Any, **kwargs: Any) -> None:
        raise AssertionError("nvidia-smi must not be executed when it is not installed")

    monkeypatch.setattr(gpu.subprocess, "run", unexpected)

    assert NvidiaSmiProvider().probe() == RuntimeCapabilities.cpu_only()


def test_listed_gpus_are_counted(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_which(monkeypatch, "/usr/bin/nvidia-smi")
    stdout = "GPU 0: NVIDIA A100 (UUID: GPU-1)\nGPU 1: NVIDIA A100 (UUID: GPU-2)\n"
    monkeypatch.setattr(
        gpu.subprocess,
        "run",
        lambda argv, **kwargs: subprocess.CompletedProcess(argv, 0, stdout=stdout, stderr=""),
    )

    capabilities = NvidiaSmiProvider().probe()

    assert capabilities.gpu_available is True
    assert capabilities.gpu_count == 2


def test_driver_failure_means_cpu_only(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_which(monkeypatch, "/usr/bin/nvidia-smi")
    monkeypatch.setattr(
        gpu.subprocess,
        "run",
        lambda argv, **kwargs: subprocess.CompletedProcess(
            argv, 9, stdout="", stderr="NVIDIA-SMI has failed because it couldn't communicate"
        ),
    )

    assert NvidiaSmiProvider().probe().gpu_available is False


def test_hanging_nvidia_smi_means_cpu_only(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_which(monkeypatch, "/usr/bin/nvidia-smi")

    def hang(argv: list[str], **kwargs: Any) -> None:
        raise subprocess.TimeoutExpired(argv, kwargs["timeout"])

    monkeypatch.setattr(gpu.subprocess, "run", hang)

    assert NvidiaSmiProvider(timeout=0.1).probe().gpu_available is False


def test_static_provider_and_probe() -> None:
    assert gpu.probe(StaticCapabilityProvider(0)) == RuntimeCapabilities.cpu_only()
    assert gpu.probe(StaticCapabilityProvider(4)) == RuntimeCapabilities(gpu_available=True, gpu_count=4)
