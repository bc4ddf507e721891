"""Build and execute the ``docker run`` invocation for the inference server.

The run step goes through the Docker CLI rather than the SDK because
``DOCKER_EXTRA_ARGS`` is an opaque passthrough of CLI flags. The argv is built
deterministically by ``build_run_args``; the license key value travels in the
child environment (``-e DATALAB_LICENSE_KEY`` without a value) so it never
appears in the process list or in logged commands.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
import shlex
import subprocess
import sys
from typing import Optional

from datalab_container.config import RunConfiguration
from datalab_container.errors import LaunchError
from datalab_container.gpu import RuntimeCapabilities
from datalab_container.images import ResolvedImageReference
from datalab_container.utils.docker import ContainerRuntime, docker_cli
from datalab_container.utils.docker.output import relay_output
from datalab_container.utils.log_utils import logger, print_info, print_warning


DEFAULT_STOP_TIMEOUT = 30.0
# `docker run` exits with 125 when the daemon rejects the invocation itself.
DOCKER_RUN_ERROR_CODES = {125, 126, 127}
# Same code the CLI uses for Ctrl+C anywhere else.
EXIT_INTERRUPTED = 130


@dataclass(frozen=True)
class ProcessHandle:
    container_id: str
    name: str
    image: str


def build_run_args(
    config: RunConfiguration,
    ref: ResolvedImageReference,
    capabilities: RuntimeCapabilities,
    *,
    name: Optional[str] = None,
    detached: bool = False,
    labels: Optional[Mapping[str, str]] = None,
    interactive: bool = False,
) -> list[str]:
    """Return the ``docker`` argv (without the executable) for one launch.

    Args:
        config: Validated run configuration.
        ref: Image to run.
        capabilities: GPU flags are added only when a GPU is available.
        name: Container name (the instance's well-known identity).
        detached: ``-d`` instead of ``--rm``; detached containers are kept
            after exit so their exit code can be inspected.
        labels: Container labels, emitted in sorted order.
        interactive: Attach a TTY (``-it``) in attached mode.
    """
    port = config.inference_port
    args: list[str] = ["run"]
    if detached:
        args.append("-d")
    else:
        args.append("--rm")
        if interactive:
            args.append("-it")
    if name:
        args += ["--name", name]
    for key, value in sorted((labels or {}).items()):
        args += ["--label", f"{key}={value}"]
    if capabilities.gpu_available:
        args += ["--gpus", "all"]
    args += ["-p", f"{config.inference_host}:{port}:{port}"]
    args += ["-e", f"INFERENCE_PORT={port}", "-e", "DATALAB_LICENSE_KEY"]
    if config.license_server:
        args += ["-e", f"DATALAB_LICENSE_SERVER={config.license_server}"]
    args += list(config.docker_extra_args)
    args.append(ref.reference)
    return args


def run_environment(
    config: RunConfiguration, base: Optional[Mapping[str, str]] = None
) -> dict[str, str]:
    """Environment for the ``docker`` process carrying the license key."""
    env = dict(os.environ if base is None else base)
    env["DATALAB_LICENSE_KEY"] = config.license_key
    return env


def _launch_hints(stderr: str) -> list[str]:
    text = stderr.lower()
    hints: list[str] = []
    if "port is already allocated" in text or "address already in use" in text:
        hints.append("The inference port is already in use; choose another INFERENCE_PORT.")
    if "is already in use by container" in text or "conflict" in text:
        hints.append("An instance with the same name exists; check it with --status or --stop.")
    if "could not select device driver" in text:
        hints.append("GPU runtime is not configured for Docker (nvidia-container-toolkit).")
    if "no such image" in text or "unable to find image" in text:
        hints.append("Pull the image first; the run step never pulls.")
    if not hints:
        hints.append("Check DOCKER_EXTRA_ARGS and the Docker daemon logs.")
    return hints


def _announce(config: RunConfiguration, argv: list[str]) -> None:
    url = f"http://{config.inference_host}:{config.inference_port}"
    if config.exposes_externally:
        print_info(f"Container will be available at: {url} (accessible externally)")
        print_warning(
            "Binding to all interfaces exposes the service beyond this machine; "
            "restrict access with a firewall."
        )
    else:
        print_info(f"Container will be available at: {url}")
    logger.info(f"Docker command: {shlex.join(argv)}")


def launch(
    config: RunConfiguration,
    ref: ResolvedImageReference,
    capabilities: RuntimeCapabilities,
    *,
    attached: bool,
    runtime: ContainerRuntime,
    name: Optional[str] = None,
    labels: Optional[Mapping[str, str]] = None,
    stop_timeout: float = DEFAULT_STOP_TIMEOUT,
) -> ProcessHandle | int:
    """Run the container attached (blocking) or detached.

    Returns:
        The container's exit code in attached mode (``EXIT_INTERRUPTED``
        after Ctrl+C), a ``ProcessHandle`` in detached mode once Docker
        reports the container running.

    Raises:
        LaunchError: Image missing locally, port in use, name conflict or
            any other rejection by Docker.
    """
    if not runtime.image_exists(ref.reference):
        raise LaunchError(
            f"Container image not found locally: {ref}",
            hints=["The image must be pulled successfully before launching."],
        )

    interactive = attached and sys.stdin.isatty() and sys.stdout.isatty()
    argv = [
        docker_cli(),
        *build_run_args(
            config,
            ref,
            capabilities,
            name=name,
            detached=not attached,
            labels=labels,
            interactive=interactive,
        ),
    ]
    env = run_environment(config)
    _announce(config, argv)

    if attached:
        return _run_attached(argv, env, runtime=runtime, name=name, stop_timeout=stop_timeout)
    return _run_detached(argv, env, runtime=runtime, name=name, image=ref.reference)


def _run_attached(
    argv: list[str],
    env: dict[str, str],
    *,
    runtime: ContainerRuntime,
    name: Optional[str],
    stop_timeout: float,
) -> int:
    print_info("Press Ctrl+C to stop the container")
    try:
        process = subprocess.Popen(argv, env=env)
    except OSError as e:
        raise LaunchError("Failed to execute docker run.") from e
    try:
        code = process.wait()
    except KeyboardInterrupt:
        print_info("Stopping container (waiting for in-flight requests)...")
        container = runtime.find(name) if name else None
        if container is not None:
            container.stop(timeout=stop_timeout)
        code = process.wait()
        logger.debug(f"docker run exited with {code} after interrupt")
        return EXIT_INTERRUPTED
    if code in DOCKER_RUN_ERROR_CODES:
        raise LaunchError(f"docker run failed with exit code {code}", hints=_launch_hints(""))
    return code


def _run_detached(
    argv: list[str],
    env: dict[str, str],
    *,
    runtime: ContainerRuntime,
    name: Optional[str],
    image: str,
) -> ProcessHandle:
    try:
        result = subprocess.run(argv, env=env, capture_output=True, text=True, check=False)
    except OSError as e:
        raise LaunchError("Failed to execute docker run.") from e
    if result.returncode != 0:
        relay_output(result.stderr, "docker", level="debug")
        raise LaunchError(
            f"docker run failed: {result.stderr.strip() or f'exit code {result.returncode}'}",
            hints=_launch_hints(result.stderr),
        )

    lines = result.stdout.strip().splitlines()
    container_id = lines[-1].strip() if lines else ""
    if name:
        container = runtime.find(name)
    elif container_id:
        container = runtime.get(container_id)
    else:
        container = None
    if container is None or not container.is_running():
        if container is not None:
            relay_output(container.logs(tail=20), container.name, level="warning")
        raise LaunchError(
            "Container exited immediately after start",
            hints=["Inspect the container output above for license or startup errors."],
        )
    return ProcessHandle(container_id=container.id or container_id, name=container.name, image=image)


__all__ = [
    "EXIT_INTERRUPTED",
    "ProcessHandle",
    "build_run_args",
    "run_environment",
    "launch",
]
