from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import typer

from datalab_container import gpu, images, launcher, registry
from datalab_container.config import DatalabSettings, RunConfiguration, get_settings
from datalab_container.config.settings import parse_port
from datalab_container.supervisor import (
    DEFAULT_HEALTH_INTERVAL,
    DEFAULT_STARTUP_TIMEOUT,
    DaemonSupervisor,
    InstanceStatus,
    RestartPolicy,
    StatusReport,
    instance_labels,
    instance_name,
)
from datalab_container.utils.docker import DockerRuntime, docker_cli
from datalab_container.utils.log_utils import logger, mask_secret, print_info, print_success


EXIT_NOT_RUNNING = 3
EXIT_UNHEALTHY = 4


class Mode(str, Enum):
    RUN = "run"
    DAEMON = "daemon"
    STATUS = "status"
    STOP = "stop"


@dataclass(slots=True)
class RunOptions:
    mode: Mode = Mode.RUN
    supervise: bool = False
    max_restarts: int | None = None
    restart_delay: float | None = None
    backoff: str | None = None
    startup_timeout: float | None = None
    env_file: Path | None = None


def _display_configuration(config: RunConfiguration, ref: images.ResolvedImageReference) -> None:
    print_info("=== Datalab Inference Container Configuration ===")
    logger.info(f"Container Version: {config.container_version}")
    logger.info(f"Inference Port: {config.inference_port}")
    logger.info(f"Inference Host: {config.inference_host}")
    logger.info(f"License Key: {mask_secret(config.license_key)}")
    logger.info(f"Service Account Key: {config.service_account_key_file}")
    logger.info(f"Container Image: {ref}")


def _check_prerequisites(runtime: DockerRuntime) -> None:
    print_info("Checking prerequisites...")
    docker_cli()
    runtime.connect()
    print_success("Prerequisites check passed")


def _first_set(*values: float | None) -> float:
    # 0 is a legitimate setting, so only None falls through.
    return next(value for value in values if value is not None)


def _build_supervisor(
    settings: DatalabSettings,
    options: RunOptions,
    runtime: DockerRuntime,
    config: RunConfiguration | None = None,
) -> DaemonSupervisor:
    daemon = settings.daemon
    policy = RestartPolicy.from_settings(
        daemon,
        max_restarts=options.max_restarts,
        delay=options.restart_delay,
        backoff=options.backoff,
    )
    startup_timeout = _first_set(options.startup_timeout, daemon.startup_timeout, DEFAULT_STARTUP_TIMEOUT)
    health_interval = _first_set(daemon.health_interval, DEFAULT_HEALTH_INTERVAL)
    return DaemonSupervisor(
        config,
        port=parse_port(settings.inference_port),
        host=settings.inference_host or None,
        runtime=runtime,
        policy=policy,
        startup_timeout=startup_timeout,
        health_interval=health_interval,
    )


def run_attached(config: RunConfiguration, runtime: DockerRuntime, supervisor: DaemonSupervisor) -> int:
    """Pull and run the container in the foreground; return its exit code."""
    ref = images.resolve(config.container_version)
    _display_configuration(config, ref)
    _check_prerequisites(runtime)
    supervisor.check_not_running()

    print_info("Authenticating with Google Cloud...")
    session = registry.authenticate(config.service_account_key_file)
    print_success("Authenticated with Google Cloud")
    registry.configure_runtime(session, runtime)
    images.pull(runtime, ref, session)

    print_info("Checking GPU support...")
    capabilities = gpu.probe()

    print_info("=== Starting Datalab Inference Container ===")
    result = launcher.launch(
        config,
        ref,
        capabilities,
        attached=True,
        runtime=runtime,
        name=instance_name(config.inference_port),
        labels=instance_labels(config.inference_port),
    )
    return result if isinstance(result, int) else 0


def run_daemon(
    config: RunConfiguration, runtime: DockerRuntime, supervisor: DaemonSupervisor, *, supervise: bool
) -> int:
    ref = images.resolve(config.container_version)
    _display_configuration(config, ref)
    _check_prerequisites(runtime)
    instance = supervisor.start()
    logger.info(f"Container: {instance.name} ({instance.container_id[:12]})")
    if not supervise:
        print_info("Check it with --status and stop it with --stop")
        return 0
    print_info("Supervising the instance; press Ctrl+C to stop it")
    supervisor.supervise(instance)
    return 0


def render_status(report: StatusReport) -> str:
    lines = [f"{report.name}: {report.status.value}"]
    lines.append(f"  container state: {report.container_state}")
    if report.container_id:
        lines.append(f"  container id: {report.container_id[:12]}")
    if report.image:
        lines.append(f"  image: {report.image}")
    if report.started_at:
        lines.append(f"  started at: {report.started_at.isoformat()}")
    if report.exit_code is not None:
        lines.append(f"  exit code: {report.exit_code}")
    if report.health_detail:
        lines.append(f"  health: {report.health_detail}")
    return "\n".join(lines)


def report_status(supervisor: DaemonSupervisor) -> int:
    report = supervisor.status()
    typer.echo(render_status(report))
    if report.status is InstanceStatus.RUNNING:
        return 0
    if report.status in {InstanceStatus.RUNNING_UNHEALTHY, InstanceStatus.STOPPING}:
        return EXIT_UNHEALTHY
    return EXIT_NOT_RUNNING


def run(options: RunOptions) -> int:
    """Dispatch one invocation. Configuration is read exactly once, here."""
    settings = get_settings(options.env_file)
    runtime = DockerRuntime()

    if options.mode is Mode.STATUS:
        return report_status(_build_supervisor(settings, options, runtime))
    if options.mode is Mode.STOP:
        _build_supervisor(settings, options, runtime).stop()
        return 0

    config = RunConfiguration.from_settings(settings)
    supervisor = _build_supervisor(settings, options, runtime, config)
    if options.mode is Mode.DAEMON:
        return run_daemon(config, runtime, supervisor, supervise=options.supervise)
    return run_attached(config, runtime, supervisor)


__all__ = [
    "EXIT_NOT_RUNNING",
    "EXIT_UNHEALTHY",
    "Mode",
    "RunOptions",
    "render_status",
    "report_status",
    "run",
    "run_attached",
    "run_daemon",
]
