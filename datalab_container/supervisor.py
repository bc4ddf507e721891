"""Daemon supervision: health-gated start, status, stop and crash restarts.

Instance identity lives entirely in Docker. Each instance runs as the
container ``datalab-inference-<port>`` (plus management labels), so separate
invocations of the tool find the same instance by querying the runtime and
no state file is needed.

An operator stop renames the container before stopping it. A restart loop
watching the well-known name therefore sees the name vanish (operator stop,
no restart) rather than an exited container (crash, restart).

Lifecycle::

    Stopped -> Starting -> Running -> Crashed -> Restarting -> Starting
                                   \\-> Stopping -> Stopped
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
import re
import time
from typing import Any, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_exponential,
    wait_fixed,
)

from datalab_container import gpu, health, images, launcher, registry
from datalab_container.config import DaemonSettings, RunConfiguration
from datalab_container.config.settings import DEFAULT_INFERENCE_HOST, DEFAULT_INFERENCE_PORT
from datalab_container.errors import (
    AlreadyRunningError,
    AuthError,
    ConfigError,
    LaunchError,
    NotRunningError,
    PullError,
    StartupTimeoutError,
)
from datalab_container.health import HealthStatus
from datalab_container.utils.docker import ContainerRuntime, DockerContainer, DockerError, DockerRuntime
from datalab_container.utils.docker.output import relay_output
from datalab_container.utils.log_utils import logger, print_info, print_success, print_warning


MANAGED_LABEL = "to.datalab.inference.managed"
PORT_LABEL = "to.datalab.inference.port"
STOPPING_SUFFIX = "-stopping"

DEFAULT_STARTUP_TIMEOUT = 600.0
DEFAULT_HEALTH_INTERVAL = 5.0
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_STOP_TIMEOUT = 30.0
DEFAULT_RESTART_DELAY = 5.0
CRASH_LOG_TAIL = 50

_LICENSE_FAILURE_RE = re.compile(
    r"(invalid|expired|revoked|rejected|unauthori[sz]ed)\s+licen[cs]e"
    r"|licen[cs]e\s+(key\s+)?(is\s+)?(invalid|expired|revoked|rejected|not valid|verification failed)",
    re.IGNORECASE,
)


def instance_name(port: int) -> str:
    """Well-known container name for the instance serving ``port``."""
    return f"{images.IMAGE_NAME}-{port}"


def instance_labels(port: int) -> dict[str, str]:
    return {MANAGED_LABEL: "true", PORT_LABEL: str(port)}


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPING = "stopping"


class InstanceStatus(str, Enum):
    NOT_RUNNING = "not_running"
    RUNNING = "running"
    RUNNING_UNHEALTHY = "running_unhealthy"
    STOPPING = "stopping"


class CrashReason(str, Enum):
    CRASH = "crash"
    OOM = "oom"
    LICENSE_FAILURE = "license_failure"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass
class InstanceState:
    container_id: str
    name: str
    desired_running: bool = True
    started_at: Optional[datetime] = None
    restart_count: int = 0
    health: HealthStatus = HealthStatus.UNKNOWN


@dataclass(frozen=True)
class StatusReport:
    status: InstanceStatus
    name: str
    container_state: str
    container_id: Optional[str] = None
    exit_code: Optional[int] = None
    image: Optional[str] = None
    started_at: Optional[datetime] = None
    health_detail: Optional[str] = None


@dataclass(frozen=True)
class RestartPolicy:
    """Restart ceiling and backoff for the supervision loop.

    Attributes:
        max_restarts: Restart ceiling; ``None`` restarts forever.
        backoff: Fixed delay or exponential growth capped at ``max_delay``.
        delay: Fixed delay, or the first delay of the exponential series.
        max_delay: Upper bound for exponential backoff.
        warn_after: Log a warning on every restart past this count.
        restart_on_license_failure: Restart even when the container output
            shows the license was rejected.
    """

    max_restarts: Optional[int] = None
    backoff: BackoffStrategy = BackoffStrategy.FIXED
    delay: float = DEFAULT_RESTART_DELAY
    max_delay: float = 300.0
    warn_after: int = 5
    restart_on_license_failure: bool = False

    def __post_init__(self) -> None:
        if self.max_restarts is not None and self.max_restarts < 0:
            raise ConfigError(f"Maximum restarts must be >= 0, got {self.max_restarts}")
        if self.delay < 0 or self.max_delay < 0:
            raise ConfigError("Restart delays must be >= 0")

    @classmethod
    def from_settings(
        cls,
        settings: DaemonSettings,
        *,
        max_restarts: Optional[int] = None,
        delay: Optional[float] = None,
        backoff: Optional[str] = None,
    ) -> RestartPolicy:
        """Build a policy from environment settings; explicit arguments win."""
        raw_backoff = backoff or settings.restart_backoff or BackoffStrategy.FIXED.value
        try:
            strategy = BackoffStrategy(raw_backoff.strip().lower())
        except ValueError as e:
            raise ConfigError(
                f"Invalid restart backoff: {raw_backoff}. Valid options: fixed, exponential"
            ) from e
        chosen_delay = delay if delay is not None else settings.restart_delay
        return cls(
            max_restarts=max_restarts if max_restarts is not None else settings.max_restarts,
            backoff=strategy,
            delay=chosen_delay if chosen_delay is not None else DEFAULT_RESTART_DELAY,
        )

    def wait_strategy(self) -> Any:
        if self.backoff is BackoffStrategy.EXPONENTIAL:
            return wait_exponential(multiplier=self.delay, max=self.max_delay)
        return wait_fixed(self.delay)

    def stop_strategy(self) -> Any:
        if self.max_restarts is None:
            return stop_never
        # First attempt is the already-running instance; each retry is a restart.
        return stop_after_attempt(self.max_restarts + 1)


class LicenseRejectedError(LaunchError):
    """The inference server refused the license; restarting would not help."""


class InstanceCrashed(LaunchError):
    """The supervised container exited without an operator stop."""

    def __init__(self, name: str, reason: CrashReason, exit_code: Optional[int]) -> None:
        super().__init__(
            f"Container '{name}' exited unexpectedly (exit code {exit_code}, {reason.value})",
            hints=["Inspect the container output above for the cause."],
        )
        self.reason = reason
        self.exit_code = exit_code


def _log_tail(container: DockerContainer, lines: int = CRASH_LOG_TAIL) -> str:
    try:
        return container.logs(tail=lines)
    except DockerError as e:
        logger.debug(f"Could not read logs of '{container.name}': {e}")
        return ""


def classify_exit(container: DockerContainer, logs: Optional[str] = None) -> CrashReason:
    """Classify why an exited container stopped, from its state and log tail."""
    if container.oom_killed:
        return CrashReason.OOM
    tail = _log_tail(container) if logs is None else logs
    if _LICENSE_FAILURE_RE.search(tail):
        return CrashReason.LICENSE_FAILURE
    return CrashReason.CRASH


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_restartable(error: BaseException) -> bool:
    if isinstance(error, LicenseRejectedError):
        return False
    if isinstance(error, AuthError):
        return error.transient
    return isinstance(error, (LaunchError, PullError, DockerError))


class DaemonSupervisor:
    """Owns the lifecycle of one background instance.

    ``status`` and ``stop`` only need the port (and host for health polling);
    ``start`` and ``supervise`` also need a ``RunConfiguration``.
    """

    def __init__(
        self,
        config: Optional[RunConfiguration] = None,
        *,
        port: Optional[int] = None,
        host: Optional[str] = None,
        runtime: Optional[ContainerRuntime] = None,
        capability_provider: Optional[gpu.CapabilityProvider] = None,
        policy: Optional[RestartPolicy] = None,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        poller: health.Poller = health.poll,
        authenticate: Callable[..., registry.RegistrySession] = registry.authenticate,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.port = port or (config.inference_port if config else DEFAULT_INFERENCE_PORT)
        self.host = host or (config.inference_host if config else DEFAULT_INFERENCE_HOST)
        self.name = instance_name(self.port)
        self.runtime: ContainerRuntime = runtime or DockerRuntime()
        self.capability_provider = capability_provider
        self.policy = policy or RestartPolicy()
        self.startup_timeout = startup_timeout
        self.health_interval = health_interval
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout
        self._poller = poller
        self._authenticate = authenticate
        self._clock = clock
        self._sleep = sleep
        self.state = SupervisorState.STOPPED
        self.instance: Optional[InstanceState] = None

    # -- queries -----------------------------------------------------------------

    def _find(self) -> Optional[DockerContainer]:
        return self.runtime.find(self.name)

    def _find_stopping(self) -> Optional[DockerContainer]:
        """The instance renamed by an operator stop that has not finished yet."""
        container = self.runtime.find(self.name + STOPPING_SUFFIX)
        if container is None or container.labels.get(PORT_LABEL) != str(self.port):
            return None
        return container

    def _is_alive(self) -> bool:
        container = self._find()
        return container is not None and container.status == "running"

    def _require_instance(self) -> DockerContainer:
        container = self._find()
        if container is None:
            raise NotRunningError(f"No instance named '{self.name}' is running")
        return container

    def status(self) -> StatusReport:
        """Report the instance's state as seen by Docker and the health endpoint.

        Read-only: nothing is started, stopped or removed.
        """
        container = self._find()
        if container is None or container.status != "running":
            stopping = self._find_stopping()
            if stopping is not None and stopping.status == "running":
                return StatusReport(
                    InstanceStatus.STOPPING,
                    self.name,
                    container_state="stopping",
                    container_id=stopping.id,
                    image=stopping.image,
                    started_at=stopping.started_at,
                )
        if container is None:
            return StatusReport(InstanceStatus.NOT_RUNNING, self.name, container_state="absent")
        if container.status != "running":
            return StatusReport(
                InstanceStatus.NOT_RUNNING,
                self.name,
                container_state=container.status,
                container_id=container.id,
                exit_code=container.exit_code,
                image=container.image,
                started_at=container.started_at,
            )
        result = self._poller(self.host, self.port, health.DEFAULT_REQUEST_TIMEOUT)
        return StatusReport(
            InstanceStatus.RUNNING if result.healthy else InstanceStatus.RUNNING_UNHEALTHY,
            self.name,
            container_state=container.status,
            container_id=container.id,
            image=container.image,
            started_at=container.started_at,
            health_detail=result.detail,
        )

    # -- start -------------------------------------------------------------------

    def _require_config(self) -> RunConfiguration:
        if self.config is None:
            raise ConfigError("A run configuration is required to start an instance")
        return self.config

    def _login(self) -> registry.RegistrySession:
        config = self._require_config()
        print_info("Authenticating with Google Cloud...")
        session = self._authenticate(config.service_account_key_file)
        print_success("Authenticated with Google Cloud")
        registry.configure_runtime(session, self.runtime)
        return session

    def start(self) -> InstanceState:
        """Start a detached instance and wait until it reports healthy.

        Raises:
            AlreadyRunningError: The well-known name is already running; no
                pull or launch happens.
            StartupTimeoutError: The container is up but never reported
                healthy in time. It is left running for ``status`` to see.
        """
        config = self._require_config()
        self.check_not_running()
        session = self._login()
        return self._launch_and_wait(config, session, restart_count=0)

    def check_not_running(self) -> None:
        """Raise if the well-known name is running; clear an exited leftover.

        Raises:
            AlreadyRunningError: A container with the name is running, or the
                previous instance is still shutting down under its stop name.
        """
        stopping = self._find_stopping()
        if stopping is not None and stopping.status == "running":
            raise AlreadyRunningError(
                f"The previous instance '{self.name}' is still stopping",
                hints=[
                    "Wait for it to finish, or run --stop again to complete the stop.",
                    "Use a different INFERENCE_PORT to run another instance.",
                ],
            )
        existing = self._find()
        if existing is None:
            return
        if existing.status == "running":
            raise AlreadyRunningError(
                f"An instance is already running as '{self.name}'",
                hints=[
                    "Check it with --status or stop it with --stop.",
                    "Use a different INFERENCE_PORT to run another instance.",
                ],
            )
        logger.info(f"Removing exited container '{self.name}' left by a previous run")
        existing.remove()

    def _launch_and_wait(
        self,
        config: RunConfiguration,
        session: registry.RegistrySession,
        *,
        restart_count: int,
    ) -> InstanceState:
        self.state = SupervisorState.STARTING
        ref = images.resolve(config.container_version)
        images.pull(self.runtime, ref, session)
        capabilities = gpu.probe(self.capability_provider)
        handle = launcher.launch(
            config,
            ref,
            capabilities,
            attached=False,
            runtime=self.runtime,
            name=self.name,
            labels=instance_labels(self.port),
            stop_timeout=self.stop_timeout,
        )
        instance = InstanceState(
            container_id=handle.container_id,
            name=handle.name,
            started_at=_utcnow(),
            restart_count=restart_count,
            health=HealthStatus.STARTING,
        )
        self.instance = instance

        print_info(f"Waiting for the inference server to become healthy (up to {self.startup_timeout:g}s)...")
        try:
            health.wait_until_healthy(
                self.host,
                self.port,
                deadline=self.startup_timeout,
                interval=self.health_interval,
                poller=self._poller,
                is_alive=self._is_alive,
                clock=self._clock,
                sleep=self._sleep,
            )
        except StartupTimeoutError:
            instance.health = HealthStatus.UNHEALTHY
            raise
        except LaunchError:
            instance.health = HealthStatus.UNHEALTHY
            self.state = SupervisorState.CRASHED
            raise
        instance.health = HealthStatus.HEALTHY
        self.state = SupervisorState.RUNNING
        print_success(f"Inference server '{self.name}' is healthy")
        return instance

    # -- stop --------------------------------------------------------------------

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Gracefully stop and remove the instance.

        Idempotent: when no instance exists this is a successful no-op. A stop
        that failed part-way leaves the container under its stop name; calling
        this again finishes it.

        Returns:
            True if a running container was stopped, False otherwise.
        """
        try:
            container = self._require_instance()
        except NotRunningError as e:
            stopping = self._find_stopping()
            if stopping is None:
                print_info(f"{e.message}; nothing to stop")
                return False
            print_info(f"Finishing the interrupted stop of '{self.name}'...")
            return self._stop_container(stopping, timeout)

        if self.instance is not None:
            self.instance.desired_running = False
        if container.status != "running":
            logger.info(f"Removing exited container '{self.name}' (status: {container.status})")
            container.remove()
            self.state = SupervisorState.STOPPED
            return False

        leftover = self.runtime.find(self.name + STOPPING_SUFFIX)
        if leftover is not None:
            leftover.remove()
        # Renaming first lets a watching supervisor tell this apart from a crash.
        container.rename(self.name + STOPPING_SUFFIX)
        print_info(f"Stopping '{self.name}' (waiting for in-flight requests)...")
        return self._stop_container(container, timeout)

    def _stop_container(self, container: DockerContainer, timeout: Optional[float]) -> bool:
        self.state = SupervisorState.STOPPING
        was_running = container.status == "running"
        container.stop(timeout=timeout if timeout is not None else self.stop_timeout)
        container.remove()
        self.state = SupervisorState.STOPPED
        if self.instance is not None:
            self.instance.health = HealthStatus.STOPPED
        print_success(f"Stopped '{self.name}'")
        return was_running

    # -- restart loop ------------------------------------------------------------

    def _watch(self, instance: InstanceState) -> None:
        """Block until the instance goes away (return) or crashes (raise)."""
        while True:
            self._sleep(self.poll_interval)
            container = self._find()
            if container is None:
                instance.desired_running = False
                instance.health = HealthStatus.STOPPED
                self.state = SupervisorState.STOPPED
                print_info(f"Instance '{self.name}' was stopped by the operator; not restarting")
                return
            if container.status not in {"exited", "dead"}:
                continue

            self.state = SupervisorState.CRASHED
            instance.health = HealthStatus.UNHEALTHY
            tail = _log_tail(container)
            reason = classify_exit(container, tail)
            print_warning(
                f"Instance '{self.name}' exited with code {container.exit_code} ({reason.value})"
            )
            relay_output(tail, self.name, level="warning", limit=20)
            if reason is CrashReason.LICENSE_FAILURE and not self.policy.restart_on_license_failure:
                raise LicenseRejectedError(
                    "The inference server rejected the license; not restarting",
                    hints=[
                        "Check DATALAB_LICENSE_KEY and DATALAB_LICENSE_SERVER.",
                        "Each license allows a limited number of concurrent instances.",
                    ],
                )
            raise InstanceCrashed(self.name, reason, container.exit_code)

    def _restart(self, restart_count: int) -> InstanceState:
        config = self._require_config()
        self.state = SupervisorState.RESTARTING
        stale = self._find()
        if stale is not None:
            if stale.status == "running":
                logger.info(f"'{self.name}' is running again; resuming supervision")
                instance = replace(
                    self.instance or InstanceState(container_id=stale.id, name=self.name),
                    container_id=stale.id,
                    restart_count=restart_count,
                    health=HealthStatus.UNKNOWN,
                )
                self.instance = instance
                self.state = SupervisorState.RUNNING
                return instance
            stale.remove()

        session = self._login()
        try:
            return self._launch_and_wait(config, session, restart_count=restart_count)
        except StartupTimeoutError as e:
            # Still alive; keep watching rather than killing a slow start.
            if self.instance is None:
                raise
            print_warning(f"{e.message}; continuing to supervise")
            self.state = SupervisorState.RUNNING
            return self.instance

    def _before_restart(self, retry_state: RetryCallState) -> None:
        restarts = retry_state.attempt_number
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        print_info(f"Restarting '{self.name}' in {delay:g}s (restart #{restarts})")
        if restarts > self.policy.warn_after:
            print_warning(
                f"'{self.name}' has been restarted {restarts} times; "
                "check the container output for a persistent failure"
            )

    def supervise(self, instance: Optional[InstanceState] = None) -> InstanceState:
        """Watch a started instance and restart it after unexpected exits.

        Runs until the instance is stopped by an operator (here via Ctrl+C or
        from another invocation with ``--stop``), a non-restartable failure
        occurs, or the restart ceiling is reached.

        Raises:
            InstanceCrashed: The restart ceiling was reached.
            LaunchError: The license was rejected, or a restart could not be
                launched and the ceiling was reached.
            PullError: A restart could not pull the image and the ceiling was
                reached.
        """
        current = instance or self.instance
        if current is None:
            raise NotRunningError("No started instance to supervise")
        self.instance = current

        retrying = Retrying(
            retry=retry_if_exception(_is_restartable),
            wait=self.policy.wait_strategy(),
            stop=self.policy.stop_strategy(),
            sleep=self._sleep,
            before_sleep=self._before_restart,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    restarts = attempt.retry_state.attempt_number - 1
                    if restarts:
                        current = self._restart(restarts)
                    self._watch(current)
        except KeyboardInterrupt:
            print_info("Interrupted; stopping the supervised instance")
            self.stop()
        return current


__all__ = [
    "MANAGED_LABEL",
    "PORT_LABEL",
    "STOPPING_SUFFIX",
    "instance_name",
    "instance_labels",
    "SupervisorState",
    "InstanceStatus",
    "CrashReason",
    "BackoffStrategy",
    "InstanceState",
    "StatusReport",
    "RestartPolicy",
    "LicenseRejectedError",
    "InstanceCrashed",
    "classify_exit",
    "DaemonSupervisor",
]
