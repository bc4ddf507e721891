from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from datalab_container import registry
from datalab_container.cli import list_images, main as cli_main, run as run_module
from datalab_container.config import get_settings
from datalab_container.registry import TagRecord
from datalab_container.supervisor import DEFAULT_HEALTH_INTERVAL, DaemonSupervisor, InstanceStatus, StatusReport
from datalab_container.utils.docker import DockerRuntime


@pytest.fixture
def auth_calls(monkeypatch: pytest.MonkeyPatch) -> list[Any]:
    calls: list[Any] = []

    def fake_authenticate(key_file: Any, **kwargs: Any) -> Any:
        calls.append(key_file)
        return object()

    monkeypatch.setattr(registry, "authenticate", fake_authenticate)
    return calls


def test_unknown_flag_is_a_usage_error() -> None:
    assert cli_main.main(["--bogus"]) == 2


def test_conflicting_modes_are_a_usage_error() -> None:
    assert cli_main.main(["--status", "--stop"]) == 2


def test_negative_restart_ceiling_is_a_usage_error() -> None:
    assert cli_main.main(["--daemon", "--max-restarts", "-1"]) == 2


@pytest.mark.parametrize("mode", [[], ["--daemon"]])
def test_missing_key_file_fails_before_authentication(
    mode: list[str], monkeypatch: pytest.MonkeyPatch, auth_calls: list[Any]
) -> None:
    monkeypatch.setenv("DATALAB_LICENSE_KEY", "lic")

    assert cli_main.main(mode) == 1
    assert auth_calls == []


def test_missing_license_fails_before_authentication(
    key_file: Path, monkeypatch: pytest.MonkeyPatch, auth_calls: list[Any]
) -> None:
    monkeypatch.setenv("SERVICE_ACCOUNT_KEY_FILE", str(key_file))

    assert cli_main.main([]) == 1
    assert auth_calls == []


def test_env_file_option_is_read(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / "custom.env"
    env_file.write_text("INFERENCE_PORT=9100\n", encoding="utf-8")
    ports: list[int] = []

    def fake_status(self: DaemonSupervisor) -> StatusReport:
        ports.append(self.port)
        return StatusReport(InstanceStatus.RUNNING, self.name, container_state="running")

    monkeypatch.setattr(DaemonSupervisor, "status", fake_status)

    assert cli_main.main(["--status", "--env-file", str(env_file)]) == 0
    assert ports == [9100]


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (InstanceStatus.RUNNING, 0),
        (InstanceStatus.NOT_RUNNING, run_module.EXIT_NOT_RUNNING),
        (InstanceStatus.RUNNING_UNHEALTHY, run_module.EXIT_UNHEALTHY),
        (InstanceStatus.STOPPING, run_module.EXIT_UNHEALTHY),
    ],
)
def test_status_exit_codes(
    status: InstanceStatus, expected: int, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(
        DaemonSupervisor,
        "status",
        lambda self: StatusReport(status, self.name, container_state="running", exit_code=None),
    )

    assert cli_main.main(["--status"]) == expected
    assert f"datalab-inference-8000: {status.value}" in capsys.readouterr().out


def test_status_and_stop_do_not_need_a_license(monkeypatch: pytest.MonkeyPatch) -> None:
    stops: list[str] = []
    monkeypatch.setattr(DaemonSupervisor, "stop", lambda self, timeout=None: stops.append(self.name) or False)

    assert cli_main.main(["--stop"]) == 0
    assert stops == ["datalab-inference-8000"]


def test_list_images_requires_key_file(auth_calls: list[Any]) -> None:
    assert list_images.main([]) == 1
    assert auth_calls == []


def test_list_images_rejects_unknown_format(
    key_file: Path, monkeypatch: pytest.MonkeyPatch, auth_calls: list[Any]
) -> None:
    monkeypatch.setenv("SERVICE_ACCOUNT_KEY_FILE", str(key_file))
    monkeypatch.setenv("FORMAT", "xml")

    assert list_images.main([]) == 1
    assert auth_calls == []


def test_list_images_prints_tags(
    key_file: Path,
    monkeypatch: pytest.MonkeyPatch,
    auth_calls: list[Any],
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("SERVICE_ACCOUNT_KEY_FILE", str(key_file))
    records = [
        TagRecord(tag="latest", digest="sha256:aa", name="n/tags/latest", version="n/versions/sha256:aa"),
        TagRecord(tag="v1.0.0", digest="sha256:bb", name="n/tags/v1.0.0", version="n/versions/sha256:bb"),
    ]
    monkeypatch.setattr(registry, "list_tags", lambda session: records)

    assert list_images.main(["--format", "tags-only"]) == 0
    assert capsys.readouterr().out.splitlines() == ["latest", "v1.0.0"]
    assert auth_calls == [key_file]

    assert list_images.main(["-f", "json"]) == 0
    assert [item["tag"] for item in json.loads(capsys.readouterr().out)] == ["latest", "v1.0.0"]


def test_zero_startup_timeout_is_kept() -> None:
    options = run_module.RunOptions(startup_timeout=0)

    supervisor = run_module._build_supervisor(get_settings(), options, DockerRuntime())

    assert supervisor.startup_timeout == 0
    assert supervisor.health_interval == DEFAULT_HEALTH_INTERVAL


def test_zero_startup_timeout_from_environment_is_kept(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DAEMON_STARTUP_TIMEOUT", "0")

    supervisor = run_module._build_supervisor(get_settings(), run_module.RunOptions(), DockerRuntime())

    assert supervisor.startup_timeout == 0
