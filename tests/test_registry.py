from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import docker
from google.api_core.exceptions import PermissionDenied
from google.auth.exceptions import RefreshError, TransportError
import pytest

from datalab_container import images, registry
from datalab_container.errors import AuthError, ConfigError, RegistryError
from datalab_container.registry import OutputFormat, RegistrySession, TagRecord


PARENT = (
    "projects/datalab-customer-images/locations/us/"
    "repositories/datalab-inference-container/packages/datalab-inference"
)


class FakeCredentials:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.token: str | None = None
        self.refreshed = 0

    def refresh(self, request: Any) -> None:
        self.refreshed += 1
        if self.error is not None:
            raise self.error
        self.token = "ya29.fresh"


class FakeArtifactRegistryClient:
    def __init__(self, tags: list[str], error: Exception | None = None) -> None:
        self.tags = tags
        self.error = error
        self.requests: list[dict[str, str]] = []

    def list_tags(self, request: dict[str, str]) -> list[SimpleNamespace]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return [
            SimpleNamespace(
                name=f"{request['parent']}/tags/{tag}",
                version=f"{request['parent']}/versions/sha256:{index:04d}",
            )
            for index, tag in enumerate(self.tags)
        ]


def _session() -> RegistrySession:
    return RegistrySession(credentials=SimpleNamespace(token="t"), registry_host="us-docker.pkg.dev")


def _records() -> list[TagRecord]:
    return [
        TagRecord(tag="latest", digest="sha256:0000", name="n/tags/latest", version="n/versions/sha256:0000"),
        TagRecord(tag="v1.0.0", digest="sha256:0001", name="n/tags/v1.0.0", version="n/versions/sha256:0001"),
    ]


def test_authenticate_without_key_file_never_contacts_google(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: list[Path] = []
    monkeypatch.setattr(registry, "_load_credentials", lambda path: calls.append(path))

    with pytest.raises(ConfigError):
        registry.authenticate(None)
    with pytest.raises(ConfigError):
        registry.authenticate(tmp_path / "missing.json")

    assert calls == []


def test_authenticate_returns_session_with_fresh_token(
    key_file: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    credentials = FakeCredentials()
    monkeypatch.setattr(registry, "_load_credentials", lambda path: credentials)

    session = registry.authenticate(key_file)

    assert credentials.refreshed == 1
    assert session.token == "ya29.fresh"
    assert session.registry_host == "us-docker.pkg.dev"
    assert session.auth_config == {"username": "oauth2accesstoken", "password": "ya29.fresh"}


def test_rejected_credentials_raise_auth_error(key_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        registry, "_load_credentials", lambda path: FakeCredentials(RefreshError("invalid_grant"))
    )

    with pytest.raises(AuthError, match="Failed to authenticate with Google Cloud") as excinfo:
        registry.authenticate(key_file)

    assert excinfo.value.transient is False


def test_unreachable_google_is_a_transient_auth_error(key_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        registry, "_load_credentials", lambda path: FakeCredentials(TransportError("connection reset"))
    )

    with pytest.raises(AuthError) as excinfo:
        registry.authenticate(key_file)

    assert excinfo.value.transient is True
    assert any("internet connection" in hint for hint in excinfo.value.hints)


def test_malformed_key_file_is_a_config_error(key_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(path: Path) -> Any:
        raise ValueError("Service account info was not in the expected format")

    monkeypatch.setattr(registry, "_load_credentials", broken)

    with pytest.raises(ConfigError, match="could not be read"):
        registry.authenticate(key_file)


def test_configure_runtime_logs_in_with_token(fake_runtime) -> None:
    registry.configure_runtime(_session(), fake_runtime)

    assert fake_runtime.logins == [
        {"username": "oauth2accesstoken", "password": "t", "registry": "https://us-docker.pkg.dev"}
    ]


def test_configure_runtime_failure_is_an_auth_error() -> None:
    class RejectingRuntime:
        def login(self, **kwargs: str) -> None:
            raise docker.errors.APIError("unauthorized")

    with pytest.raises(AuthError, match="Failed to configure Docker authentication"):
        registry.configure_runtime(_session(), RejectingRuntime())  # type: ignore[arg-type]


def test_package_parent_uses_registry_location() -> None:
    assert registry.package_parent(images.resolve()) == PARENT


def test_list_tags_preserves_registry_order() -> None:
    client = FakeArtifactRegistryClient(["v2.0.0", "latest", "v1.0.0"])

    records = registry.list_tags(_session(), client=client)

    assert client.requests == [{"parent": PARENT}]
    assert [r.tag for r in records] == ["v2.0.0", "latest", "v1.0.0"]
    assert records[1].digest == "sha256:0001"
    assert records[1].name == f"{PARENT}/tags/latest"


def test_list_tags_empty_repository_is_an_error() -> None:
    with pytest.raises(RegistryError, match="Failed to list image tags"):
        registry.list_tags(_session(), client=FakeArtifactRegistryClient([]))


def test_list_tags_api_failure_is_an_error() -> None:
    client = FakeArtifactRegistryClient(["latest"], error=PermissionDenied("denied"))

    with pytest.raises(RegistryError) as excinfo:
        registry.list_tags(_session(), client=client)

    assert isinstance(excinfo.value.__cause__, PermissionDenied)


def test_format_tags_only() -> None:
    assert registry.format_tags(_records(), OutputFormat.TAGS_ONLY) == "latest\nv1.0.0"


def test_format_json_carries_every_field() -> None:
    payload = json.loads(registry.format_tags(_records(), "json"))

    assert [item["tag"] for item in payload] == ["latest", "v1.0.0"]
    assert set(payload[0]) == {"tag", "digest", "name", "version"}


def test_format_table_has_header_and_rows_in_order() -> None:
    lines = registry.format_tags(_records(), OutputFormat.TABLE).splitlines()

    assert lines[0].split() == ["TAG", "DIGEST"]
    assert lines[1].split() == ["latest", "sha256:0000"]
    assert lines[2].split() == ["v1.0.0", "sha256:0001"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, OutputFormat.TABLE), ("", OutputFormat.TABLE), ("JSON", OutputFormat.JSON), ("tags-only", OutputFormat.TAGS_ONLY)],
)
def test_output_format_parse(raw: str | None, expected: OutputFormat) -> None:
    assert OutputFormat.parse(raw) is expected


def test_output_format_parse_rejects_unknown_values() -> None:
    with pytest.raises(ConfigError, match="Invalid format: xml. Valid options: table, json, tags-only"):
        OutputFormat.parse("xml")
