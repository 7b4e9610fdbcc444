import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path

import pytest

from wifi_setup.credentials import ConfiguredFlag, FilesystemError, WiFiCredentialStore


def test_save_creates_directory_and_writes_record(tmp_path: Path) -> None:
    path = tmp_path / "lib" / "cbridge" / "wifi_credentials.json"
    store = WiFiCredentialStore(path, owner=None, is_root=lambda: False)

    record = store.save("HomeNet", "secret123")

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["ssid"] == "HomeNet"
    assert payload["password"] == "secret123"
    assert datetime.fromisoformat(payload["timestamp"]) == record.timestamp


def test_save_overwrites_previous_credentials(credential_store: WiFiCredentialStore) -> None:
    credential_store.save("FirstNet", "one-password")
    credential_store.save("SecondNet", "")

    payload = json.loads(credential_store.path.read_text(encoding="utf-8"))
    assert set(payload) == {"ssid", "password", "timestamp"}
    assert payload["ssid"] == "SecondNet"
    assert payload["password"] == ""
    assert "FirstNet" not in credential_store.path.read_text(encoding="utf-8")
    loaded = credential_store.load()
    assert loaded is not None
    assert loaded.ssid == "SecondNet"


def test_load_returns_none_for_missing_or_corrupt_file(
    credential_store: WiFiCredentialStore,
) -> None:
    assert credential_store.load() is None
    credential_store.path.parent.mkdir(parents=True)
    credential_store.path.write_text("{not json", encoding="utf-8")
    assert credential_store.load() is None


def test_directory_failure_escalates_to_privileged_commands(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    directory = blocker / "cbridge"
    commands: list[list[str]] = []

    def runner(args):
        commands.append(list(args))

    store = WiFiCredentialStore(
        directory / "wifi_credentials.json",
        owner="cbridge",
        privileged_runner=runner,
        is_root=lambda: False,
    )

    with pytest.raises(FilesystemError, match="Failed to save credentials"):
        store.save("HomeNet", "secret123")

    assert commands == [
        ["mkdir", "-p", str(directory)],
        ["chown", "-R", "cbridge:cbridge", str(directory)],
        ["chmod", "755", str(directory)],
    ]


def test_privileged_failure_surfaces_remediation_message(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    directory = blocker / "cbridge"

    def runner(args):
        raise subprocess.CalledProcessError(1, ["sudo", "-n", *args], stderr="a password is required")

    store = WiFiCredentialStore(
        directory / "wifi_credentials.json",
        owner="cbridge",
        privileged_runner=runner,
        is_root=lambda: False,
    )

    with pytest.raises(FilesystemError) as excinfo:
        store.save("HomeNet", "secret123")

    message = str(excinfo.value)
    assert f"sudo mkdir -p {directory}" in message
    assert f"sudo chown cbridge:cbridge {directory}" in message


def test_root_restricts_file_permissions(tmp_path: Path) -> None:
    path = tmp_path / "state" / "wifi_credentials.json"
    store = WiFiCredentialStore(path, owner=None, is_root=lambda: True)

    store.save("HomeNet", "secret123")

    assert path.stat().st_mode & 0o777 == 0o600
    assert path.parent.stat().st_mode & 0o777 == 0o755


def test_root_ownership_failure_is_not_fatal(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "state" / "wifi_credentials.json"
    store = WiFiCredentialStore(
        path, owner="no-such-account-for-tests", is_root=lambda: True
    )

    with caplog.at_level("WARNING"):
        store.save("HomeNet", "secret123")

    assert path.exists()
    assert "Could not set owner" in caplog.text


def test_save_rejects_empty_ssid(credential_store: WiFiCredentialStore) -> None:
    with pytest.raises(ValueError):
        credential_store.save("", "secret")


def test_configured_flag_records_timestamp(tmp_path: Path) -> None:
    flag = ConfiguredFlag(tmp_path / "state" / "wifi-configured")
    assert flag.is_set() is False
    assert flag.timestamp() is None

    before = datetime.now(timezone.utc)
    marked = flag.mark()

    assert flag.is_set() is True
    assert flag.timestamp() == marked
    assert marked >= before
