"""Persist submitted Wi-Fi credentials and the configured marker."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence


class FilesystemError(RuntimeError):
    """Raised when the credentials location cannot be prepared or written."""


def _run_privileged(args: Sequence[str]) -> None:
    subprocess.run(["sudo", "-n", *args], check=True, capture_output=True, text=True, timeout=15)


def _running_as_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


@dataclass(slots=True)
class StoredCredentials:
    """The last credentials submitted through the portal."""

    ssid: str
    password: str
    timestamp: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "ssid": self.ssid,
            "password": self.password,
            "timestamp": self.timestamp.isoformat(),
        }


class WiFiCredentialStore:
    """Write the submitted network to a single JSON file, replacing any previous one."""

    def __init__(
        self,
        path: Path | str,
        *,
        owner: str | None = "cbridge",
        privileged_runner: Callable[[Sequence[str]], None] = _run_privileged,
        is_root: Callable[[], bool] = _running_as_root,
    ) -> None:
        self._path = Path(path)
        self._owner = owner
        self._privileged_runner = privileged_runner
        self._is_root = is_root
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def ensure_directory(self) -> None:
        """Create the parent directory, escalating through sudo when needed."""

        directory = self._path.parent
        logger = logging.getLogger(__name__)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Unable to create %s (%s); retrying with sudo", directory, exc)
            self._create_directory_privileged(directory)
            return
        if self._is_root():
            self._adjust_permissions(directory, 0o755)

    def save(self, ssid: str, password: str | None) -> StoredCredentials:
        if not isinstance(ssid, str) or not ssid:
            raise ValueError("SSID must be a non-empty string")
        record = StoredCredentials(
            ssid=ssid,
            password=password or "",
            timestamp=datetime.now(timezone.utc),
        )
        with self._lock:
            self.ensure_directory()
            try:
                self._path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
            except OSError as exc:
                raise FilesystemError(f"Failed to save credentials: {exc}") from exc
            if self._is_root():
                self._adjust_permissions(self._path, 0o600)
        logging.getLogger(__name__).info("Saved credentials for %s to %s", ssid, self._path)
        return record

    def load(self) -> StoredCredentials | None:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logging.getLogger(__name__).warning("Unable to load Wi-Fi credentials: %s", exc)
            return None
        if not isinstance(payload, dict):
            return None
        ssid = payload.get("ssid")
        if not isinstance(ssid, str) or not ssid:
            return None
        password = payload.get("password")
        try:
            timestamp = datetime.fromisoformat(str(payload.get("timestamp")))
        except ValueError:
            timestamp = datetime.fromtimestamp(0, timezone.utc)
        return StoredCredentials(
            ssid=ssid,
            password=password if isinstance(password, str) else "",
            timestamp=timestamp,
        )

    # ----------------------------- implementation --------------------------
    def _remediation(self, directory: Path) -> str:
        owner = self._owner or "$USER"
        return (
            "Failed to create credentials directory. Please run: "
            f"sudo mkdir -p {directory} && sudo chown {owner}:{owner} {directory}"
        )

    def _create_directory_privileged(self, directory: Path) -> None:
        commands: list[list[str]] = [["mkdir", "-p", str(directory)]]
        if self._owner:
            commands.append(["chown", "-R", f"{self._owner}:{self._owner}", str(directory)])
        commands.append(["chmod", "755", str(directory)])
        try:
            for command in commands:
                self._privileged_runner(command)
        except (OSError, subprocess.SubprocessError) as exc:
            logging.getLogger(__name__).error(
                "Privileged creation of %s failed: %s", directory, exc
            )
            raise FilesystemError(self._remediation(directory)) from exc

    def _adjust_permissions(self, target: Path, mode: int) -> None:
        logger = logging.getLogger(__name__)
        if self._owner:
            try:
                shutil.chown(target, self._owner, self._owner)
            except (OSError, LookupError) as exc:
                logger.warning("Could not set owner of %s: %s", target, exc)
        try:
            target.chmod(mode)
        except OSError as exc:
            logger.warning("Could not set permissions of %s: %s", target, exc)


class ConfiguredFlag:
    """Marker file whose presence means a join has succeeded at least once."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def mark(self) -> datetime:
        now = datetime.now(timezone.utc)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(now.isoformat(), encoding="utf-8")
        return now

    def is_set(self) -> bool:
        return self._path.exists()

    def timestamp(self) -> datetime | None:
        try:
            raw = self._path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None


__all__ = ["ConfiguredFlag", "FilesystemError", "StoredCredentials", "WiFiCredentialStore"]
