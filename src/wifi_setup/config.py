"""Configuration for the Wi-Fi setup portal."""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

DEFAULT_PORT = 8080
DEFAULT_INTERFACE = "wlan0"
DEFAULT_DATA_DIR = Path("/var/lib/cbridge")
DEFAULT_LOG_PATH = Path("/var/log/wifi-setup-server.log")
DEFAULT_SOFTAP_SCRIPT = Path("/opt/cbridge/softap/setup-softap.sh")
DEFAULT_WPA_CONFIG_PATH = Path("/etc/wpa_supplicant/wpa_supplicant.conf")
DEFAULT_SERVICE_ACCOUNT = "cbridge"
DEFAULT_AP_SSID_MARKER = "CBridge"
DEFAULT_DEVICE_NAME = "C-Bridge"

SCAN_FRESHNESS_SECONDS = 30.0
SETTLE_TIMEOUT_SECONDS = 3.0
CONFIRM_TIMEOUT_SECONDS = 2.0


@dataclass(frozen=True, slots=True)
class SetupConfig:
    """Runtime settings shared by the portal components."""

    port: int = DEFAULT_PORT
    interface: str = DEFAULT_INTERFACE
    data_dir: Path = DEFAULT_DATA_DIR
    log_path: Path | None = DEFAULT_LOG_PATH
    softap_script: Path = DEFAULT_SOFTAP_SCRIPT
    wpa_config_path: Path = DEFAULT_WPA_CONFIG_PATH
    service_account: str = DEFAULT_SERVICE_ACCOUNT
    ap_ssid_marker: str = DEFAULT_AP_SSID_MARKER
    device_name: str = DEFAULT_DEVICE_NAME
    scan_freshness: float = SCAN_FRESHNESS_SECONDS
    settle_timeout: float = SETTLE_TIMEOUT_SECONDS
    confirm_timeout: float = CONFIRM_TIMEOUT_SECONDS
    poll_interval: float = 0.25

    def __post_init__(self) -> None:
        try:
            port = int(self.port)
        except (TypeError, ValueError) as exc:
            raise ValueError("Port must be an integer") from exc
        if not 1 <= port <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        interface = self.interface.strip() if isinstance(self.interface, str) else ""
        if not interface:
            raise ValueError("Wireless interface name must be a non-empty string")
        for name in ("scan_freshness", "settle_timeout", "confirm_timeout"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a non-negative number")
            object.__setattr__(self, name, value)
        poll_interval = float(self.poll_interval)
        if not math.isfinite(poll_interval) or poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        object.__setattr__(self, "poll_interval", poll_interval)
        object.__setattr__(self, "port", port)
        object.__setattr__(self, "interface", interface)
        object.__setattr__(self, "data_dir", Path(self.data_dir))
        object.__setattr__(self, "softap_script", Path(self.softap_script))
        object.__setattr__(self, "wpa_config_path", Path(self.wpa_config_path))
        if self.log_path is not None:
            object.__setattr__(self, "log_path", Path(self.log_path))

    @property
    def credentials_path(self) -> Path:
        return self.data_dir / "wifi_credentials.json"

    @property
    def configured_flag_path(self) -> Path:
        return self.data_dir / "wifi-configured"

    def with_overrides(self, **changes: object) -> "SetupConfig":
        """Return a copy with the given fields replaced (``None`` values ignored)."""

        cleaned = {key: value for key, value in changes.items() if value is not None}
        if not cleaned:
            return self
        return replace(self, **cleaned)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SetupConfig":
        """Build a configuration from ``SETUP_PORT`` and ``WIFI_INTERFACE``."""

        env = os.environ if environ is None else environ
        logger = logging.getLogger(__name__)
        port = DEFAULT_PORT
        port_env = env.get("SETUP_PORT")
        if port_env:
            try:
                port = int(port_env)
            except ValueError:
                logger.warning("Invalid SETUP_PORT value %r; using %d", port_env, DEFAULT_PORT)
            else:
                if not 1 <= port <= 65535:
                    logger.warning("SETUP_PORT %d out of range; using %d", port, DEFAULT_PORT)
                    port = DEFAULT_PORT
        interface = (env.get("WIFI_INTERFACE") or "").strip() or DEFAULT_INTERFACE
        return cls(port=port, interface=interface)


__all__ = [
    "CONFIRM_TIMEOUT_SECONDS",
    "DEFAULT_INTERFACE",
    "DEFAULT_PORT",
    "SCAN_FRESHNESS_SECONDS",
    "SETTLE_TIMEOUT_SECONDS",
    "SetupConfig",
]
