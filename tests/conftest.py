from __future__ import annotations

import threading
from pathlib import Path

import pytest

from wifi_setup.backend import CommandError, ScanError, StatusQueryError, WirelessBackend
from wifi_setup.config import SetupConfig
from wifi_setup.credentials import WiFiCredentialStore
from wifi_setup.system_log import SystemLog


SAMPLE_SCAN = """\
wlan0     Scan completed :
          Cell 01 - Address: AA:BB:CC:00:00:01
                    Channel:6
                    Frequency:2.437 GHz (Channel 6)
                    Quality=42/70  Signal level=-70 dBm
                    Encryption key:on
                    ESSID:"HomeNet"
                    IE: IEEE 802.11i/WPA2 Version 1
          Cell 02 - Address: AA:BB:CC:00:00:02
                    Channel:11
                    Quality=70/70  Signal level=-40 dBm
                    Encryption key:off
                    ESSID:"CafeOpen"
          Cell 03 - Address: AA:BB:CC:00:00:03
                    Quality=20/70  Signal level=-85 dBm
                    Encryption key:on
                    ESSID:"HomeNet"
                    IE: WPA Version 1
          Cell 04 - Address: AA:BB:CC:00:00:04
                    Quality=30/70  Signal level=-75 dBm
                    Encryption key:on
                    ESSID:"Legacy"
"""


class FakeWirelessBackend(WirelessBackend):
    def __init__(self) -> None:
        self.scan_output = SAMPLE_SCAN
        self.scan_calls = 0
        self.scan_error: str | None = None
        self.calls: list[tuple[object, ...]] = []
        self.stop_ap_error: str | None = None
        self.primary_error: CommandError | None = None
        self.fallback_error: CommandError | None = None
        self.ready = True
        self.ssid = "CBridge-Setup"
        self.ip = "192.168.4.1"
        self.status_error: str | None = None
        self.primary_entered = threading.Event()
        self.primary_gate: threading.Event | None = None

    def scan(self) -> str:
        self.scan_calls += 1
        if self.scan_error:
            raise ScanError(self.scan_error)
        return self.scan_output

    def stop_access_point(self) -> None:
        self.calls.append(("stop_access_point",))
        if self.stop_ap_error:
            raise CommandError(self.stop_ap_error)

    def stop_ap_services(self) -> None:
        self.calls.append(("stop_ap_services",))

    def flush_addresses(self) -> None:
        self.calls.append(("flush_addresses",))

    def interface_ready(self) -> bool:
        self.calls.append(("interface_ready",))
        return self.ready

    def join_primary(self, ssid: str, password: str | None) -> None:
        self.calls.append(("join_primary", ssid, password))
        self.primary_entered.set()
        if self.primary_gate is not None:
            self.primary_gate.wait(timeout=5)
        if self.primary_error is not None:
            raise self.primary_error
        self.ssid, self.ip = ssid, "192.168.1.50"

    def join_fallback(self, ssid: str, password: str | None) -> None:
        self.calls.append(("join_fallback", ssid, password))
        if self.fallback_error is not None:
            raise self.fallback_error
        self.ssid, self.ip = ssid, "192.168.1.51"

    def query_status(self) -> tuple[str, str]:
        if self.status_error:
            raise StatusQueryError(self.status_error)
        return self.ssid, self.ip

    def call_names(self) -> list[object]:
        return [call[0] for call in self.calls]


@pytest.fixture
def backend() -> FakeWirelessBackend:
    return FakeWirelessBackend()


@pytest.fixture
def setup_config(tmp_path: Path) -> SetupConfig:
    return SetupConfig(
        data_dir=tmp_path / "state",
        log_path=tmp_path / "events.log",
        settle_timeout=0.0,
        confirm_timeout=0.0,
        poll_interval=0.001,
    )


@pytest.fixture
def system_log(setup_config: SetupConfig) -> SystemLog:
    return SystemLog(setup_config.log_path)


@pytest.fixture
def credential_store(setup_config: SetupConfig) -> WiFiCredentialStore:
    return WiFiCredentialStore(
        setup_config.credentials_path,
        owner=None,
        is_root=lambda: False,
    )
