"""Wireless backend abstractions wrapping the OS networking tools."""

from __future__ import annotations

import hashlib
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Sequence


WPA_COUNTRY = "US"
WPA_CTRL_INTERFACE = "DIR=/var/run/wpa_supplicant GROUP=netdev"


class CommandError(RuntimeError):
    """Raised when an external networking command fails."""


class CommandTimeoutError(CommandError):
    """Raised when an external command does not finish in time."""


class ScanError(CommandError):
    """Raised when the wireless scan cannot be performed."""


class JoinError(CommandError):
    """Raised when a join mechanism rejects or fails to apply a network."""


class StatusQueryError(CommandError):
    """Raised when the live connection state cannot be read."""


def _is_plain_quotable(value: str) -> bool:
    return all(char.isprintable() and char not in {'"', "\\"} for char in value)


def render_wpa_config(
    ssid: str,
    password: str | None,
    *,
    country: str = WPA_COUNTRY,
    ctrl_interface: str = WPA_CTRL_INTERFACE,
) -> str:
    """Return a minimal ``wpa_supplicant.conf`` joining a single network.

    Names that cannot be written as a quoted string are hex encoded. A
    passphrase that cannot be quoted is replaced by its derived 256-bit PSK,
    the same value ``wpa_passphrase`` would print.
    """

    if _is_plain_quotable(ssid):
        ssid_line = f'ssid="{ssid}"'
    else:
        ssid_line = f"ssid={ssid.encode('utf-8').hex()}"
    if not password:
        security_line = "key_mgmt=NONE"
    elif _is_plain_quotable(password):
        security_line = f'psk="{password}"'
    else:
        derived = hashlib.pbkdf2_hmac(
            "sha1", password.encode("utf-8"), ssid.encode("utf-8"), 4096, 32
        )
        security_line = f"psk={derived.hex()}"
    return (
        f"ctrl_interface={ctrl_interface}\n"
        "update_config=1\n"
        f"country={country}\n"
        "\n"
        "network={\n"
        f"    {ssid_line}\n"
        f"    {security_line}\n"
        "}\n"
    )


class WirelessBackend:
    """Abstract interface for the OS operations the portal relies on."""

    def scan(self) -> str:  # pragma: no cover - interface only
        """Return the raw ``iwlist``-style scan report."""

        raise NotImplementedError

    def stop_access_point(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def stop_ap_services(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def flush_addresses(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def interface_ready(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    def join_primary(self, ssid: str, password: str | None) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def join_fallback(self, ssid: str, password: str | None) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def query_status(self) -> tuple[str, str]:  # pragma: no cover - interface only
        """Return the associated SSID and IPv4 address (empty when absent)."""

        raise NotImplementedError


class SystemBackend(WirelessBackend):
    """Drive iwlist, nmcli, wpa_supplicant, hostapd and dnsmasq via subprocess."""

    def __init__(
        self,
        interface: str = "wlan0",
        *,
        softap_script: Path | str = Path("/opt/cbridge/softap/setup-softap.sh"),
        wpa_config_path: Path | str = Path("/etc/wpa_supplicant/wpa_supplicant.conf"),
        timeout: float = 30.0,
        use_sudo: bool | None = None,
    ) -> None:
        self._interface = interface
        self._softap_script = Path(softap_script)
        self._wpa_config_path = Path(wpa_config_path)
        self._timeout = timeout
        if use_sudo is None:
            use_sudo = hasattr(os, "geteuid") and os.geteuid() != 0
        self._use_sudo = use_sudo

    @property
    def interface(self) -> str:
        return self._interface

    # ------------------------------- helpers -------------------------------
    def _privileged(self, args: Sequence[str]) -> list[str]:
        if self._use_sudo:
            return ["sudo", "-n", *args]
        return list(args)

    def _run(self, args: Sequence[str], *, timeout: float | None = None) -> str:
        try:
            completed = subprocess.run(
                list(args),
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout if timeout is None else timeout,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{args[0]} command unavailable") from exc
        except OSError as exc:
            raise CommandError(f"Unable to run {args[0]}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(f"{' '.join(args[:3])} timed out") from exc
        except subprocess.CalledProcessError as exc:
            error_output = (exc.stderr or "").strip() or (exc.stdout or "").strip() or str(exc)
            raise CommandError(error_output) from exc
        return completed.stdout

    def _run_quietly(self, args: Sequence[str]) -> None:
        try:
            self._run(args)
        except CommandError as exc:
            logging.getLogger(__name__).debug("Ignoring failure of %s: %s", args, exc)

    # ---------------------------- interface impl ---------------------------
    def scan(self) -> str:
        command = ["iwlist", self._interface, "scan"]
        try:
            return self._run(command)
        except CommandError as exc:
            if not self._use_sudo:
                raise ScanError(str(exc)) from exc
            logging.getLogger(__name__).debug("Unprivileged scan failed (%s); retrying via sudo", exc)
        try:
            return self._run(self._privileged(command))
        except CommandError as exc:
            raise ScanError(str(exc)) from exc

    def stop_access_point(self) -> None:
        self._run(self._privileged([str(self._softap_script), "stop"]))

    def stop_ap_services(self) -> None:
        self._run_quietly(self._privileged(["systemctl", "stop", "hostapd"]))
        self._run_quietly(self._privileged(["pkill", "dnsmasq"]))

    def flush_addresses(self) -> None:
        self._run_quietly(self._privileged(["ip", "addr", "flush", "dev", self._interface]))

    def interface_ready(self) -> bool:
        if not Path("/sys/class/net", self._interface).exists():
            return False
        try:
            self._run(["systemctl", "is-active", "--quiet", "hostapd"], timeout=5.0)
        except CommandError:
            # is-active exits non-zero once the access point daemon is gone.
            return True
        return False

    def join_primary(self, ssid: str, password: str | None) -> None:
        args = ["nmcli", "device", "wifi", "connect", ssid]
        if password:
            args.extend(["password", password])
        args.extend(["ifname", self._interface])
        try:
            self._run(self._privileged(args))
        except CommandError as exc:
            raise JoinError(str(exc)) from exc

    def join_fallback(self, ssid: str, password: str | None) -> None:
        config_text = render_wpa_config(ssid, password)
        temp_path: Path | None = None
        try:
            handle, temp_name = tempfile.mkstemp(prefix="wpa_temp_", suffix=".conf")
            temp_path = Path(temp_name)
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(config_text)
            self._run(self._privileged(["cp", str(temp_path), str(self._wpa_config_path)]))
            self._run(self._privileged(["systemctl", "restart", "wpa_supplicant"]))
        except OSError as exc:
            raise JoinError(f"Unable to write supplicant configuration: {exc}") from exc
        except CommandError as exc:
            raise JoinError(str(exc)) from exc
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

    def query_status(self) -> tuple[str, str]:
        try:
            ssid = self._run(["iwgetid", "-r", self._interface], timeout=5.0).strip()
            address_output = self._run(
                ["ip", "-4", "-o", "addr", "show", "dev", self._interface], timeout=5.0
            )
        except CommandError as exc:
            raise StatusQueryError(str(exc)) from exc
        return ssid, parse_ipv4_address(address_output)


def parse_ipv4_address(output: str) -> str:
    """Return the first IPv4 address from ``ip -4 -o addr show`` output."""

    for line in output.splitlines():
        parts = line.split()
        if "inet" not in parts:
            continue
        index = parts.index("inet")
        if index + 1 < len(parts):
            return parts[index + 1].split("/")[0]
    return ""


__all__ = [
    "CommandError",
    "CommandTimeoutError",
    "JoinError",
    "ScanError",
    "StatusQueryError",
    "SystemBackend",
    "WirelessBackend",
    "parse_ipv4_address",
    "render_wpa_config",
]
