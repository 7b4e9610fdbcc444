"""Report whether the device has joined a real network."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .backend import StatusQueryError, WirelessBackend


@dataclass(slots=True)
class ConnectionStatus:
    """Live station state of the wireless interface."""

    connected: bool
    ssid: str
    ip: str
    interface: str

    def to_dict(self) -> dict[str, object]:
        return {
            "connected": self.connected,
            "ssid": self.ssid,
            "ip": self.ip,
            "interface": self.interface,
        }


class StatusReporter:
    """Derive :class:`ConnectionStatus` from the backend on every call.

    Being associated with the portal's own access point does not count as
    connected; any SSID containing ``ap_ssid_marker`` is treated that way.
    """

    def __init__(
        self,
        backend: WirelessBackend,
        interface: str,
        *,
        ap_ssid_marker: str = "CBridge",
    ) -> None:
        self._backend = backend
        self._interface = interface
        self._ap_ssid_marker = ap_ssid_marker

    def is_own_access_point(self, ssid: str) -> bool:
        return bool(self._ap_ssid_marker) and self._ap_ssid_marker in ssid

    def status(self) -> ConnectionStatus:
        try:
            ssid, ip = self._backend.query_status()
        except StatusQueryError as exc:
            logging.getLogger(__name__).debug("Status query failed: %s", exc)
            return ConnectionStatus(connected=False, ssid="", ip="", interface=self._interface)
        return ConnectionStatus(
            connected=bool(ssid) and not self.is_own_access_point(ssid),
            ssid=ssid,
            ip=ip,
            interface=self._interface,
        )


__all__ = ["ConnectionStatus", "StatusReporter"]
