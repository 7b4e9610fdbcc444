"""Wireless network discovery with a short-lived result cache."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from .backend import ScanError, WirelessBackend
from .system_log import SystemLog


_ESSID_PATTERN = re.compile(r'ESSID:"([^"]+)"')
_SIGNAL_PATTERN = re.compile(r"Signal level[=:](-?\d+)")
_CELL_MARKER = "Cell "


@dataclass(slots=True)
class NetworkRecord:
    """A network reported by a scan."""

    ssid: str
    signal: int | None = None
    encrypted: bool | None = None
    security: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"ssid": self.ssid}
        if self.signal is not None:
            payload["signal"] = self.signal
        if self.encrypted is not None:
            payload["encrypted"] = self.encrypted
        if self.security is not None:
            payload["security"] = self.security
        return payload


def signal_percent(dbm: int) -> int:
    """Map a dBm reading linearly onto 0-100 (-100 dBm is 0, -50 dBm is 100)."""

    return min(100, max(0, (dbm + 100) * 2))


def _security_from_line(line: str) -> str | None:
    if "WPA2" in line:
        return "WPA2"
    if "WPA" in line:
        return "WPA"
    if "WEP" in line:
        return "WEP"
    return None


def parse_scan_output(output: str) -> list[NetworkRecord]:
    """Split an ``iwlist scan`` report into records, one per cell.

    Fields accumulate until the next ``Cell`` line; a field seen twice in one
    cell keeps its last value. Cells without a name are dropped.
    """

    records: list[NetworkRecord] = []
    current: dict[str, object] = {}

    def _emit() -> None:
        ssid = current.get("ssid")
        if isinstance(ssid, str) and ssid:
            records.append(
                NetworkRecord(
                    ssid=ssid,
                    signal=current.get("signal"),  # type: ignore[arg-type]
                    encrypted=current.get("encrypted"),  # type: ignore[arg-type]
                    security=current.get("security"),  # type: ignore[arg-type]
                )
            )

    for line in output.splitlines():
        if _CELL_MARKER in line:
            _emit()
            current = {}
        match = _ESSID_PATTERN.search(line)
        if match:
            current["ssid"] = match.group(1)
        match = _SIGNAL_PATTERN.search(line)
        if match:
            current["signal"] = signal_percent(int(match.group(1)))
        if "Encryption key:on" in line:
            current["encrypted"] = True
        elif "Encryption key:off" in line:
            current["encrypted"] = False
        security = _security_from_line(line)
        if security is not None:
            current["security"] = security
    _emit()
    return records


def rank_networks(records: Iterable[NetworkRecord]) -> list[NetworkRecord]:
    """Drop repeated names (first wins) and order by signal, strongest first."""

    seen: set[str] = set()
    unique: list[NetworkRecord] = []
    for record in records:
        if record.ssid in seen:
            continue
        seen.add(record.ssid)
        unique.append(record)
    # sorted() is stable, so equal signals keep their scan order.
    return sorted(unique, key=lambda record: record.signal or 0, reverse=True)


class ScanCache:
    """Most recent scan result plus the time it was captured."""

    def __init__(
        self,
        freshness: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._freshness = max(0.0, freshness)
        self._clock = clock
        self._networks: list[NetworkRecord] = []
        self._captured_at: float | None = None

    @property
    def freshness(self) -> float:
        return self._freshness

    @property
    def captured_at(self) -> float | None:
        return self._captured_at

    def get(self) -> list[NetworkRecord] | None:
        """Return the cached networks while they are fresh, else ``None``."""

        captured_at = self._captured_at
        if captured_at is None:
            return None
        if self._clock() - captured_at >= self._freshness:
            return None
        return self._networks

    def store(self, networks: Sequence[NetworkRecord]) -> list[NetworkRecord]:
        """Replace the cached result wholesale and return the stored list."""

        self._networks = list(networks)
        self._captured_at = self._clock()
        return self._networks


class NetworkScanner:
    """Scan through a backend and serve cached results inside the window."""

    def __init__(
        self,
        backend: WirelessBackend,
        cache: ScanCache | None = None,
        *,
        system_log: SystemLog | None = None,
    ) -> None:
        self._backend = backend
        self._cache = cache or ScanCache()
        self._system_log = system_log
        self._lock = threading.Lock()

    @property
    def cache(self) -> ScanCache:
        return self._cache

    def scan(self) -> list[NetworkRecord]:
        cached = self._cache.get()
        if cached is not None:
            return cached
        try:
            output = self._backend.scan()
        except ScanError as exc:
            self._record("scan_error", f"Network scan failed: {exc}", level="warning")
            return []
        networks = rank_networks(parse_scan_output(output))
        with self._lock:
            stored = self._cache.store(networks)
        logging.getLogger(__name__).debug("Scan found %d networks", len(stored))
        return stored

    def _record(self, event: str, message: str, *, level: str = "info") -> None:
        if self._system_log is None:
            logging.getLogger(__name__).warning(message)
            return
        self._system_log.record("scan", event, message, level=level)


__all__ = [
    "NetworkRecord",
    "NetworkScanner",
    "ScanCache",
    "parse_scan_output",
    "rank_networks",
    "signal_percent",
]
