"""Append-only event log for the setup portal."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Iterable


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class LogEntry:
    """One recorded portal event."""

    timestamp: datetime
    category: str
    event: str
    message: str
    level: str = "info"
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "event": self.event,
            "level": self.level,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class SystemLog:
    """Timestamped JSON-lines log that never raises on write failures."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
        clock=_utc_now,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[LogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._clock = clock
        self._logger = logging.getLogger(__name__)
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        level: str = "info",
        metadata: dict[str, object | None] | None = None,
    ) -> LogEntry:
        """Store an event, mirror it to :mod:`logging` and append it to disk."""

        level_name = level if level in _LEVELS else "info"
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = LogEntry(
            timestamp=self._clock(),
            category=category.strip() or "general",
            event=event,
            message=message,
            level=level_name,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        if entry.metadata:
            self._logger.log(
                _LEVELS[level_name], "[%s] %s | %s", event, message, entry.metadata
            )
        else:
            self._logger.log(_LEVELS[level_name], "[%s] %s", event, message)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
    ) -> list[LogEntry]:
        """Return the newest entries in chronological order."""

        with self._lock:
            entries: Iterable[LogEntry] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    # ----------------------------- implementation --------------------------
    def _append(self, entry: LogEntry) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:
            self._logger.warning("Unable to write event log %s: %s", self._path, exc)

    def _restore(self) -> None:
        if self._path is None:
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        except OSError as exc:
            self._logger.warning("Unable to read event log %s: %s", self._path, exc)
            return
        for line in lines[-self._entries.maxlen:]:
            entry = self._parse(line)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _parse(line: str) -> LogEntry | None:
        try:
            payload = json.loads(line)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = datetime.fromisoformat(str(payload.get("timestamp")))
        except ValueError:
            return None
        category = payload.get("category")
        level = payload.get("level")
        metadata = payload.get("metadata")
        return LogEntry(
            timestamp=timestamp,
            category=category if isinstance(category, str) and category else "general",
            event=event,
            message=message,
            level=level if level in _LEVELS else "info",
            metadata=metadata if isinstance(metadata, dict) else None,
        )


__all__ = ["LogEntry", "SystemLog"]
