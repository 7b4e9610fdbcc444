"""Switch the device from access-point mode onto the operator's network."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .backend import CommandError, CommandTimeoutError, StatusQueryError, WirelessBackend
from .credentials import ConfiguredFlag, FilesystemError, WiFiCredentialStore
from .system_log import SystemLog


class JoinState(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    STOPPING_AP = "stopping_ap"
    SETTLING = "settling"
    PRIMARY_JOIN = "primary_join"
    FALLBACK_JOIN = "fallback_join"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(slots=True)
class JoinResult:
    """Outcome of one join request.

    Only ``success``, ``method`` and ``error`` go back to the operator; the
    per-mechanism errors are kept for the event log.
    """

    success: bool
    method: str | None = None
    error: str | None = None
    primary_error: str | None = None
    fallback_error: str | None = None
    confirmed: bool | None = None

    def to_response(self) -> dict[str, object]:
        if self.success:
            return {"success": True, "method": self.method}
        return {"success": False, "error": self.error or "Unknown error"}


class JoinOrchestrator:
    """Run the AP teardown, primary join and fallback join sequence.

    Only one join runs at a time; a request arriving while another is in
    flight is refused rather than queued behind an access point that is
    already being torn down.
    """

    def __init__(
        self,
        backend: WirelessBackend,
        credential_store: WiFiCredentialStore,
        configured_flag: ConfiguredFlag,
        *,
        system_log: SystemLog | None = None,
        settle_timeout: float = 3.0,
        confirm_timeout: float = 2.0,
        poll_interval: float = 0.25,
        max_poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._credentials = credential_store
        self._configured = configured_flag
        self._system_log = system_log or SystemLog(None)
        self._settle_timeout = max(0.0, settle_timeout)
        self._confirm_timeout = max(0.0, confirm_timeout)
        self._poll_interval = max(0.001, poll_interval)
        self._max_poll_interval = max(self._poll_interval, max_poll_interval)
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._state = JoinState.IDLE

    @property
    def state(self) -> JoinState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # ------------------------------ operations -----------------------------
    def connect(
        self,
        ssid: str,
        password: str | None = None,
        *,
        reuse_stored: bool = False,
    ) -> JoinResult:
        """Join ``ssid``; without a password the network is treated as open.

        With ``reuse_stored`` a missing password is taken from the saved
        credentials when they belong to the same network.
        """

        if not isinstance(ssid, str) or not ssid:
            return JoinResult(success=False, error="SSID must be a non-empty string")
        if not self._lock.acquire(blocking=False):
            self._record(
                "join_busy",
                f"Rejected request for {ssid}: another connection attempt is in progress.",
                level="warning",
            )
            return JoinResult(
                success=False, error="A connection attempt is already in progress"
            )
        try:
            return self._run(ssid, password, reuse_stored)
        finally:
            self._lock.release()

    # ----------------------------- state machine ---------------------------
    def _run(self, ssid: str, password: str | None, reuse_stored: bool) -> JoinResult:
        self._transition(JoinState.SAVING, f"Attempting to connect to WiFi network: {ssid}")
        secret = self._resolve_secret(ssid, password, reuse_stored)
        try:
            self._credentials.save(ssid, secret)
        except FilesystemError as exc:
            return self._fail(str(exc), event="credentials_error")

        self._transition(JoinState.STOPPING_AP, "Stopping AP mode")
        self._stop_access_point()

        self._transition(JoinState.SETTLING, "Waiting for the wireless interface")
        if self._poll(self._interface_ready, self._settle_timeout):
            self._record("settle_ready", "Wireless interface ready.")
        else:
            self._record(
                "settle_timeout",
                f"Interface not reported ready within {self._settle_timeout:g}s; joining anyway.",
                level="warning",
            )

        self._transition(JoinState.PRIMARY_JOIN, f"Connecting to {ssid} via connection manager")
        try:
            self._backend.join_primary(ssid, secret or None)
        except CommandError as exc:
            primary_error = self._describe(exc)
            self._record(
                "primary_failed",
                f"Connection manager join failed: {primary_error}",
                level="warning",
            )
        else:
            return self._finish_primary(ssid)

        self._transition(JoinState.FALLBACK_JOIN, "Trying wpa_supplicant method")
        try:
            self._backend.join_fallback(ssid, secret or None)
        except CommandError as exc:
            fallback_error = self._describe(exc)
            result = self._fail(
                f"Failed to configure WiFi: {fallback_error}",
                event="join_failed",
                metadata={"primary_error": primary_error, "fallback_error": fallback_error},
            )
            result.primary_error = primary_error
            result.fallback_error = fallback_error
            return result
        self._mark_configured()
        self._backend.stop_ap_services()
        self._state = JoinState.SUCCESS
        self._record(
            "fallback_success",
            "WiFi configured via wpa_supplicant",
            metadata={"ssid": ssid, "primary_error": primary_error},
        )
        return JoinResult(success=True, method="fallback", primary_error=primary_error)

    def _finish_primary(self, ssid: str) -> JoinResult:
        self._record("primary_success", "WiFi connected successfully via connection manager")
        self._mark_configured()
        self._backend.stop_ap_services()
        self._backend.flush_addresses()
        confirmed = self._poll(lambda: self._associated_with(ssid), self._confirm_timeout)
        if confirmed:
            self._record("join_confirmed", f"Interface reports association with {ssid}.")
        else:
            self._record(
                "join_unconfirmed",
                f"Association with {ssid} not observed within {self._confirm_timeout:g}s.",
                level="warning",
            )
        self._state = JoinState.SUCCESS
        self._record("join_complete", "Connection complete. AP mode should be stopped.")
        return JoinResult(success=True, method="primary", confirmed=confirmed)

    # ------------------------------- helpers -------------------------------
    def _resolve_secret(self, ssid: str, password: str | None, reuse_stored: bool) -> str:
        if password is not None or not reuse_stored:
            return password or ""
        stored = self._credentials.load()
        if stored is not None and stored.ssid == ssid and stored.password:
            self._record("stored_secret", f"Reusing stored password for {ssid}.")
            return stored.password
        return ""

    def _stop_access_point(self) -> None:
        try:
            self._backend.stop_access_point()
        except CommandError as exc:
            self._record(
                "ap_stop_failed",
                f"Could not stop AP (may not be running): {exc}",
                level="warning",
            )
            self._backend.stop_ap_services()
        else:
            self._record("ap_stopped", "AP mode stopped successfully")

    def _interface_ready(self) -> bool:
        try:
            return bool(self._backend.interface_ready())
        except CommandError:
            return False

    def _associated_with(self, ssid: str) -> bool:
        try:
            current, _address = self._backend.query_status()
        except StatusQueryError:
            return False
        return current == ssid

    def _poll(self, predicate: Callable[[], bool], timeout: float) -> bool:
        """Re-check ``predicate`` with doubling delays until it holds or time runs out."""

        deadline = self._clock() + timeout
        interval = self._poll_interval
        while True:
            if predicate():
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            self._sleep(min(interval, remaining))
            interval = min(interval * 2, self._max_poll_interval)

    def _mark_configured(self) -> None:
        try:
            marked_at = self._configured.mark()
        except OSError as exc:
            self._record(
                "configured_flag_error",
                f"Unable to write {self._configured.path}: {exc}",
                level="error",
            )
            return
        self._record(
            "configured",
            "Marked device as configured.",
            metadata={"timestamp": marked_at.isoformat()},
        )

    @staticmethod
    def _describe(exc: CommandError) -> str:
        message = str(exc).strip() or exc.__class__.__name__
        if isinstance(exc, CommandTimeoutError):
            return f"timed out ({message})"
        return message

    def _fail(
        self,
        message: str,
        *,
        event: str,
        metadata: dict[str, object | None] | None = None,
    ) -> JoinResult:
        self._state = JoinState.FAILED
        self._record(event, message, level="error", metadata=metadata)
        return JoinResult(success=False, error=message)

    def _transition(self, state: JoinState, message: str) -> None:
        self._state = state
        self._record("state", message, metadata={"state": state.value})

    def _record(
        self,
        event: str,
        message: str,
        *,
        level: str = "info",
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        try:
            self._system_log.record("join", event, message, level=level, metadata=metadata)
        except Exception:  # pragma: no cover - logging must not abort a join
            logging.getLogger(__name__).debug("Event log write failed", exc_info=True)


__all__ = ["JoinOrchestrator", "JoinResult", "JoinState"]
