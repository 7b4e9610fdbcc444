"""FastAPI application serving the setup portal."""
from __future__ import annotations

import html
import logging
import string
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .backend import SystemBackend, WirelessBackend
from .config import SetupConfig
from .credentials import ConfiguredFlag, FilesystemError, WiFiCredentialStore
from .join import JoinOrchestrator
from .scanner import NetworkScanner, ScanCache
from .status import StatusReporter
from .system_log import SystemLog
from .version import APP_VERSION

STATIC_DIR = Path(__file__).resolve().parent / "static"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _load_static(name: str) -> str:
    path = STATIC_DIR / name
    if not path.exists():  # pragma: no cover - sanity check
        raise FileNotFoundError(f"Static asset {name!r} missing")
    return path.read_text(encoding="utf-8")


def render_index(device_name: str) -> str:
    """Return the portal page with the device name filled in."""

    template = string.Template(_load_static("index.html"))
    return template.safe_substitute(device_name=html.escape(device_name))


class ConnectPayload(BaseModel):
    ssid: str = Field(min_length=1, max_length=64)
    password: str | None = Field(default=None, max_length=128)
    reuse_saved_password: bool = False


def create_app(
    config: SetupConfig | None = None,
    *,
    backend: WirelessBackend | None = None,
    system_log: SystemLog | None = None,
    credential_store: WiFiCredentialStore | None = None,
) -> FastAPI:
    config = config or SetupConfig.from_env()
    logger = logging.getLogger(__name__)

    if system_log is None:
        system_log = SystemLog(config.log_path)
    if backend is None:
        backend = SystemBackend(
            config.interface,
            softap_script=config.softap_script,
            wpa_config_path=config.wpa_config_path,
        )
    if credential_store is None:
        credential_store = WiFiCredentialStore(
            config.credentials_path, owner=config.service_account
        )
    scanner = NetworkScanner(
        backend,
        ScanCache(config.scan_freshness),
        system_log=system_log,
    )
    orchestrator = JoinOrchestrator(
        backend,
        credential_store,
        ConfiguredFlag(config.configured_flag_path),
        system_log=system_log,
        settle_timeout=config.settle_timeout,
        confirm_timeout=config.confirm_timeout,
        poll_interval=config.poll_interval,
    )
    status_reporter = StatusReporter(
        backend, config.interface, ap_ssid_marker=config.ap_ssid_marker
    )
    index_page = render_index(config.device_name)

    @asynccontextmanager
    async def lifespan(_: FastAPI):  # pragma: no cover - framework hook
        system_log.record(
            "system",
            "startup",
            f"WiFi setup server starting on port {config.port} for {config.interface}.",
        )
        try:
            await run_in_threadpool(credential_store.ensure_directory)
        except FilesystemError as exc:
            system_log.record("system", "data_dir_error", str(exc), level="error")
        yield
        system_log.record("system", "shutdown", "WiFi setup server shutting down.")

    app = FastAPI(title="WiFi Setup", version=APP_VERSION, lifespan=lifespan)
    app.state.config = config
    app.state.system_log = system_log
    app.state.scanner = scanner
    app.state.orchestrator = orchestrator
    app.state.status_reporter = status_reporter

    @app.middleware("http")
    async def cors(request: Request, call_next) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code in (404, 405):
            return PlainTextResponse("Not Found", status_code=404)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Malformed request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Malformed request body"},
        )

    @app.get("/", response_class=HTMLResponse)
    @app.get("/index.html", response_class=HTMLResponse)
    async def index() -> str:
        return index_page

    @app.get("/api/networks")
    async def list_networks() -> dict[str, object]:
        networks = await run_in_threadpool(scanner.scan)
        return {"networks": [network.to_dict() for network in networks]}

    @app.post("/api/connect")
    async def connect(payload: ConnectPayload) -> Response:
        system_log.record(
            "http", "connect_request", f"Received connection request for SSID: {payload.ssid}"
        )
        try:
            result = await run_in_threadpool(
                orchestrator.connect,
                payload.ssid,
                payload.password,
                reuse_stored=payload.reuse_saved_password,
            )
        except Exception as exc:
            logger.exception("Unexpected error in /api/connect")
            system_log.record("http", "connect_exception", str(exc), level="error")
            return JSONResponse(
                status_code=500, content={"success": False, "error": str(exc)}
            )
        return JSONResponse(result.to_response())

    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        status = await run_in_threadpool(status_reporter.status)
        return status.to_dict()

    @app.get("/api/logs")
    async def get_log_entries(limit: int = 100, category: str | None = None) -> dict[str, object]:
        entries = system_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in reversed(entries)]}

    return app


__all__ = ["ConnectPayload", "create_app", "render_index"]
