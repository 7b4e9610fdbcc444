"""Command-line entry point for the setup portal server."""
from __future__ import annotations

import argparse
import errno
import logging
import os
import signal
import socket
import subprocess
import sys
from typing import Sequence

import uvicorn

from .app import create_app
from .config import SetupConfig
from .system_log import SystemLog

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the server CLI."""

    parser = argparse.ArgumentParser(
        prog="wifi-setup-server",
        description="Captive portal for first-time Wi-Fi configuration",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Address to listen on.")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (defaults to $SETUP_PORT or 8080).",
    )
    parser.add_argument(
        "--interface",
        default=None,
        help="Wireless interface (defaults to $WIFI_INTERFACE or wlan0).",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Console logging verbosity.",
    )
    return parser


def reclaim_port(port: int) -> list[int]:
    """Kill processes still listening on ``port`` and return their PIDs."""

    try:
        completed = subprocess.run(
            ["lsof", "-ti", f":{port}"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.error("Unable to look up the process holding port %d: %s", port, exc)
        return []
    killed: list[int] = []
    for token in completed.stdout.split():
        try:
            pid = int(token)
        except ValueError:
            continue
        if pid == os.getpid():
            continue
        try:
            os.kill(pid, signal.SIGKILL)
        except OSError as exc:
            logger.error("Failed to kill process %d: %s", pid, exc)
            continue
        killed.append(pid)
    return killed


def bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
    config = SetupConfig.from_env().with_overrides(port=args.port, interface=args.interface)
    system_log = SystemLog(config.log_path)
    try:
        sock = bind_socket(args.host, config.port)
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            system_log.record(
                "system",
                "port_in_use",
                f"Port {config.port} is already in use; killing the existing process.",
                level="error",
            )
            killed = reclaim_port(config.port)
            if killed:
                system_log.record(
                    "system",
                    "port_reclaimed",
                    "Existing process killed. Please restart the server.",
                    metadata={"pids": killed},
                )
            else:
                system_log.record(
                    "system",
                    "port_reclaim_failed",
                    f"Please manually run: sudo lsof -ti:{config.port} | xargs kill -9",
                    level="error",
                )
        else:
            system_log.record("system", "bind_error", f"Server error: {exc}", level="error")
        return 1

    app = create_app(config, system_log=system_log)
    logger.info(
        "Serving WiFi setup on http://%s:%d (interface %s)",
        args.host,
        config.port,
        config.interface,
    )
    server = uvicorn.Server(
        uvicorn.Config(app, log_level=args.log_level, proxy_headers=False)
    )
    server.run(sockets=[sock])
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``wifi-setup-server`` console script."""

    return run(argv)


__all__ = ["bind_socket", "build_parser", "main", "reclaim_port", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
