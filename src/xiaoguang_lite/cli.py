from __future__ import annotations

import logging
import os
import socket
import subprocess
import time

import uvicorn

from xiaoguang_lite.bootstrap.app_factory import create_app
from xiaoguang_lite.config.settings import LiteSettings

logger = logging.getLogger(__name__)


def _is_port_open(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex((host, port)) == 0


def _find_pids_on_port(port: int) -> list[int]:
    if os.name != "nt":
        return []
    proc = subprocess.run(
        ["netstat", "-ano", "-p", "tcp"],
        capture_output=True,
        text=True,
        check=False,
    )
    pids: set[int] = set()
    needle = f":{port}"
    for line in proc.stdout.splitlines():
        t = line.strip()
        if "LISTENING" not in t or needle not in t:
            continue
        parts = t.split()
        if not parts:
            continue
        try:
            pid = int(parts[-1])
        except ValueError:
            continue
        if pid != os.getpid():
            pids.add(pid)
    return sorted(pids)


def _kill_pid(pid: int) -> None:
    if os.name == "nt":
        subprocess.run(["taskkill", "/PID", str(pid), "/F"], check=False)


def _preflight_port(host: str, port: int) -> None:
    if not _is_port_open(host, port):
        return
    auto_kill = os.getenv("XG_AUTO_KILL_PORT", "false").strip().lower() in {
        "1",
        "on",
        "true",
        "yes",
    }
    if not auto_kill:
        raise RuntimeError(
            f"Port {port} is already in use. Set XG_AUTO_KILL_PORT=true or free it manually."
        )
    for pid in _find_pids_on_port(port):
        logger.warning("[CLI] killing pid %d holding port %d", pid, port)
        _kill_pid(pid)
    deadline = time.time() + 5
    while time.time() < deadline:
        if not _is_port_open(host, port):
            return
        time.sleep(0.2)
    raise RuntimeError(f"Port {port} is still in use after cleanup attempt.")


def main() -> None:
    settings = LiteSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _preflight_port(settings.host, settings.port)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
