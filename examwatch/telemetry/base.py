"""
Uniform, fail-soft telemetry surface shared by every platform adapter.

Every public coroutine returns a valid (possibly empty) value: missing
utilities, non-zero exits, malformed output and timeouts all degrade to
"no evidence" instead of raising.
"""
from __future__ import annotations
import json
import logging
import os
import socket
import time
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

from ..models import NetworkConnectionSample, ProcessSample, ScreencastSample, SystemInfo, Tab
from ..rules import match_category
from ..utils import run_blocking, run_command, soft_fail

logger = logging.getLogger(__name__)

PROC_ATTRS = ["pid", "name", "cmdline", "cpu_percent", "memory_percent", "status", "exe", "username"]


def _prime_cpu_counters(interval: float) -> None:
    # psutil reports 0.0 on the first cpu_percent call for each process;
    # process_iter caches Process objects, so later snapshots read a real delta
    for _ in psutil.process_iter(["cpu_percent"]):
        pass
    if interval > 0:
        time.sleep(interval)


def _snapshot_processes() -> List[ProcessSample]:
    out: List[ProcessSample] = []
    for proc in psutil.process_iter(PROC_ATTRS):
        info = proc.info
        try:
            out.append(ProcessSample(
                pid=info["pid"],
                name=info.get("name") or "",
                command_line=" ".join(info.get("cmdline") or []),
                cpu_percent=float(info.get("cpu_percent") or 0.0),
                mem_percent=float(info.get("memory_percent") or 0.0),
                state=info.get("status") or "",
                exe=info.get("exe") or "",
                user=info.get("username") or "",
            ))
        except (TypeError, ValueError):
            continue
    return out


def _snapshot_connections() -> List[NetworkConnectionSample]:
    out: List[NetworkConnectionSample] = []
    for c in psutil.net_connections(kind="inet"):
        out.append(NetworkConnectionSample(
            protocol="udp" if c.type == socket.SOCK_DGRAM else "tcp",
            local_port=c.laddr.port if c.laddr else 0,
            peer_port=c.raddr.port if c.raddr else 0,
            peer_address=c.raddr.ip if c.raddr else "",
            state=c.status if c.status != psutil.CONN_NONE else "",
            owning_pid=c.pid,
        ))
    return out


def _chromium_profile_extensions(base: Path, browser: str) -> List[Dict[str, str]]:
    results: List[Dict[str, str]] = []
    if not base.is_dir():
        return results
    for profile in base.iterdir():
        ext_dir = profile / "Extensions"
        if not ext_dir.is_dir():
            continue
        for id_dir in ext_dir.iterdir():
            if not id_dir.is_dir():
                continue
            for version_dir in id_dir.iterdir():
                manifest_path = version_dir / "manifest.json"
                try:
                    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
                except (OSError, ValueError):
                    continue
                results.append({
                    "browser": browser,
                    "id": id_dir.name,
                    "name": str(manifest.get("name", "")),
                    "description": str(manifest.get("description", "")),
                })
    return results


def _firefox_extensions(base: Path) -> List[Dict[str, str]]:
    results: List[Dict[str, str]] = []
    if not base.is_dir():
        return results
    for profile in base.iterdir():
        ext_json = profile / "extensions.json"
        try:
            data = json.loads(ext_json.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        for addon in data.get("addons", []) or []:
            if not isinstance(addon, dict) or not addon.get("name"):
                continue
            results.append({
                "browser": "firefox",
                "id": str(addon.get("id", "")),
                "name": str(addon["name"]),
                "description": str(addon.get("description") or ""),
            })
    return results


class TelemetryAdapter:
    """Platform-neutral part of the adapter.

    Subclasses override the platform queries; the defaults report nothing,
    which is how a signal category shows up as unavailable on a host.
    """

    platform = "generic"

    def __init__(self, timeouts: Optional[Dict[str, float]] = None, home: Optional[Path] = None):
        self.timeouts: Dict[str, float] = dict(timeouts or {})
        self.home = home or Path.home()
        self._cpu_primed = False

    def timeout(self, name: str, default: float = 3.0) -> float:
        return float(self.timeouts.get(name, default))

    async def run(self, args: List[str], timeout_key: str, default: float = 3.0):
        return await run_command(args, self.timeout(timeout_key, default))

    @soft_fail(lambda: None)
    async def _prime_cpu(self) -> None:
        interval = self.timeout("cpu_sample", 0.5)
        await run_blocking(partial(_prime_cpu_counters, interval), interval + self.timeout("processes", 4.0))

    @soft_fail(list)
    async def list_processes(self) -> List[ProcessSample]:
        if not self._cpu_primed:
            self._cpu_primed = True
            await self._prime_cpu()
        return await run_blocking(_snapshot_processes, self.timeout("processes", 4.0))

    @soft_fail(list)
    async def list_network_connections(self) -> List[NetworkConnectionSample]:
        return await run_blocking(_snapshot_connections, self.timeout("connections", 3.0))

    async def list_running_services(self) -> List[str]:
        return []

    async def list_installed_applications(self) -> List[str]:
        return []

    async def inspect_browser_tabs(self, browser_key: str) -> List[Tab]:
        return []

    async def screencast_sessions(self) -> List[ScreencastSample]:
        return []

    async def remote_desktop_sessions(self) -> List[str]:
        return []

    async def screen_sharing_agents(self) -> List[str]:
        return []

    async def screen_recording_clients(self) -> List[str]:
        return []

    async def audio_capture_state(self) -> Dict[str, bool]:
        return {}

    async def x11_display_clients(self) -> List[Tuple[str, int]]:
        return []

    async def system_info(self) -> SystemInfo:
        return SystemInfo()

    def extension_roots(self) -> Dict[str, Path]:
        return {}

    def firefox_root(self) -> Optional[Path]:
        return None

    def _scan_extensions(self) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for browser, base in self.extension_roots().items():
            results.extend(_chromium_profile_extensions(base, browser))
        ff = self.firefox_root()
        if ff is not None:
            results.extend(_firefox_extensions(ff))
        for ext in results:
            m = match_category(f"{ext['name']} {ext['description']}")
            ext["category"], ext["match"] = m if m else ("", "")
        return results

    @soft_fail(list)
    async def list_browser_extensions(self) -> List[Dict[str, Any]]:
        return await run_blocking(self._scan_extensions, self.timeout("applications", 5.0))


def env_path(var: str, fallback: Path) -> Path:
    value = os.environ.get(var)
    return Path(value) if value else fallback
