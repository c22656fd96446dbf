from __future__ import annotations
import asyncio
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Tuple

from ..models import ScreencastSample, SystemInfo, Tab
from ..rules import BROWSERS
from ..utils import read_text, run_blocking, soft_fail
from .base import TelemetryAdapter

BROWSER_RE = re.compile(r"chrome|chromium|firefox|brave|opera|edge")
MEETING_RE = re.compile(r"zoom|teams|webex|discord")
ACTIVE_STATE_RE = re.compile(r"running|active|streaming")


def parse_systemctl_units(text: str) -> List[str]:
    services = []
    for line in text.splitlines():
        parts = line.strip().lstrip("●* ").split()
        if not parts:
            continue
        name = parts[0]
        if name.endswith(".service"):
            name = name[: -len(".service")]
        services.append(name)
    return services


def parse_wmctrl_windows(text: str, browser_key: str) -> List[Tab]:
    """Parse ``wmctrl -lx`` output into one Tab per browser window."""
    patterns = BROWSERS.get(browser_key, [browser_key])
    tabs: List[Tab] = []
    for line in text.splitlines():
        # <id> <desktop> <wm_class> <host> <title...>
        parts = line.split(None, 4)
        if len(parts) < 4:
            continue
        wm_class = parts[2].lower()
        if not any(p in wm_class for p in patterns):
            continue
        title = parts[4].strip() if len(parts) == 5 else ""
        tabs.append(Tab(url="", title=title, window_index=len(tabs), tab_index=0))
    return tabs


def _props(obj: Dict[str, Any]) -> Dict[str, Any]:
    info = obj.get("info") or {}
    return info.get("props") or {}


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_pw_dump(text: str) -> List[ScreencastSample]:
    """Extract active screen-capture nodes from ``pw-dump`` JSON.

    A node counts when it is a video/stream node (or a portal/screen node)
    owned by a browser, a meeting app or the desktop portal. Node pid and
    app name fall back to the owning client object.
    """
    try:
        data = json.loads(text or "[]")
    except ValueError:
        return []
    if not isinstance(data, list):
        return []

    clients: Dict[Any, Dict[str, Any]] = {}
    for obj in data:
        if isinstance(obj, dict) and obj.get("type") == "PipeWire:Interface:Client":
            props = _props(obj)
            clients[_as_int(obj.get("id"))] = {
                "pid": _as_int(props.get("application.process.id")),
                "app": str(props.get("application.name") or ""),
                "bin": str(props.get("application.process.binary") or ""),
            }

    samples: List[ScreencastSample] = []
    seen_pids = set()
    for obj in data:
        if not isinstance(obj, dict) or obj.get("type") != "PipeWire:Interface:Node":
            continue
        info = obj.get("info") or {}
        props = info.get("props") or {}
        state = str(info.get("state") or props.get("node.state") or "").lower()
        # unknown state is treated as active
        if state and not ACTIVE_STATE_RE.search(state):
            continue

        media_class = str(props.get("media.class") or "").lower()
        node_name = str(props.get("node.name") or "").lower()
        node_desc = str(props.get("node.description") or "").lower()
        role = str(props.get("node.role") or "").lower()
        raw_app = str(props.get("application.name") or "")
        binary = str(props.get("application.process.binary") or "")
        pid = _as_int(props.get("application.process.id"))

        client = clients.get(_as_int(props.get("client.id", info.get("clientId"))))
        if client:
            pid = pid or client["pid"]
            raw_app = raw_app or client["app"]
            binary = binary or client["bin"]
        app, binary = raw_app.lower(), binary.lower()

        looks_like_screencast = (
            "video" in media_class or "stream" in media_class or "screen" in role or "xdpw" in node_name
            or "screen" in node_desc or "portal" in node_desc or "xdg-desktop-portal" in app
        )
        owner_ok = (
            BROWSER_RE.search(app) or BROWSER_RE.search(binary) or MEETING_RE.search(app)
            or "xdg-desktop-portal" in app
        )
        if not (looks_like_screencast and owner_ok):
            continue
        if pid and pid in seen_pids:
            continue
        if pid:
            seen_pids.add(pid)
        samples.append(ScreencastSample(
            pid=pid,
            app_name=raw_app or "Unknown app",
            node=str(props.get("node.description") or props.get("node.name") or ""),
        ))
    return samples


def parse_lsof_x11(text: str) -> List[Tuple[str, int]]:
    """Browser (command, pid) pairs from ``lsof`` output on the X11 sockets."""
    clients: List[Tuple[str, int]] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] == "COMMAND" or not parts[1].isdigit():
            continue
        command, pid = parts[0], int(parts[1])
        if not BROWSER_RE.search(command.lower()):
            continue
        if (command, pid) not in clients:
            clients.append((command, pid))
    return clients


def parse_pactl_state(sources: str, outputs: str) -> Dict[str, bool]:
    monitor = any("monitor" in line and "RUNNING" in line.upper() for line in sources.splitlines())
    capture = bool(re.search(r"State:\s*RUNNING", outputs, re.I)) and bool(
        re.search(r"chrome|chromium|firefox|zoom|teams|obs", outputs, re.I)
    )
    return {"monitor": monitor, "desktop_capture": capture}


class LinuxTelemetry(TelemetryAdapter):
    platform = "linux"
    x11_socket_dir = Path("/tmp/.X11-unix")

    @soft_fail(list)
    async def list_running_services(self) -> List[str]:
        res = await self.run(
            ["systemctl", "list-units", "--type=service", "--state=running", "--no-legend", "--no-pager"],
            "services", 5.0,
        )
        return parse_systemctl_units(res.stdout) if res.ok else []

    @soft_fail(list)
    async def list_installed_applications(self) -> List[str]:
        dpkg, rpm, flatpak, snap = await asyncio.gather(
            self.run(["dpkg-query", "-W", "-f=${Package}\n"], "applications", 5.0),
            self.run(["rpm", "-qa", "--qf", "%{NAME}\n"], "applications", 5.0),
            self.run(["flatpak", "list", "--app", "--columns=application"], "applications", 5.0),
            self.run(["snap", "list"], "applications", 5.0),
        )
        names = set(dpkg.lines()) | set(rpm.lines()) | set(flatpak.lines())
        for line in snap.lines()[1:]:
            names.add(line.split()[0])
        return sorted(names)

    @soft_fail(list)
    async def inspect_browser_tabs(self, browser_key: str) -> List[Tab]:
        res = await self.run(["wmctrl", "-lx"], "tabs", 2.0)
        return parse_wmctrl_windows(res.stdout, browser_key) if res.ok else []

    @soft_fail(list)
    async def screencast_sessions(self) -> List[ScreencastSample]:
        res = await self.run(["pw-dump"], "screencast", 3.0)
        return parse_pw_dump(res.stdout) if res.ok else []

    @soft_fail(list)
    async def x11_display_clients(self) -> List[Tuple[str, int]]:
        sockets = sorted(str(p) for p in self.x11_socket_dir.glob("X*"))
        if not sockets:
            return []
        res = await self.run(["lsof", *sockets], "session", 2.0)
        # lsof exits 1 when any one socket has no users; its output is still valid
        return parse_lsof_x11(res.stdout)

    @soft_fail(dict)
    async def audio_capture_state(self) -> Dict[str, bool]:
        sources, outputs = await asyncio.gather(
            self.run(["pactl", "list", "short", "sources"], "audio", 1.5),
            self.run(["pactl", "list", "source-outputs"], "audio", 1.5),
        )
        return parse_pactl_state(sources.stdout if sources.ok else "", outputs.stdout if outputs.ok else "")

    @soft_fail(SystemInfo)
    async def system_info(self) -> SystemInfo:
        def read() -> SystemInfo:
            dmi = Path("/sys/class/dmi/id")
            return SystemInfo(
                manufacturer=read_text(dmi / "sys_vendor").strip(),
                model=read_text(dmi / "product_name").strip(),
            )

        return await run_blocking(read, self.timeout("system", 2.0))

    def extension_roots(self) -> Dict[str, Path]:
        config = self.home / ".config"
        return {
            "chrome": config / "google-chrome",
            "edge": config / "microsoft-edge",
            "brave": config / "BraveSoftware" / "Brave-Browser",
            "chromium": config / "chromium",
        }

    def firefox_root(self) -> Path:
        return self.home / ".mozilla" / "firefox"
