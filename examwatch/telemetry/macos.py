from __future__ import annotations
import asyncio
import json
from pathlib import Path
from typing import Dict, List

from ..models import SystemInfo, Tab
from ..utils import run_blocking, soft_fail
from .base import TelemetryAdapter

TCC_DB = "Library/Application Support/com.apple.TCC/TCC.db"
TCC_QUERY = "SELECT client FROM access WHERE service='kTCCServiceScreenCapture' AND auth_value=2;"

# AppleScript application name per browser family
SCRIPTABLE_BROWSERS: Dict[str, str] = {
    "chrome": "Google Chrome",
    "chromium": "Chromium",
    "brave": "Brave Browser",
    "edge": "Microsoft Edge",
    "safari": "Safari",
}

TAB_SCRIPT = """
if application "{app}" is running then
    tell application "{app}"
        set out to ""
        set wi to 0
        repeat with w in windows
            set wi to wi + 1
            set ti to 0
            repeat with t in tabs of w
                set ti to ti + 1
                set out to out & wi & tab & ti & tab & (URL of t) & tab & ({title} of t) & linefeed
            end repeat
        end repeat
        return out
    end tell
end if
"""

SCREEN_SHARING_AGENTS = ["screensharingd", "ARDAgent"]


def parse_launchctl_list(text: str) -> List[str]:
    services = []
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 3:
            services.append(parts[2])
    return services


def parse_tab_lines(text: str) -> List[Tab]:
    tabs: List[Tab] = []
    for line in text.splitlines():
        parts = line.split("\t", 3)
        if len(parts) < 3:
            continue
        try:
            w, t = int(parts[0]), int(parts[1])
        except ValueError:
            continue
        title = parts[3].strip() if len(parts) == 4 else ""
        tabs.append(Tab(url=parts[2].strip(), title=title, window_index=w, tab_index=t))
    return tabs


def parse_system_profiler_apps(text: str) -> List[str]:
    try:
        data = json.loads(text or "{}")
    except ValueError:
        return []
    items = data.get("SPApplicationsDataType", []) if isinstance(data, dict) else []
    return [str(x["_name"]) for x in items if isinstance(x, dict) and x.get("_name")]


def _list_app_bundles(*dirs: Path) -> List[str]:
    names = []
    for d in dirs:
        if not d.is_dir():
            continue
        for entry in d.iterdir():
            name = entry.name
            names.append(name[:-4] if name.lower().endswith(".app") else name)
    return names


class MacTelemetry(TelemetryAdapter):
    platform = "darwin"

    @soft_fail(list)
    async def list_running_services(self) -> List[str]:
        res = await self.run(["launchctl", "list"], "services", 5.0)
        return parse_launchctl_list(res.stdout) if res.ok else []

    @soft_fail(list)
    async def list_installed_applications(self) -> List[str]:
        timeout = self.timeout("applications", 5.0)
        bundles, profiler = await asyncio.gather(
            run_blocking(lambda: _list_app_bundles(Path("/Applications"), self.home / "Applications"), timeout),
            self.run(["system_profiler", "SPApplicationsDataType", "-json"], "applications", 5.0),
        )
        names = set(bundles)
        if profiler.ok:
            names.update(parse_system_profiler_apps(profiler.stdout))
        return sorted(names)

    @soft_fail(list)
    async def inspect_browser_tabs(self, browser_key: str) -> List[Tab]:
        app = SCRIPTABLE_BROWSERS.get(browser_key)
        if not app:
            return []
        title = "name" if browser_key == "safari" else "title"
        res = await self.run(["osascript", "-e", TAB_SCRIPT.format(app=app, title=title)], "tabs", 2.0)
        return parse_tab_lines(res.stdout) if res.ok else []

    @soft_fail(list)
    async def screen_sharing_agents(self) -> List[str]:
        results = await asyncio.gather(*(self.run(["pgrep", "-x", a], "session", 2.0) for a in SCREEN_SHARING_AGENTS))
        return [agent for agent, res in zip(SCREEN_SHARING_AGENTS, results) if res.ok and res.stdout.strip()]

    @soft_fail(list)
    async def screen_recording_clients(self) -> List[str]:
        db = self.home / TCC_DB
        res = await self.run(["sqlite3", str(db), TCC_QUERY], "session", 2.0)
        return res.lines()

    @soft_fail(SystemInfo)
    async def system_info(self) -> SystemInfo:
        res = await self.run(["sysctl", "-n", "hw.model"], "system", 2.0)
        return SystemInfo(manufacturer="Apple", model=res.stdout.strip()) if res.ok else SystemInfo()

    def extension_roots(self) -> Dict[str, Path]:
        support = self.home / "Library" / "Application Support"
        return {
            "chrome": support / "Google" / "Chrome",
            "edge": support / "Microsoft Edge",
            "brave": support / "BraveSoftware" / "Brave-Browser",
            "chromium": support / "Chromium",
        }

    def firefox_root(self) -> Path:
        return self.home / "Library" / "Application Support" / "Firefox" / "Profiles"
