from __future__ import annotations
import json
import re
from pathlib import Path
from typing import Dict, List

from ..models import SystemInfo, Tab
from .base import TelemetryAdapter, env_path
from ..utils import soft_fail

SERVICE_NAME_RE = re.compile(r"SERVICE_NAME:\s*(.+)$", re.I)

UNINSTALL_SCRIPT = (
    "$paths = @('HKLM:\\Software\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\*',"
    "'HKLM:\\Software\\WOW6432Node\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\*',"
    "'HKCU:\\Software\\Microsoft\\Windows\\CurrentVersion\\Uninstall\\*');"
    "$paths | ForEach-Object { Get-ItemProperty $_ -ErrorAction SilentlyContinue }"
    " | Where-Object { $_.DisplayName } | Select-Object -ExpandProperty DisplayName"
)

SYSTEM_SCRIPT = "Get-CimInstance Win32_ComputerSystem | Select-Object Manufacturer,Model | ConvertTo-Json"

# process names per browser family for MainWindowTitle enumeration
WINDOW_PROCESSES: Dict[str, List[str]] = {
    "chrome": ["chrome"],
    "chromium": ["chromium"],
    "firefox": ["firefox"],
    "edge": ["msedge"],
    "brave": ["brave"],
    "opera": ["opera"],
}


def powershell(script: str) -> List[str]:
    return ["powershell", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command", script]


def parse_sc_query(text: str) -> List[str]:
    services = []
    for line in text.splitlines():
        m = SERVICE_NAME_RE.search(line.strip())
        if m:
            services.append(m.group(1).strip())
    return services


def parse_rdp_sessions(text: str) -> List[str]:
    """Return the ``query user`` / ``qwinsta`` lines of active RDP sessions."""
    return [
        line.strip()
        for line in text.splitlines()
        if re.search(r"rdp-tcp", line, re.I) and re.search(r"\bactive\b", line, re.I)
    ]


def parse_window_titles(text: str) -> List[Tab]:
    titles = [line.strip() for line in text.splitlines() if line.strip()]
    return [Tab(url="", title=t, window_index=i, tab_index=0) for i, t in enumerate(titles)]


class WindowsTelemetry(TelemetryAdapter):
    platform = "win32"

    @soft_fail(list)
    async def list_running_services(self) -> List[str]:
        res = await self.run(["sc", "query", "type=", "service"], "services", 5.0)
        return parse_sc_query(res.stdout) if res.ok else []

    @soft_fail(list)
    async def list_installed_applications(self) -> List[str]:
        res = await self.run(powershell(UNINSTALL_SCRIPT), "applications", 5.0)
        return sorted(set(res.lines()))

    @soft_fail(list)
    async def inspect_browser_tabs(self, browser_key: str) -> List[Tab]:
        names = WINDOW_PROCESSES.get(browser_key)
        if not names:
            return []
        script = (
            f"Get-Process -Name {','.join(names)} -ErrorAction SilentlyContinue"
            " | Where-Object { $_.MainWindowTitle } | Select-Object -ExpandProperty MainWindowTitle"
        )
        res = await self.run(powershell(script), "tabs", 2.0)
        return parse_window_titles(res.stdout) if res.ok else []

    @soft_fail(list)
    async def remote_desktop_sessions(self) -> List[str]:
        res = await self.run(["query", "user"], "session", 2.0)
        if not res.stdout.strip():
            res = await self.run(["qwinsta"], "session", 2.0)
        # query user exits 1 when it lists disconnected sessions; its output is still usable
        return parse_rdp_sessions(res.stdout)

    @soft_fail(SystemInfo)
    async def system_info(self) -> SystemInfo:
        res = await self.run(powershell(SYSTEM_SCRIPT), "system", 2.0)
        if not res.ok:
            return SystemInfo()
        data = json.loads(res.stdout or "{}")
        return SystemInfo(manufacturer=str(data.get("Manufacturer") or ""), model=str(data.get("Model") or ""))

    def extension_roots(self) -> Dict[str, Path]:
        local = env_path("LOCALAPPDATA", self.home / "AppData" / "Local")
        return {
            "chrome": local / "Google" / "Chrome" / "User Data",
            "edge": local / "Microsoft" / "Edge" / "User Data",
            "brave": local / "BraveSoftware" / "Brave-Browser" / "User Data",
            "chromium": local / "Chromium" / "User Data",
        }

    def firefox_root(self) -> Path:
        return env_path("APPDATA", self.home / "AppData" / "Roaming") / "Mozilla" / "Firefox" / "Profiles"
