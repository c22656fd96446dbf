"""
Screen-sharing and screencast detection.

Combines meeting-app presence, forced-capture browser flags, browser load,
capture tools, the platform screencast graph and WebRTC-style UDP traffic.
The WebRTC signal is bursty, so it is smoothed per pid through StickyState.
"""
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import DEFAULT_CONFIG
from .heuristics import process_exe
from .models import NetworkBaseline, NetworkConnectionSample, ProcessSample, ScreencastSample, Tab, Threat
from .noise import HelperFilter, is_process_active
from .rules import (
    CAPTURE_BACKEND_HINTS,
    CAPTURE_TOOLS,
    FORCED_CAPTURE_FLAGS,
    MEETING_APPS,
    RTC_RELAY_PORTS,
    SCREEN_SHARING_DOMAINS,
    SCREEN_SHARING_KEYWORDS,
    browser_key,
)
from .sticky import StickyState
from .utils import strip_exe

MAX_PORT = 65535


def match_sharing_tabs(tabs: Iterable[Tab]) -> List[Tab]:
    matched = []
    for tab in tabs:
        url, title = (tab.url or "").lower(), (tab.title or "").lower()
        if any(d in url or d in title for d in SCREEN_SHARING_DOMAINS) or any(k in title for k in SCREEN_SHARING_KEYWORDS):
            matched.append(tab)
    return matched


def _tab_dict(tab: Tab) -> Dict[str, Any]:
    return {"url": tab.url, "title": tab.title, "window": tab.window_index, "tab": tab.tab_index}


def _is_capture_tool(proc: ProcessSample) -> bool:
    candidates = {proc.lname, process_exe(proc)}
    return any(strip_exe(c) in CAPTURE_TOOLS for c in candidates if c)


class ScreenShareDetector:
    def __init__(
        self,
        cfg: Dict[str, Any] | None = None,
        helpers: HelperFilter | None = None,
        sticky: StickyState | None = None,
    ):
        cfg = cfg or DEFAULT_CONFIG
        self.t: Dict[str, Any] = {**DEFAULT_CONFIG["thresholds"], **cfg.get("thresholds", {})}
        self.helpers = helpers or HelperFilter.from_config(cfg)
        self.sticky = sticky or StickyState(grace_seconds=float(cfg.get("sticky_grace_seconds", 60.0)))

    def split_processes(self, processes: Iterable[ProcessSample]) -> Tuple[List[ProcessSample], List[ProcessSample]]:
        """Active, non-helper browser and meeting-app processes."""
        browsers, meetings = [], []
        for p in processes:
            if not p.name and not p.command_line:
                continue
            if self.helpers.is_helper(p):
                continue
            if not is_process_active(p, self.t["active_cpu"], self.t["active_mem"]):
                continue
            if browser_key(p.lname):
                browsers.append(p)
            elif any(a in p.lname for a in MEETING_APPS):
                meetings.append(p)
        return browsers, meetings

    def running_browsers(self, processes: Iterable[ProcessSample]) -> List[str]:
        browsers, _ = self.split_processes(processes)
        return sorted({browser_key(p.lname) for p in browsers})

    def detect(
        self,
        processes: Sequence[ProcessSample],
        connections: Sequence[NetworkConnectionSample],
        screencasts: Sequence[ScreencastSample] = (),
        tabs: Mapping[str, List[Tab]] | None = None,
        now: Optional[float] = None,
    ) -> List[Threat]:
        browsers, meetings = self.split_processes(processes)
        threats: List[Threat] = []

        for p in meetings:
            threats.append(Threat(
                "video_conferencing_detected", "high", f"Video conferencing app detected: {p.name}", {"pid": p.pid},
            ))
        for p in browsers:
            if any(flag in p.lcmd for flag in FORCED_CAPTURE_FLAGS):
                threats.append(Threat(
                    "browser_screen_sharing_detected", "critical",
                    f"Browser screen sharing indicators in {p.name}", {"pid": p.pid},
                ))
            if p.cpu_percent > self.t["browser_cpu"]:
                threats.append(Threat(
                    "browser_high_cpu_usage", "medium",
                    f"Browser high CPU: {p.name} ({p.cpu_percent:.1f}%)", {"pid": p.pid},
                ))
        for p in processes:
            if _is_capture_tool(p) and any(h in p.lcmd for h in CAPTURE_BACKEND_HINTS):
                threats.append(Threat(
                    "screen_capture_tool_detected", "critical", f"Screen capture tool active: {p.name}", {"pid": p.pid},
                ))

        threats.extend(self.browser_load(browsers))
        threats.extend(self.webrtc(browsers, meetings, connections, tabs or {}, now))

        screencast_pids = set()
        for s in screencasts:
            details: Dict[str, Any] = {"appName": s.app_name, "node": s.node}
            if s.pid:
                details["pid"] = s.pid
                screencast_pids.add(s.pid)
            threats.append(Threat(
                "screen_sharing_process_pipewire", "critical", f"{s.app_name} screencast active", details,
            ))

        # with a live capture graph, browser WebRTC hints only count for pids that are casting
        if screencast_pids:
            browser_pids = {p.pid for p in browsers}
            threats = [
                t for t in threats
                if not (
                    t.type == "screen_sharing_process_webrtc"
                    and t.details.get("pid") in browser_pids
                    and t.details.get("pid") not in screencast_pids
                )
            ]
        return threats

    def browser_load(self, browsers: Sequence[ProcessSample]) -> List[Threat]:
        threats = []
        if len(browsers) > self.t["browser_process_count"]:
            threats.append(Threat(
                "browser_multiple_processes", "low", f"Multiple browser processes detected ({len(browsers)})", {},
            ))
        total_mem = sum(p.mem_percent for p in browsers)
        if total_mem > self.t["browser_total_mem"]:
            threats.append(Threat(
                "browser_high_memory_usage", "medium", f"Browser using high memory ({total_mem:.1f}%)", {},
            ))
        for p in browsers:
            if p.cpu_percent > self.t["browser_process_cpu"]:
                threats.append(Threat(
                    "browser_process_high_cpu", "medium", f"{p.name} high CPU ({p.cpu_percent:.1f}%)", {"pid": p.pid},
                ))
        return threats

    def udp_media_counts(self, connections: Iterable[NetworkConnectionSample]) -> Dict[int, int]:
        floor = self.t["high_port_floor"]
        counts: Dict[int, int] = {}
        for c in connections:
            if c.protocol != "udp" or c.owning_pid is None:
                continue
            high = floor < c.local_port < MAX_PORT or floor < c.peer_port < MAX_PORT
            relay = c.local_port in RTC_RELAY_PORTS or c.peer_port in RTC_RELAY_PORTS
            if high or relay:
                counts[c.owning_pid] = counts.get(c.owning_pid, 0) + 1
        return counts

    def webrtc(
        self,
        browsers: Sequence[ProcessSample],
        meetings: Sequence[ProcessSample],
        connections: Sequence[NetworkConnectionSample],
        tabs: Mapping[str, List[Tab]],
        now: Optional[float] = None,
    ) -> List[Threat]:
        now = self.sticky.clock() if now is None else now
        counts = self.udp_media_counts(connections)
        sharing_tabs = {key: match_sharing_tabs(ts) for key, ts in tabs.items()}

        candidates = [(p, "browser") for p in browsers] + [(p, "app") for p in meetings]
        threats = []
        for p, kind in candidates:
            count = counts.get(p.pid, 0)
            # native meeting apps multiplex fewer sockets than browsers
            min_udp = self.t["webrtc_app_min_udp"] if kind == "app" else self.t["webrtc_browser_min_udp"]
            min_cpu = self.t["webrtc_app_min_cpu"] if kind == "app" else self.t["webrtc_browser_min_cpu"]
            evidence = count >= min_udp and p.cpu_percent >= min_cpu
            if not self.sticky.observe(("webrtc", p.pid), evidence, now):
                continue

            details: Dict[str, Any] = {"pid": p.pid, "connections": count, "kind": kind, "sticky": not evidence}
            severity = "medium"
            matched = sharing_tabs.get(browser_key(p.lname) or "", []) if kind == "browser" else []
            if matched:
                details["tabs"] = [_tab_dict(t) for t in matched]
                if len(matched) > 1:
                    severity = "high"
            threats.append(Threat(
                "screen_sharing_process_webrtc", severity, f"{p.name} possible screen sharing via WebRTC", details,
            ))
        self.sticky.prune(now)
        return threats


def analyze_traffic(
    connections: Sequence[NetworkConnectionSample],
    baseline: Optional[NetworkBaseline],
    now: float,
    thresholds: Dict[str, Any] | None = None,
) -> Tuple[List[Threat], NetworkBaseline]:
    """Compare UDP volume against the previous cycle and return the new baseline.

    The first cycle only captures a baseline. The baseline is replaced
    wholesale every call.
    """
    t = {**DEFAULT_CONFIG["thresholds"], **(thresholds or {})}
    high_floor, surge_floor = t["high_port_floor"], t["udp_surge_port_floor"]
    current = NetworkBaseline(
        total_connections=len(connections),
        high_port_connection_count=sum(1 for c in connections if c.local_port > high_floor),
        captured_at=now,
    )
    if baseline is None:
        return [], current

    udp = [
        c for c in connections
        if c.protocol == "udp"
        and (surge_floor < c.local_port < MAX_PORT or surge_floor < c.peer_port < MAX_PORT)
    ]
    threats = []
    if len(udp) > t["udp_surge_count"]:
        threats.append(Threat(
            "high_udp_traffic", "medium", f"High UDP traffic ({len(udp)})",
            {
                "udpConnections": len(udp),
                "totalConnections": current.total_connections,
                "previousTotal": baseline.total_connections,
                "highPortDelta": current.high_port_connection_count - baseline.high_port_connection_count,
            },
        ))
    return threats, current
