"""
Threat engine: one detection cycle fans out to every detector concurrently.

Process and connection snapshots are taken once per cycle and shared with all
detectors. Each detector is raced against its own timeout; a detector that
fails or times out contributes nothing. After the join the candidates are
deduplicated on (type, message) and filtered against the cycle's live pids.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from .config import DEFAULT_CONFIG
from .heuristics import Heuristics
from .models import NetworkBaseline, NetworkConnectionSample, ProcessSample, SignatureSet, Threat
from .noise import HelperFilter, filter_live
from .screenshare import ScreenShareDetector, analyze_traffic
from .sticky import StickyState
from .telemetry import TelemetryAdapter, get_adapter

logger = logging.getLogger(__name__)


@dataclass
class ScanContext:
    processes: List[ProcessSample] = field(default_factory=list)
    connections: List[NetworkConnectionSample] = field(default_factory=list)
    signatures: SignatureSet = field(default_factory=SignatureSet)
    now: float = 0.0


DetectorFunc = Callable[[ScanContext], Awaitable[List[Threat]]]


@dataclass
class Detector:
    name: str
    func: DetectorFunc
    timeout: Optional[float] = None


def merge_results(results: Iterable[Sequence[Threat]]) -> List[Threat]:
    merged: List[Threat] = []
    for chunk in results:
        merged.extend(chunk)
    return merged


def dedupe_threats(threats: Iterable[Threat]) -> List[Threat]:
    """Keep the first Threat per (type, message), in arrival order."""
    seen = set()
    out = []
    for t in threats:
        if t.key in seen:
            continue
        seen.add(t.key)
        out.append(t)
    return out


class ThreatEngine:
    """Owns the per-instance sticky map and network baseline.

    ``run_all_checks`` is the only entry point; cycles on one engine are
    serialized so that the mutable state is never touched by two cycles.
    """

    def __init__(
        self,
        cfg: Dict[str, Any] | None = None,
        adapter: TelemetryAdapter | None = None,
        detectors: List[Detector] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg or DEFAULT_CONFIG
        self.clock = clock
        self.adapter = adapter or get_adapter(self.cfg.get("timeouts"))
        self.detector_timeout = float(self.cfg.get("detector_timeout", 6.0))
        self.helpers = HelperFilter.from_config(self.cfg)
        self.heuristics = Heuristics(self.cfg, self.helpers)
        self.sticky = StickyState(grace_seconds=float(self.cfg.get("sticky_grace_seconds", 60.0)), clock=clock)
        self.screenshare = ScreenShareDetector(self.cfg, self.helpers, self.sticky)
        self.baseline: Optional[NetworkBaseline] = None
        self.detectors = detectors if detectors is not None else self.default_detectors()
        self._lock = asyncio.Lock()

    def default_detectors(self) -> List[Detector]:
        return [
            Detector("remote_control", self._remote_control),
            Detector("suspicious_processes", self._suspicious_processes),
            Detector("suspicious_connections", self._suspicious_connections),
            Detector("screen_sharing", self._screen_sharing),
            Detector("network_traffic", self._network_traffic),
            Detector("gpu_memory", self._gpu_memory),
            Detector("screen_recording_permissions", self._screen_recording_permissions),
            Detector("clipboard", self._clipboard),
            Detector("virtualization", self._virtualization),
            Detector("messaging", self._messaging),
            Detector("signatures", self._signatures),
            Detector("windows_rdp", self._windows_rdp),
            Detector("mac_screen_sharing", self._mac_screen_sharing),
            Detector("audio_capture", self._audio_capture),
            Detector("x11_display_access", self._x11_display_access),
        ]

    # -- detectors ---------------------------------------------------------

    async def _remote_control(self, ctx: ScanContext) -> List[Threat]:
        threats = self.heuristics.check_remote_control(ctx.processes)
        services = await self.adapter.list_running_services()
        reported = [t.details["app"] for t in threats]
        return threats + self.heuristics.check_remote_control_services(services, skip=reported)

    async def _suspicious_processes(self, ctx: ScanContext) -> List[Threat]:
        return self.heuristics.check_suspicious_processes(ctx.processes)

    async def _suspicious_connections(self, ctx: ScanContext) -> List[Threat]:
        return self.heuristics.check_suspicious_connections(ctx.connections, ctx.processes)

    async def _screen_sharing(self, ctx: ScanContext) -> List[Threat]:
        browsers = self.screenshare.running_browsers(ctx.processes)
        screencasts, *tab_lists = await asyncio.gather(
            self.adapter.screencast_sessions(),
            *(self.adapter.inspect_browser_tabs(b) for b in browsers),
        )
        tabs = dict(zip(browsers, tab_lists))
        return self.screenshare.detect(ctx.processes, ctx.connections, screencasts, tabs, now=ctx.now)

    async def _network_traffic(self, ctx: ScanContext) -> List[Threat]:
        threats, self.baseline = analyze_traffic(
            ctx.connections, self.baseline, ctx.now, self.cfg.get("thresholds"),
        )
        return threats

    async def _gpu_memory(self, ctx: ScanContext) -> List[Threat]:
        return self.heuristics.check_gpu_memory(ctx.processes)

    async def _screen_recording_permissions(self, ctx: ScanContext) -> List[Threat]:
        clients = await self.adapter.screen_recording_clients()
        return self.heuristics.check_screen_recording_permissions(clients)

    async def _clipboard(self, ctx: ScanContext) -> List[Threat]:
        return self.heuristics.check_clipboard_sync(ctx.processes)

    async def _virtualization(self, ctx: ScanContext) -> List[Threat]:
        system = await self.adapter.system_info()
        return self.heuristics.check_virtual_machine(system, ctx.processes)

    async def _messaging(self, ctx: ScanContext) -> List[Threat]:
        return self.heuristics.check_messaging_apps(ctx.processes)

    async def _signatures(self, ctx: ScanContext) -> List[Threat]:
        return self.heuristics.check_malicious_signatures(ctx.processes, ctx.connections, ctx.signatures)

    async def _windows_rdp(self, ctx: ScanContext) -> List[Threat]:
        sessions = await self.adapter.remote_desktop_sessions()
        return self.heuristics.check_windows_rdp(sessions, ctx.processes)

    async def _mac_screen_sharing(self, ctx: ScanContext) -> List[Threat]:
        agents = await self.adapter.screen_sharing_agents()
        return self.heuristics.check_mac_screen_sharing(agents)

    async def _audio_capture(self, ctx: ScanContext) -> List[Threat]:
        state = await self.adapter.audio_capture_state()
        return self.heuristics.check_audio_capture(state)

    async def _x11_display_access(self, ctx: ScanContext) -> List[Threat]:
        clients = await self.adapter.x11_display_clients()
        return self.heuristics.check_x11_display_access(clients)

    # -- orchestration -----------------------------------------------------

    async def _snapshot(self, coro: Awaitable[list], name: str, timeout: float) -> list:
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError:
            logger.warning("%s snapshot timed out after %.1fs", name, timeout)
        except Exception as e:
            logger.warning("%s snapshot failed: %r", name, e)
        return []

    async def _run_detector(self, detector: Detector, ctx: ScanContext) -> List[Threat]:
        timeout = detector.timeout if detector.timeout is not None else self.detector_timeout
        try:
            return list(await asyncio.wait_for(detector.func(ctx), timeout))
        except asyncio.TimeoutError:
            logger.warning("detector %s timed out after %.1fs", detector.name, timeout)
        except Exception as e:
            logger.warning("detector %s failed: %r", detector.name, e)
        return []

    async def run_all_checks(self, signatures: SignatureSet | Dict[str, Any] | None = None) -> List[Threat]:
        async with self._lock:
            started = time.monotonic()
            timeouts = self.cfg.get("timeouts", {})
            # the first process snapshot also waits out the cpu sampling interval
            process_timeout = float(timeouts.get("processes", 4.0)) + float(timeouts.get("cpu_sample", 0.5))
            processes, connections = await asyncio.gather(
                self._snapshot(self.adapter.list_processes(), "process", process_timeout),
                self._snapshot(
                    self.adapter.list_network_connections(), "connection", float(timeouts.get("connections", 3.0)),
                ),
            )
            ctx = ScanContext(
                processes=processes,
                connections=connections,
                signatures=SignatureSet.coerce(signatures),
                now=self.clock(),
            )

            results = await asyncio.gather(*(self._run_detector(d, ctx) for d in self.detectors))
            raw = merge_results(results)
            threats = dedupe_threats(filter_live(raw, {p.pid for p in processes}))

            logger.debug(
                "cycle: %d detectors, %d processes, %d connections, %d raw, %d final threats in %.2fs",
                len(self.detectors), len(processes), len(connections), len(raw), len(threats),
                time.monotonic() - started,
            )
            return threats

    def scan(self, signatures: SignatureSet | Dict[str, Any] | None = None) -> List[Threat]:
        """Run one cycle from synchronous code."""
        return asyncio.run(self.run_all_checks(signatures))
