from __future__ import annotations
import ntpath
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import DEFAULT_CONFIG
from .models import NetworkConnectionSample, ProcessSample, SignatureSet, SystemInfo, Threat
from .noise import HelperFilter, is_background_service
from .rules import (
    CLIPBOARD_TOOLS,
    MESSAGING_APPS,
    REMOTE_CLIPBOARD_FEATURES,
    REMOTE_CONTROL_APPS,
    SCREEN_CAPABLE_APPS,
    SUSPICIOUS_EXACT_NAMES,
    SUSPICIOUS_PORTS,
    SUSPICIOUS_PROCESSES,
    VM_INDICATORS,
    VM_PROCESSES,
    display_name,
)
from .utils import exe_basename, strip_exe


def process_exe(proc: ProcessSample) -> str:
    return exe_basename(proc.command_line) or ntpath.basename(proc.exe or "").lower()


def match_remote_app(proc: ProcessSample) -> Optional[str]:
    name, cmd, exe = proc.lname, proc.lcmd, process_exe(proc)
    for key, patterns in REMOTE_CONTROL_APPS.items():
        for p in patterns:
            if p in name or p in exe or p in cmd:
                return key
    return None


def _match_table(text_fields: Iterable[str], table: Dict[str, List[str]]) -> Optional[str]:
    fields = [f for f in text_fields if f]
    for key, patterns in table.items():
        if any(p in f for p in patterns for f in fields):
            return key
    return None


def _conn_details(c: NetworkConnectionSample) -> Dict[str, Any]:
    details: Dict[str, Any] = {
        "protocol": c.protocol,
        "state": c.state,
        "localPort": c.local_port,
        "peerPort": c.peer_port,
    }
    if c.owning_pid is not None:
        details["pid"] = c.owning_pid
    return details


class Heuristics:
    """Process, network and platform-session detection rules.

    Every ``check_*`` method is a pure function of its telemetry arguments
    and returns a list of Threat candidates. Helper processes are skipped
    here, at generation time.
    """

    def __init__(self, cfg: Dict[str, Any] | None = None, helpers: HelperFilter | None = None):
        cfg = cfg or DEFAULT_CONFIG
        self.thresholds: Dict[str, Any] = {**DEFAULT_CONFIG["thresholds"], **cfg.get("thresholds", {})}
        self.suspicious_ports = frozenset(int(p) for p in cfg.get("suspicious_ports", SUSPICIOUS_PORTS))
        self.helpers = helpers or HelperFilter.from_config(cfg)

    def _candidates(self, processes: Iterable[ProcessSample]) -> Iterable[ProcessSample]:
        for p in processes:
            if not p.name and not p.command_line:
                continue
            if self.helpers.is_helper(p):
                continue
            yield p

    def check_remote_control(self, processes: Iterable[ProcessSample]) -> List[Threat]:
        # app key -> (is_foreground, proc); foreground beats service, then higher CPU
        found: Dict[str, Tuple[bool, ProcessSample]] = {}
        for p in self._candidates(processes):
            key = match_remote_app(p)
            if key is None:
                continue
            foreground = not is_background_service(p)
            prev = found.get(key)
            if prev is None or (foreground, p.cpu_percent) > (prev[0], prev[1].cpu_percent):
                found[key] = (foreground, p)

        threats = []
        for key, (foreground, p) in found.items():
            details = {"pid": p.pid, "name": p.name, "app": key, "cpu": p.cpu_percent, "mem": p.mem_percent}
            if foreground:
                threats.append(Threat(
                    "remote_control_application", "critical",
                    f"Remote control application detected: {display_name(key)}", details,
                ))
            else:
                threats.append(Threat(
                    "remote_control_service", "medium",
                    f"Remote control service detected: {display_name(key)}", details,
                ))
        return threats

    def check_remote_control_services(self, services: Iterable[str], skip: Iterable[str] = ()) -> List[Threat]:
        """Service-list matches, at most one per app key. Keys in ``skip`` were
        already reported from the process table this cycle."""
        threats = []
        seen = set(skip)
        for svc in services:
            key = _match_table([svc.lower()], REMOTE_CONTROL_APPS)
            if key is None or key in seen:
                continue
            seen.add(key)
            threats.append(Threat(
                "remote_control_service", "medium",
                f"Remote control service detected: {display_name(key)}", {"service": svc, "app": key},
            ))
        return threats

    def check_suspicious_processes(self, processes: Iterable[ProcessSample]) -> List[Threat]:
        threats = []
        # idle instances count too, so no activity check here
        for p in self._candidates(processes):
            name, exe = p.lname, process_exe(p)
            match = next((s for s in SUSPICIOUS_PROCESSES if s in name or s in exe), None)
            if match is None:
                match = next((n for n in (strip_exe(name), strip_exe(exe)) if n in SUSPICIOUS_EXACT_NAMES), None)
            if match is None:
                continue
            threats.append(Threat(
                "suspicious_process", "high", f"Suspicious process detected: {p.name}",
                {"pid": p.pid, "name": p.name or "unknown", "command": p.command_line or "unknown", "pattern": match},
            ))
        return threats

    def check_suspicious_connections(
        self, connections: Iterable[NetworkConnectionSample], processes: Iterable[ProcessSample]
    ) -> List[Threat]:
        helper_pids = self.helpers.helper_pids(processes)
        threats = []
        for c in connections:
            if c.owning_pid is not None and c.owning_pid in helper_pids:
                continue
            if c.local_port in self.suspicious_ports:
                port = c.local_port
            elif c.peer_port in self.suspicious_ports:
                port = c.peer_port
            else:
                continue
            threats.append(Threat(
                "suspicious_network_connection", "high",
                f"Suspicious network connection on port {port}", _conn_details(c),
            ))
        return threats

    def check_virtual_machine(self, system: SystemInfo, processes: Iterable[ProcessSample]) -> List[Threat]:
        threats = []
        manufacturer, model = (system.manufacturer or "").lower(), (system.model or "").lower()
        if any(ind in manufacturer or ind in model for ind in VM_INDICATORS):
            threats.append(Threat(
                "virtual_machine_detected", "critical",
                f"VM detected: {system.manufacturer} {system.model}".strip(),
                {"manufacturer": system.manufacturer, "model": system.model},
            ))
        for p in self._candidates(processes):
            if any(v in p.lname for v in VM_PROCESSES):
                threats.append(Threat("vm_process_detected", "high", f"VM process detected: {p.name}", {"pid": p.pid}))
        return threats

    def check_messaging_apps(self, processes: Iterable[ProcessSample]) -> List[Threat]:
        found: Dict[str, ProcessSample] = {}
        for p in self._candidates(processes):
            key = _match_table([p.lname, process_exe(p)], MESSAGING_APPS)
            if key is None:
                continue
            if key not in found or p.cpu_percent > found[key].cpu_percent:
                found[key] = p
        return [
            Threat("messaging_app_detected", "medium", f"Messaging application detected: {display_name(key)}",
                   {"pid": p.pid, "name": p.name, "app": key})
            for key, p in found.items()
        ]

    def check_clipboard_sync(self, processes: Iterable[ProcessSample]) -> List[Threat]:
        matched = []
        for p in self._candidates(processes):
            tools = {strip_exe(ntpath.basename(tok)) for tok in p.argv}
            tools.add(strip_exe(p.lname))
            cmd = p.lcmd
            if tools.intersection(CLIPBOARD_TOOLS) or any(a in cmd and b in cmd for a, b in REMOTE_CLIPBOARD_FEATURES):
                matched.append(p)
        if not matched:
            return []
        return [Threat(
            "clipboard_synchronization", "medium", "Clipboard synchronization processes detected",
            {"processes": [p.name for p in matched], "pids": [p.pid for p in matched]},
        )]

    def check_gpu_memory(self, processes: Iterable[ProcessSample]) -> List[Threat]:
        app_floor = self.thresholds["gpu_app_mem"]
        heavy = [
            p for p in self._candidates(processes)
            if any(a in p.lname for a in SCREEN_CAPABLE_APPS) and p.mem_percent > app_floor
        ]
        total = sum(p.mem_percent for p in heavy)
        if not heavy or total <= self.thresholds["gpu_total_mem"]:
            return []
        return [Threat(
            "high_gpu_memory_usage", "high", f"High GPU memory usage ({total:.1f}%)",
            {"total": round(total, 1), "processes": [p.name for p in heavy]},
        )]

    def check_malicious_signatures(
        self,
        processes: Iterable[ProcessSample],
        connections: Iterable[NetworkConnectionSample],
        signatures: SignatureSet | None,
    ) -> List[Threat]:
        sig = SignatureSet.coerce(signatures)
        if sig.is_empty():
            return []
        threats = []
        if sig.process_names:
            for p in processes:
                if p.lname in sig.process_names:
                    threats.append(Threat(
                        "signature_process", "high", f"Malicious process detected: {p.name}", {"pid": p.pid},
                    ))
        if not (sig.ports or sig.domains):
            return threats
        for c in connections:
            if c.local_port in sig.ports or c.peer_port in sig.ports:
                port = c.local_port if c.local_port in sig.ports else c.peer_port
                threats.append(Threat(
                    "signature_port", "high", f"Malicious port in use ({port})", _conn_details(c),
                ))
            peer = (c.peer_address or "").lower()
            if peer and sig.domains and any(d in peer for d in sig.domains):
                threats.append(Threat(
                    "signature_domain", "high", f"Connection to malicious host: {c.peer_address}", _conn_details(c),
                ))
        return threats

    def check_windows_rdp(self, session_lines: Iterable[str], processes: Iterable[ProcessSample]) -> List[Threat]:
        threats = [
            Threat("windows_rdp_session_active", "critical", "Active Windows RDP session detected", {"line": line})
            for line in session_lines
        ]
        for p in processes:
            if "rdpclip" in p.lname:
                threats.append(Threat(
                    "windows_rdp_clipboard", "medium", "RDP clipboard synchronization running", {"pid": p.pid},
                ))
        return threats

    def check_mac_screen_sharing(self, agents: Iterable[str]) -> List[Threat]:
        threats = []
        running = {a.lower() for a in agents}
        if "screensharingd" in running:
            threats.append(Threat(
                "mac_screensharing_session_active", "critical", "macOS Screen Sharing session active", {},
            ))
        if "ardagent" in running:
            threats.append(Threat("mac_ard_agent_running", "high", "Apple Remote Desktop agent running", {}))
        return threats

    def check_screen_recording_permissions(self, clients: List[str]) -> List[Threat]:
        if not clients:
            return []
        return [Threat(
            "screen_recording_permissions", "critical",
            f"Apps with screen recording permissions ({len(clients)})", {"clients": list(clients)},
        )]

    def check_x11_display_access(self, clients: Iterable[Tuple[str, int]]) -> List[Threat]:
        return [
            Threat("x11_display_access_detected", "low", "Browser accessing X11 display", {"pid": pid, "name": name})
            for name, pid in clients
        ]

    def check_audio_capture(self, state: Dict[str, bool]) -> List[Threat]:
        threats = []
        if state.get("monitor"):
            threats.append(Threat("audio_monitor_detected", "medium", "Audio monitoring active", {}))
        if state.get("desktop_capture"):
            threats.append(Threat(
                "desktop_audio_capture_detected", "medium", "Active recording stream from desktop audio", {},
            ))
        return threats
