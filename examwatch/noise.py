"""
Noise filter: system-helper suppression and the end-of-cycle liveness pass.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set
import fnmatch
import re

from .models import ProcessSample, Threat
from .rules import BACKGROUND_SERVICES, DAEMON_FLAGS
from .utils import exe_basename

# OS audio/driver subsystems, AV and casting helpers
HELPER_SUBSTRINGS = [
    "airplayxpchelper",
    "airplay",
    ".driver",
    "kext",
    "coreaudio",
    "/library/audio/plug-ins/hal",
    "audiodg",
    "msmpeng",
    "nissrv",
    "mpdefendercoreservice",
    "castsrv",
    "wireplumber",
    "pipewire-pulse",
    "pulseaudio",
]

INSTALLER_TOOLS = {"apt", "apt-get", "dpkg", "rpm", "dnf", "yum", "pacman", "brew", "msiexec", "msiexec.exe",
                   "winget", "winget.exe", "choco", "choco.exe", "installer", "snap", "flatpak"}

INSTALLER_PACKAGE = re.compile(r"\.(deb|rpm|pkg|msi|dmg)(\s|$)")

KERNEL_THREAD_PREFIXES = (
    "kworker", "ksoftirqd", "rcu_", "rcu-", "cpuhp", "migration", "idle_inject", "oom_reaper", "kauditd",
    "kdevtmpfs", "writeback", "netns", "slub_flushwq", "mm_percpu_wq", "pool_workqueue_release",
)


def is_installer_context(command_line: str) -> bool:
    cmd = (command_line or "").lower()
    if INSTALLER_PACKAGE.search(cmd):
        return True
    return exe_basename(cmd) in INSTALLER_TOOLS


def is_kernel_thread(name: str) -> bool:
    n = (name or "").lower()
    if not n:
        return False
    if n.startswith("["):
        return True
    return n.startswith(KERNEL_THREAD_PREFIXES) or n == "rcu"


def is_background_service(proc: ProcessSample) -> bool:
    name, cmd = proc.lname, proc.lcmd
    for svc in BACKGROUND_SERVICES:
        if svc in name or svc in cmd:
            return True
    if name.endswith("d") and ("teamviewer" in name or "anydesk" in name):
        return True
    if DAEMON_FLAGS.intersection(proc.argv):
        return True
    # chromium-family helper processes (gpu, utility) but not renderers
    if "chrome" in cmd and "--type=" in cmd and "--type=renderer" not in cmd:
        return True
    return False


def is_process_active(proc: ProcessSample, cpu_floor: float = 0.2, mem_floor: float = 0.5) -> bool:
    state = (proc.state or "").lower()
    return (
        proc.cpu_percent >= cpu_floor
        or proc.mem_percent >= mem_floor
        or state in ("running", "r", "")
    )


@dataclass
class HelperFilter:
    names: Set[str] = field(default_factory=set)
    patterns: List[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: Dict) -> "HelperFilter":
        helpers = cfg.get("helpers", {})
        return cls(
            names={str(n).lower() for n in helpers.get("names", [])},
            patterns=[str(p).lower() for p in helpers.get("patterns", [])],
        )

    def is_helper(self, proc: ProcessSample) -> bool:
        name, cmd = proc.lname, proc.lcmd
        if not name and not cmd:
            return False
        if name in self.names:
            return True
        for s in HELPER_SUBSTRINGS:
            if s in name or s in cmd:
                return True
        if is_installer_context(cmd):
            return True
        if is_kernel_thread(name):
            return True
        for pat in self.patterns:
            if fnmatch.fnmatch(name, pat) or fnmatch.fnmatch(proc.exe.lower(), pat):
                return True
        return False

    def helper_pids(self, processes: Iterable[ProcessSample]) -> Set[int]:
        return {p.pid for p in processes if self.is_helper(p)}


def filter_live(threats: Iterable[Threat], live_pids: Set[int]) -> List[Threat]:
    """Drop threats that point at a pid missing from the cycle's snapshot."""
    kept = []
    for t in threats:
        pid = t.pid
        if pid is not None and pid not in live_pids:
            continue
        kept.append(t)
    return kept
