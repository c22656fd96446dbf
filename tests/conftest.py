"""Shared fixtures: an in-memory telemetry adapter and sample factories."""
from typing import Dict, List, Optional

import pytest

from examwatch.models import NetworkConnectionSample, ProcessSample, ScreencastSample, SystemInfo, Tab
from examwatch.telemetry.base import TelemetryAdapter


def proc(pid, name, command_line=None, cpu=1.0, mem=1.0, state="running", exe=""):
    return ProcessSample(
        pid=pid,
        name=name,
        command_line=name if command_line is None else command_line,
        cpu_percent=cpu,
        mem_percent=mem,
        state=state,
        exe=exe,
    )


def conn(protocol="tcp", local_port=40000, peer_port=443, peer_address="", pid=None, state="ESTABLISHED"):
    return NetworkConnectionSample(
        protocol=protocol,
        local_port=local_port,
        peer_port=peer_port,
        peer_address=peer_address,
        state=state,
        owning_pid=pid,
    )


class FakeTelemetry(TelemetryAdapter):
    """Adapter that serves canned telemetry instead of querying the OS."""

    platform = "fake"

    def __init__(
        self,
        processes: Optional[List[ProcessSample]] = None,
        connections: Optional[List[NetworkConnectionSample]] = None,
        services: Optional[List[str]] = None,
        applications: Optional[List[str]] = None,
        tabs: Optional[Dict[str, List[Tab]]] = None,
        screencasts: Optional[List[ScreencastSample]] = None,
        system: Optional[SystemInfo] = None,
        extensions: Optional[List[dict]] = None,
        x11_clients: Optional[List[tuple]] = None,
    ):
        super().__init__()
        self.processes = processes or []
        self.connections = connections or []
        self.services = services or []
        self.applications = applications or []
        self.tabs = tabs or {}
        self.screencasts = screencasts or []
        self.system = system or SystemInfo()
        self.extensions = extensions or []
        self.x11_clients = x11_clients or []
        self.tab_requests: List[str] = []

    async def list_processes(self):
        return list(self.processes)

    async def list_network_connections(self):
        return list(self.connections)

    async def list_running_services(self):
        return list(self.services)

    async def list_installed_applications(self):
        return list(self.applications)

    async def inspect_browser_tabs(self, browser_key):
        self.tab_requests.append(browser_key)
        return list(self.tabs.get(browser_key, []))

    async def screencast_sessions(self):
        return list(self.screencasts)

    async def system_info(self):
        return self.system

    async def list_browser_extensions(self):
        return list(self.extensions)

    async def x11_display_clients(self):
        return list(self.x11_clients)


@pytest.fixture
def fake_adapter():
    return FakeTelemetry()


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
