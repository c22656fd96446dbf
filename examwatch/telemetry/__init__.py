"""
Platform telemetry adapters.

``get_adapter()`` picks the variant for the running OS family; every variant
exposes the same fail-soft coroutine surface defined in :mod:`.base`.
"""
from __future__ import annotations
import sys
from typing import Dict, Optional

from .base import TelemetryAdapter
from .linux import LinuxTelemetry
from .macos import MacTelemetry
from .windows import WindowsTelemetry

__all__ = ["TelemetryAdapter", "LinuxTelemetry", "MacTelemetry", "WindowsTelemetry", "get_adapter"]


def get_adapter(timeouts: Optional[Dict[str, float]] = None, platform: Optional[str] = None) -> TelemetryAdapter:
    platform = platform or sys.platform
    if platform.startswith("linux"):
        return LinuxTelemetry(timeouts)
    if platform == "win32":
        return WindowsTelemetry(timeouts)
    if platform == "darwin":
        return MacTelemetry(timeouts)
    return TelemetryAdapter(timeouts)
