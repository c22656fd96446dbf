"""
examwatch - endpoint integrity checks for monitored exam sessions.

Flags remote control, screen sharing, virtualization, messaging and
clipboard bridges, plus operator-supplied signatures.

CLI entry: examwatch (see pyproject.toml)
"""

from .models import Threat, ProcessSample, NetworkConnectionSample, SignatureSet
from .engine import ThreatEngine, Detector
from .inventory import list_threat_applications
from .telemetry import get_adapter

__all__ = [
    "Threat",
    "ProcessSample",
    "NetworkConnectionSample",
    "SignatureSet",
    "ThreatEngine",
    "Detector",
    "list_threat_applications",
    "get_adapter",
]

__version__ = "1.0.0"
