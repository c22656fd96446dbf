from __future__ import annotations
from typing import Any, Dict
from pathlib import Path
import copy
import logging

import yaml

from .errors import ConfigError
from .models import SignatureSet
from .rules import SUSPICIOUS_PORTS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "sticky_grace_seconds": 60.0,
    "detector_timeout": 6.0,
    "suspicious_ports": sorted(SUSPICIOUS_PORTS),
    "timeouts": {
        "processes": 4.0,
        "cpu_sample": 0.5,
        "connections": 3.0,
        "services": 5.0,
        "applications": 5.0,
        "tabs": 2.0,
        "screencast": 3.0,
        "session": 2.0,
        "system": 2.0,
        "audio": 1.5,
    },
    "thresholds": {
        # a process counts as active above either of these
        "active_cpu": 0.2,
        "active_mem": 0.5,
        "browser_cpu": 15.0,
        "browser_process_cpu": 20.0,
        "browser_process_count": 12,
        "browser_total_mem": 30.0,
        "webrtc_browser_min_udp": 3,
        "webrtc_browser_min_cpu": 5.0,
        "webrtc_app_min_udp": 1,
        "webrtc_app_min_cpu": 1.0,
        "high_port_floor": 30000,
        "udp_surge_port_floor": 50000,
        "udp_surge_count": 20,
        "gpu_app_mem": 5.0,
        "gpu_total_mem": 15.0,
    },
    "helpers": {
        "names": [],
        "patterns": [],
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def _read_yaml(path: str) -> Any:
    try:
        return yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not load {path}: {e}") from e


def load_config(path: str | None = None) -> Dict[str, Any]:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if not path:
        return cfg
    data = _read_yaml(path) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")
    _deep_merge(cfg, data)
    logger.info("Loaded config from %s", path)
    return cfg


def load_signatures(path: str | None = None) -> SignatureSet:
    """Read a signature file. JSON is valid YAML, so both formats load here."""
    if not path:
        return SignatureSet()
    data = _read_yaml(path) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Signatures {path} must be a mapping")
    sigs = SignatureSet.build(
        process_names=data.get("process_names", data.get("processNames")),
        ports=data.get("ports"),
        domains=data.get("domains"),
    )
    logger.info(
        "Loaded %d process, %d port and %d domain signatures from %s",
        len(sigs.process_names), len(sigs.ports), len(sigs.domains), path,
    )
    return sigs
