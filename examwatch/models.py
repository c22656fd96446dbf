from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
import datetime as dt

SEVERITIES = ("low", "medium", "high", "critical")


@dataclass
class Threat:
    type: str
    severity: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"unknown severity {self.severity!r}")

    @property
    def key(self) -> tuple:
        return (self.type, self.message)

    @property
    def pid(self) -> Optional[int]:
        return self.details.get("pid")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass
class ProcessSample:
    pid: int
    name: str = ""
    command_line: str = ""
    cpu_percent: float = 0.0
    mem_percent: float = 0.0
    state: str = ""
    exe: str = ""
    user: str = ""

    @property
    def lname(self) -> str:
        return (self.name or "").lower()

    @property
    def lcmd(self) -> str:
        return (self.command_line or "").lower()

    @property
    def argv(self) -> List[str]:
        return self.lcmd.split()


@dataclass
class NetworkConnectionSample:
    protocol: str
    local_port: int = 0
    peer_port: int = 0
    peer_address: str = ""
    state: str = ""
    owning_pid: Optional[int] = None


@dataclass(frozen=True)
class SignatureSet:
    process_names: FrozenSet[str] = frozenset()
    ports: FrozenSet[int] = frozenset()
    domains: FrozenSet[str] = frozenset()

    @classmethod
    def build(
        cls,
        process_names: Iterable[str] | None = None,
        ports: Iterable[Any] | None = None,
        domains: Iterable[str] | None = None,
    ) -> "SignatureSet":
        valid_ports = set()
        for p in ports or []:
            try:
                valid_ports.add(int(p))
            except (TypeError, ValueError):
                continue
        return cls(
            process_names=frozenset(str(n).strip().lower() for n in process_names or [] if str(n).strip()),
            ports=frozenset(valid_ports),
            domains=frozenset(str(d).strip().lower() for d in domains or [] if str(d).strip()),
        )

    @classmethod
    def coerce(cls, value: Any) -> "SignatureSet":
        """Normalize ``None``, a mapping or a hand-built set into a clean SignatureSet."""
        if value is None:
            return cls()
        if isinstance(value, Mapping):
            return cls.build(
                process_names=value.get("process_names", value.get("processNames")),
                ports=value.get("ports"),
                domains=value.get("domains"),
            )
        return cls.build(value.process_names, value.ports, value.domains)

    def is_empty(self) -> bool:
        return not (self.process_names or self.ports or self.domains)


@dataclass
class StickyRecord:
    subject_key: Any
    last_seen_at: float


@dataclass
class NetworkBaseline:
    total_connections: int
    high_port_connection_count: int
    captured_at: float


@dataclass
class Tab:
    url: str = ""
    title: str = ""
    window_index: int = 0
    tab_index: int = 0


@dataclass
class ScreencastSample:
    pid: int = 0
    app_name: str = ""
    node: str = ""


@dataclass
class SystemInfo:
    manufacturer: str = ""
    model: str = ""


@dataclass
class CommandResult:
    ok: bool
    stdout: str = ""
    stderr: str = ""

    def lines(self) -> List[str]:
        if not self.ok:
            return []
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()
