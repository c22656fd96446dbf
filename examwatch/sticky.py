from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional
import time

from .models import StickyRecord

DEFAULT_GRACE_SECONDS = 60.0


@dataclass
class StickyState:
    """Keeps a just-lost detection alive for ``grace_seconds``.

    Records are keyed by subject (usually a pid). They are refreshed on every
    positive observation and are never swept on a timer; stale records are
    ignored until ``prune`` drops them.
    """

    grace_seconds: float = DEFAULT_GRACE_SECONDS
    clock: Callable[[], float] = time.monotonic
    records: Dict[Any, StickyRecord] = field(default_factory=dict)

    def mark(self, key: Any, now: Optional[float] = None) -> None:
        now = self.clock() if now is None else now
        rec = self.records.get(key)
        if rec is None:
            self.records[key] = StickyRecord(subject_key=key, last_seen_at=now)
        else:
            rec.last_seen_at = now

    def is_active(self, key: Any, now: Optional[float] = None) -> bool:
        rec = self.records.get(key)
        if rec is None:
            return False
        now = self.clock() if now is None else now
        return now - rec.last_seen_at < self.grace_seconds

    def observe(self, key: Any, evidence: bool, now: Optional[float] = None) -> bool:
        """Record one instantaneous observation and return the smoothed value."""
        now = self.clock() if now is None else now
        if evidence:
            self.mark(key, now)
            return True
        return self.is_active(key, now)

    def prune(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        stale = [k for k, r in self.records.items() if now - r.last_seen_at >= self.grace_seconds]
        for k in stale:
            del self.records[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self.records)
