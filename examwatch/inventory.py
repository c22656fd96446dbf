"""
Threat application inventory.

Groups installed applications, running processes, running services and
browser extensions by threat category. The inventory is informational and
independent from the detection cycle.
"""
from __future__ import annotations
import asyncio
from typing import Any, Dict, List

from .rules import THREAT_PATTERNS, match_category
from .telemetry import TelemetryAdapter

SOURCES = ("installed", "running", "services", "extensions")


def empty_categories() -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
    return {category: {source: [] for source in SOURCES} for category in THREAT_PATTERNS}


async def list_threat_applications(adapter: TelemetryAdapter) -> Dict[str, Any]:
    installed, processes, services, extensions = await asyncio.gather(
        adapter.list_installed_applications(),
        adapter.list_processes(),
        adapter.list_running_services(),
        adapter.list_browser_extensions(),
    )
    categories = empty_categories()

    for app in installed:
        m = match_category(app)
        if m:
            categories[m[0]]["installed"].append({"name": app, "match": m[1]})

    for p in processes:
        m = match_category(f"{p.name} {p.command_line}")
        if m:
            categories[m[0]]["running"].append({"name": p.name or "unknown", "pid": p.pid, "match": m[1]})

    for svc in services:
        m = match_category(svc)
        if m:
            categories[m[0]]["services"].append({"name": svc, "match": m[1]})

    for ext in extensions:
        category = ext.get("category")
        if category in categories:
            categories[category]["extensions"].append(ext)

    summary = {
        category: {source: len(items) for source, items in buckets.items()}
        for category, buckets in categories.items()
    }
    return {"categories": categories, "summary": summary, "platform": adapter.platform}
