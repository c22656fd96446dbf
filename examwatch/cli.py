from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any, Dict, List

from .config import load_config, load_signatures
from .engine import ThreatEngine
from .errors import ExamwatchError
from .inventory import list_threat_applications
from .models import Threat, now_iso
from .telemetry import get_adapter
from .utils import C, setup_logger

SEVERITY_COLORS = {
    "critical": C.RED,
    "high": C.RED,
    "medium": C.YELLOW,
    "low": C.GRAY,
}


def pretty_row(threat: Threat) -> str:
    color = SEVERITY_COLORS.get(threat.severity, C.RESET)
    sev_str = f"{color}{threat.severity:<9}{C.RESET}"
    pid = threat.details.get("pid")
    pid_str = f"{pid if pid is not None else '-':<7}"
    type_str = f"{C.CYAN}{threat.type:<34}{C.RESET}"
    return f"{sev_str} {pid_str} {type_str} {threat.message}"


def print_threats(threats: List[Threat], as_json: bool) -> None:
    if as_json:
        for t in threats:
            print(json.dumps(t.as_dict(), sort_keys=True, default=str))
        return
    if not threats:
        print(f"{C.GRAY}no threats detected{C.RESET}")
    for t in threats:
        print(pretty_row(t))


def cmd_scan(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    signatures = load_signatures(args.signatures)
    engine = ThreatEngine(cfg)

    if not args.json:
        header = f"{'SEVERITY':<9} {'PID':<7} {'TYPE':<34} MESSAGE"
        print(header + "\n" + "-" * len(header))

    if args.interval > 0:
        while True:
            if not args.json:
                print(f"\n# Scan @ {now_iso()}")
            print_threats(engine.scan(signatures), args.json)
            time.sleep(args.interval)
    else:
        print_threats(engine.scan(signatures), args.json)


def _print_inventory(report: Dict[str, Any]) -> None:
    print(f"Platform: {report['platform']}")
    for category, buckets in report["categories"].items():
        counts = report["summary"][category]
        total = sum(counts.values())
        color = C.YELLOW if total else C.GRAY
        print(f"\n{color}{category}{C.RESET} " + " ".join(f"{k}={v}" for k, v in counts.items()))
        for source, items in buckets.items():
            for item in items:
                extra = f" pid={item['pid']}" if "pid" in item else ""
                print(f"  {source:<10} {C.CYAN}{item.get('name', '')}{C.RESET}{extra} ({item.get('match', '')})")


def cmd_inventory(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    adapter = get_adapter(cfg.get("timeouts"))
    report = asyncio.run(list_threat_applications(adapter))
    if args.json:
        print(json.dumps(report, indent=2, default=str))
    else:
        _print_inventory(report)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, help="Config YAML")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    common.add_argument("--log-file", type=str, help="Also write logs to this file")

    ap = argparse.ArgumentParser(description="examwatch - endpoint integrity checks for monitored sessions")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_scan = sub.add_parser("scan", parents=[common], help="Run detection cycles")
    p_scan.add_argument("--interval", type=float, default=0.0, help="Scan interval (0=single scan)")
    p_scan.add_argument("--signatures", type=str, help="Signature file (YAML or JSON)")
    p_scan.add_argument("--json", action="store_true", help="One JSON object per threat")
    p_scan.set_defaults(func=cmd_scan)

    p_inv = sub.add_parser("inventory", parents=[common], help="List installed and running threat applications")
    p_inv.add_argument("--json", action="store_true")
    p_inv.set_defaults(func=cmd_inventory)

    return ap


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logger(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)
    try:
        args.func(args)
    except ExamwatchError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        sys.exit(130)
