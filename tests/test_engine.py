import asyncio

import pytest

from conftest import FakeTelemetry, conn, proc
from examwatch.config import load_config
from examwatch.engine import Detector, ThreatEngine, dedupe_threats, merge_results
from examwatch.models import SignatureSet, Threat


def make_engine(adapter, detectors=None, clock=None):
    cfg = load_config()
    kwargs = {"clock": clock} if clock is not None else {}
    return ThreatEngine(cfg, adapter=adapter, detectors=detectors, **kwargs)


def static_detector(name, threats, timeout=None):
    async def run(ctx):
        return list(threats)

    return Detector(name, run, timeout)


# ---------------------------------------------------------------------------
# merge / dedup
# ---------------------------------------------------------------------------

def test_dedupe_keeps_first_details():
    a = Threat("x", "high", "same message", {"pid": 1, "source": "first"})
    b = Threat("x", "low", "same message", {"pid": 2, "source": "second"})
    out = dedupe_threats([a, b])
    assert len(out) == 1
    assert out[0].details["source"] == "first"


def test_dedupe_is_idempotent():
    threats = [
        Threat("a", "high", "m1", {}),
        Threat("a", "high", "m1", {}),
        Threat("a", "high", "m2", {}),
        Threat("b", "medium", "m1", {}),
    ]
    once = dedupe_threats(threats)
    assert dedupe_threats(once) == once
    assert [t.key for t in once] == [("a", "m1"), ("a", "m2"), ("b", "m1")]


def test_merge_results_preserves_order():
    t1, t2, t3 = Threat("a", "low", "1"), Threat("b", "low", "2"), Threat("c", "low", "3")
    assert merge_results([[t1], [], [t2, t3]]) == [t1, t2, t3]


# ---------------------------------------------------------------------------
# orchestration
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_liveness_filter_drops_dead_pids():
    adapter = FakeTelemetry(processes=[proc(100, "bash")])
    engine = make_engine(adapter, detectors=[
        static_detector("d", [
            Threat("alive", "high", "alive", {"pid": 100}),
            Threat("dead", "high", "dead", {"pid": 999}),
            Threat("global", "low", "no pid", {}),
        ]),
    ])
    threats = await engine.run_all_checks()
    assert {t.type for t in threats} == {"alive", "global"}


@pytest.mark.asyncio
async def test_dead_duplicate_does_not_hide_live_threat():
    adapter = FakeTelemetry(processes=[proc(100, "bash")])
    engine = make_engine(adapter, detectors=[
        static_detector("d", [
            Threat("x", "high", "same", {"pid": 999}),
            Threat("x", "high", "same", {"pid": 100}),
        ]),
    ])
    threats = await engine.run_all_checks()
    assert [t.details["pid"] for t in threats] == [100]


@pytest.mark.asyncio
async def test_connection_from_exited_process_does_not_hide_live_one():
    adapter = FakeTelemetry(
        processes=[proc(100, "ssh")],
        connections=[conn(peer_port=22, pid=999), conn(peer_port=22, pid=100)],
    )
    threats = await make_engine(adapter).run_all_checks()
    found = [t for t in threats if t.type == "suspicious_network_connection"]
    assert len(found) == 1
    assert found[0].details["pid"] == 100


@pytest.mark.asyncio
async def test_failing_and_slow_detectors_are_isolated(caplog):
    async def boom(ctx):
        raise RuntimeError("detector crashed")

    async def slow(ctx):
        await asyncio.sleep(5)
        return [Threat("slow", "high", "too late", {})]

    adapter = FakeTelemetry(processes=[proc(1, "init")])
    engine = make_engine(adapter, detectors=[
        Detector("boom", boom),
        Detector("slow", slow, timeout=0.05),
        static_detector("ok", [Threat("ok", "low", "fine", {})]),
    ])
    with caplog.at_level("WARNING", logger="examwatch.engine"):
        threats = await engine.run_all_checks()

    assert [t.type for t in threats] == ["ok"]
    assert "boom" in caplog.text
    assert "slow" in caplog.text


@pytest.mark.asyncio
async def test_snapshots_are_shared_by_reference():
    seen = []

    async def capture(ctx):
        seen.append((id(ctx.processes), id(ctx.connections)))
        return []

    adapter = FakeTelemetry(processes=[proc(1, "init")], connections=[conn()])
    engine = make_engine(adapter, detectors=[Detector("a", capture), Detector("b", capture)])
    await engine.run_all_checks()
    assert len(seen) == 2
    assert seen[0] == seen[1]


@pytest.mark.asyncio
async def test_teamviewer_foreground_is_critical_application():
    adapter = FakeTelemetry(processes=[proc(10, "teamviewer", "/opt/teamviewer/teamviewer", cpu=5.0, mem=2.0)])
    threats = await make_engine(adapter).run_all_checks()
    rc = [t for t in threats if t.type.startswith("remote_control")]
    assert len(rc) == 1
    assert rc[0].type == "remote_control_application"
    assert rc[0].severity == "critical"
    assert rc[0].message == "Remote control application detected: TeamViewer"
    assert rc[0].details["pid"] == 10


@pytest.mark.asyncio
async def test_teamviewer_daemon_is_medium_service():
    adapter = FakeTelemetry(processes=[
        proc(11, "teamviewerd", "/opt/teamviewer/tv_bin/teamviewerd -d", cpu=0.1),
    ])
    threats = await make_engine(adapter).run_all_checks()
    rc = [t for t in threats if t.type.startswith("remote_control")]
    assert len(rc) == 1
    assert rc[0].type == "remote_control_service"
    assert rc[0].severity == "medium"


@pytest.mark.asyncio
async def test_teamviewer_daemon_command_line_is_medium_service():
    adapter = FakeTelemetry(processes=[
        proc(11, "teamviewer", "/opt/teamviewer/tv_bin/teamviewer --daemon", cpu=5.0, mem=2.0),
    ])
    threats = await make_engine(adapter).run_all_checks()
    rc = [t for t in threats if t.type.startswith("remote_control")]
    assert [(t.type, t.severity, t.details["pid"]) for t in rc] == [("remote_control_service", "medium", 11)]


@pytest.mark.asyncio
async def test_application_beats_service_for_same_app():
    adapter = FakeTelemetry(processes=[
        proc(11, "teamviewerd", "/opt/teamviewer/tv_bin/teamviewerd -d", cpu=9.0),
        proc(10, "teamviewer", "/opt/teamviewer/teamviewer", cpu=1.0),
    ])
    threats = await make_engine(adapter).run_all_checks()
    rc = [t for t in threats if t.type.startswith("remote_control")]
    assert [(t.type, t.details["pid"]) for t in rc] == [("remote_control_application", 10)]


@pytest.mark.asyncio
async def test_running_service_does_not_duplicate_application():
    adapter = FakeTelemetry(
        processes=[proc(10, "teamviewer", "/opt/teamviewer/teamviewer", cpu=5.0, mem=2.0)],
        services=["teamviewerd"],
    )
    threats = await make_engine(adapter).run_all_checks()
    rc = [t for t in threats if t.type.startswith("remote_control")]
    assert [(t.type, t.severity) for t in rc] == [("remote_control_application", "critical")]


@pytest.mark.asyncio
async def test_service_list_reports_app_without_process():
    adapter = FakeTelemetry(processes=[proc(1, "bash")], services=["teamviewerd", "cron"])
    threats = await make_engine(adapter).run_all_checks()
    rc = [t for t in threats if t.type.startswith("remote_control")]
    assert [(t.type, t.details["service"]) for t in rc] == [("remote_control_service", "teamviewerd")]


@pytest.mark.asyncio
async def test_signatures_are_passed_per_call():
    adapter = FakeTelemetry(
        processes=[proc(20, "cheat.exe"), proc(21, "bash")],
        connections=[conn(peer_port=31337, pid=21)],
    )
    engine = make_engine(adapter)

    threats = await engine.run_all_checks({"processNames": ["CHEAT.EXE"], "ports": [31337, "bogus"]})
    types = [t.type for t in threats]
    assert types.count("signature_process") == 1
    assert types.count("signature_port") == 1

    # nothing is cached between calls
    threats = await engine.run_all_checks(None)
    assert not [t for t in threats if t.type.startswith("signature_")]


@pytest.mark.asyncio
async def test_webrtc_detection_is_sticky_across_cycles(clock):
    chrome = proc(30, "chrome", "/opt/google/chrome/chrome", cpu=10.0)
    media = [conn("udp", local_port=40000 + i, peer_port=19302, pid=30, state="") for i in range(3)]
    adapter = FakeTelemetry(processes=[chrome], connections=media)
    engine = make_engine(adapter, clock=clock)

    def webrtc(threats):
        return [t for t in threats if t.type == "screen_sharing_process_webrtc"]

    first = webrtc(await engine.run_all_checks())
    assert len(first) == 1
    assert first[0].details["sticky"] is False
    assert adapter.tab_requests == ["chrome"]

    adapter.connections = []
    clock.advance(30)
    second = webrtc(await engine.run_all_checks())
    assert len(second) == 1
    assert second[0].details["sticky"] is True

    clock.advance(31)
    assert webrtc(await engine.run_all_checks()) == []


@pytest.mark.asyncio
async def test_network_baseline_is_replaced_each_cycle(clock):
    adapter = FakeTelemetry(processes=[proc(1, "init")], connections=[conn(local_port=45000)])
    engine = make_engine(adapter, clock=clock)
    assert engine.baseline is None

    await engine.run_all_checks()
    first = engine.baseline
    assert first.total_connections == 1
    assert first.high_port_connection_count == 1

    adapter.connections = []
    clock.advance(5)
    await engine.run_all_checks()
    assert engine.baseline is not first
    assert engine.baseline.total_connections == 0
    assert engine.baseline.captured_at == clock.now


def test_scan_runs_a_cycle_synchronously():
    adapter = FakeTelemetry(processes=[proc(20, "cheat")])
    engine = make_engine(adapter, detectors=[])
    assert engine.scan(SignatureSet.build(process_names=["cheat"])) == []

    engine = make_engine(adapter)
    threats = engine.scan(SignatureSet.build(process_names=["cheat"]))
    assert [t.type for t in threats] == ["signature_process"]


@pytest.mark.asyncio
async def test_x11_display_access_keeps_only_live_browsers():
    adapter = FakeTelemetry(
        processes=[proc(30, "chrome", cpu=0.0, mem=0.1, state="sleeping")],
        x11_clients=[("chrome", 999), ("chrome", 30)],
    )
    threats = await make_engine(adapter).run_all_checks()
    x11 = [t for t in threats if t.type == "x11_display_access_detected"]
    assert [(t.severity, t.details["pid"]) for t in x11] == [("low", 30)]
