import pytest

from conftest import conn, proc
from examwatch.heuristics import Heuristics, match_remote_app
from examwatch.models import SignatureSet, SystemInfo, Threat
from examwatch.noise import HelperFilter, filter_live, is_background_service, is_process_active


@pytest.fixture
def h():
    return Heuristics()


def types(threats):
    return [t.type for t in threats]


# ---------------------------------------------------------------------------
# helper suppression
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("name, command_line", [
    ("coreaudiod", "/usr/sbin/coreaudiod"),
    ("AirPlayXPCHelper", "/usr/libexec/AirPlayXPCHelper"),
    ("MsMpEng.exe", "C:\\ProgramData\\Microsoft\\Windows Defender\\MsMpEng.exe"),
    ("kworker/0:1", ""),
    ("dpkg", "dpkg -i teamviewer_15.deb"),
    ("apt-get", "apt-get install anydesk"),
])
def test_helper_processes_are_recognized(name, command_line):
    assert HelperFilter().is_helper(proc(1, name, command_line))


def test_helper_suppresses_remote_control(h):
    # an installer pulling a remote-control package is not the app itself
    threats = h.check_remote_control([proc(5, "apt-get", "apt-get install teamviewer")])
    assert threats == []


def test_helper_suppresses_suspicious_process(h):
    threats = h.check_suspicious_processes([proc(5, "dpkg", "dpkg -i /tmp/gnome-calculator_1.0.deb")])
    assert threats == []


def test_helper_suppresses_connections(h):
    processes = [proc(7, "coreaudiod", "/usr/sbin/coreaudiod")]
    threats = h.check_suspicious_connections([conn(local_port=5900, pid=7)], processes)
    assert threats == []


def test_configured_helper_names_and_patterns():
    helpers = HelperFilter(names={"my-agent"}, patterns=["corp-*"])
    h = Heuristics(helpers=helpers)
    threats = h.check_suspicious_processes([
        proc(1, "my-agent", "notepad"),
        proc(2, "corp-notepad", "corp-notepad"),
        proc(3, "notepad", "notepad"),
    ])
    assert [t.details["pid"] for t in threats] == [3]


# ---------------------------------------------------------------------------
# remote control
# ---------------------------------------------------------------------------

def test_match_remote_app_by_exe_basename():
    p = proc(1, "", "C:\\Program Files\\AnyDesk\\AnyDesk.exe --control")
    assert match_remote_app(p) == "anydesk"


@pytest.mark.parametrize("command_line, expected", [
    ("/opt/teamviewer/tv_bin/teamviewerd -d", True),
    ("anydesk --service", True),
    ("/opt/google/chrome/chrome --type=gpu-process", True),
    ("/opt/google/chrome/chrome --type=renderer", False),
    ("/usr/bin/anydesk", False),
])
def test_background_service_classification(command_line, expected):
    name = command_line.split()[0].rsplit("/", 1)[-1]
    assert is_background_service(proc(1, name, command_line)) is expected


def test_remote_control_service_names(h):
    threats = h.check_remote_control_services(["teamviewerd", "TeamViewer", "cron", "anydesk"])
    assert [t.details["app"] for t in threats] == ["teamviewer", "anydesk"]
    assert {t.severity for t in threats} == {"medium"}


def test_remote_control_services_skip_reported_apps(h):
    threats = h.check_remote_control_services(["teamviewerd", "anydesk"], skip=["teamviewer"])
    assert [t.details["app"] for t in threats] == ["anydesk"]


# ---------------------------------------------------------------------------
# processes and network
# ---------------------------------------------------------------------------

def test_suspicious_process_counts_idle_instances(h):
    idle = proc(3, "gnome-calculator", cpu=0.0, mem=0.1, state="sleeping")
    threats = h.check_suspicious_processes([idle])
    assert types(threats) == ["suspicious_process"]
    assert threats[0].severity == "high"
    assert threats[0].details["pattern"] == "calculator"


def test_short_editor_names_match_exactly(h):
    threats = h.check_suspicious_processes([
        proc(1, "code"),
        proc(2, "Code.exe", "C:\\Users\\me\\AppData\\Local\\Programs\\Microsoft VS Code\\Code.exe"),
        proc(3, "codec-helper"),
        proc(4, "unicode-server"),
    ])
    assert [t.details["pid"] for t in threats] == [1, 2]


def test_suspicious_connection_uses_matched_port(h):
    threats = h.check_suspicious_connections(
        [conn(local_port=51000, peer_port=3389, pid=9), conn(local_port=51001, peer_port=443)],
        [proc(9, "mstsc")],
    )
    assert len(threats) == 1
    assert threats[0].message == "Suspicious network connection on port 3389"
    assert threats[0].details["pid"] == 9


def test_custom_suspicious_ports():
    h = Heuristics({"suspicious_ports": [8443]})
    threats = h.check_suspicious_connections([conn(peer_port=8443), conn(peer_port=3389)], [])
    assert [t.details["peerPort"] for t in threats] == [8443]


# ---------------------------------------------------------------------------
# signatures
# ---------------------------------------------------------------------------

def test_signature_process_matches_exactly_once(h):
    sig = SignatureSet.build(process_names=["Cheat.EXE"])
    threats = h.check_malicious_signatures([proc(20, "cheat.exe"), proc(21, "cheats.exe")], [], sig)
    assert types(threats) == ["signature_process"]
    assert threats[0].details == {"pid": 20}


def test_signature_ports_and_domains(h):
    sig = SignatureSet.build(ports=[4444, "x"], domains=["evil.example"])
    connections = [
        conn(local_port=4444),
        conn(peer_port=443, peer_address="cdn.evil.example"),
        conn(peer_port=443, peer_address="good.example"),
    ]
    threats = h.check_malicious_signatures([], connections, sig)
    assert types(threats) == ["signature_port", "signature_domain"]
    assert threats[0].message == "Malicious port in use (4444)"


@pytest.mark.parametrize("signatures", [None, {}, SignatureSet()])
def test_empty_signatures_yield_nothing(h, signatures):
    assert h.check_malicious_signatures([proc(1, "anything")], [conn(peer_port=1)], signatures) == []


def test_empty_signatures_do_not_walk_snapshots(h):
    class Untouchable:
        def __iter__(self):
            raise AssertionError("snapshot iterated")

    assert h.check_malicious_signatures(Untouchable(), Untouchable(), SignatureSet()) == []


# ---------------------------------------------------------------------------
# other detectors
# ---------------------------------------------------------------------------

def test_virtual_machine_by_vendor_and_process(h):
    system = SystemInfo(manufacturer="innotek GmbH", model="VirtualBox")
    threats = h.check_virtual_machine(system, [proc(4, "VBoxService")])
    assert types(threats) == ["virtual_machine_detected", "vm_process_detected"]
    assert threats[0].severity == "critical"


def test_bare_metal_reports_nothing(h):
    assert h.check_virtual_machine(SystemInfo("Dell Inc.", "XPS 13"), [proc(1, "bash")]) == []


def test_messaging_apps_one_per_app(h):
    threats = h.check_messaging_apps([
        proc(1, "Discord", cpu=0.0, state="sleeping"),
        proc(2, "Discord", cpu=3.0),
        proc(3, "telegram-desktop"),
    ])
    assert sorted((t.details["app"], t.details["pid"]) for t in threats) == [("discord", 2), ("telegram", 3)]


def test_clipboard_sync_single_finding(h):
    threats = h.check_clipboard_sync([
        proc(1, "xclip", "xclip -selection clipboard"),
        proc(2, "copyq"),
        proc(3, "gsd-clipboard", "/usr/libexec/gsd-clipboard"),
    ])
    assert types(threats) == ["clipboard_synchronization"]
    assert threats[0].details["pids"] == [1, 2]


def test_gpu_memory_aggregate(h):
    threats = h.check_gpu_memory([proc(1, "obs", mem=9.0), proc(2, "chrome", mem=8.0), proc(3, "zoom", mem=2.0)])
    assert types(threats) == ["high_gpu_memory_usage"]
    assert threats[0].details["processes"] == ["obs", "chrome"]


def test_windows_rdp_and_clipboard(h):
    threats = h.check_windows_rdp([">alice  rdp-tcp#0  2  Active"], [proc(8, "rdpclip.exe")])
    assert types(threats) == ["windows_rdp_session_active", "windows_rdp_clipboard"]


def test_mac_screen_sharing_agents(h):
    threats = h.check_mac_screen_sharing(["screensharingd", "ARDAgent"])
    assert [(t.type, t.severity) for t in threats] == [
        ("mac_screensharing_session_active", "critical"),
        ("mac_ard_agent_running", "high"),
    ]


def test_x11_display_access_one_per_client(h):
    threats = h.check_x11_display_access([("chrome", 40), ("firefox", 41)])
    assert [(t.type, t.severity, t.details["pid"]) for t in threats] == [
        ("x11_display_access_detected", "low", 40),
        ("x11_display_access_detected", "low", 41),
    ]
    assert threats[0].message == "Browser accessing X11 display"


def test_audio_capture_state(h):
    assert types(h.check_audio_capture({"monitor": True, "desktop_capture": True})) == [
        "audio_monitor_detected", "desktop_audio_capture_detected",
    ]
    assert h.check_audio_capture({}) == []


# ---------------------------------------------------------------------------
# noise helpers
# ---------------------------------------------------------------------------

def test_process_activity():
    assert is_process_active(proc(1, "a", cpu=0.0, mem=0.0, state=""))
    assert is_process_active(proc(1, "a", cpu=0.3, mem=0.0, state="sleeping"))
    assert not is_process_active(proc(1, "a", cpu=0.0, mem=0.1, state="sleeping"))


def test_filter_live_keeps_pidless_threats():
    threats = [Threat("a", "low", "1", {"pid": 1}), Threat("b", "low", "2", {"pid": 2}), Threat("c", "low", "3")]
    assert [t.type for t in filter_live(threats, {1})] == ["a", "c"]


def test_threat_rejects_unknown_severity():
    with pytest.raises(ValueError):
        Threat("x", "severe", "bad")
