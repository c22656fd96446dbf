"""
Declarative pattern tables used by the detectors.

All patterns are lowercase substrings unless noted. Keep entries specific
enough that they do not collide with common system binaries.
"""
from __future__ import annotations
from typing import Dict, FrozenSet, List, Tuple

from .utils import strip_exe

# app key -> patterns matched against name, exe basename and command line
REMOTE_CONTROL_APPS: Dict[str, List[str]] = {
    "teamviewer": ["teamviewer", "tv_w32", "tv_x64"],
    "anydesk": ["anydesk"],
    "chrome_remote": ["chrome-remote-desktop", "chrome_remote_desktop", "remoting_host", "remoting_desktop"],
    "vnc": ["vncserver", "vncviewer", "x11vnc", "realvnc", "tightvnc", "ultravnc", "winvnc", "vnc4server", "tigervnc"],
    "rdp": ["mstsc", "xfreerdp", "rdesktop", "xrdp", "rdp-server"],
    "logmein": ["logmein", "gotomypc"],
    "remotepc": ["remotepc"],
    "splashtop": ["splashtop"],
    "dameware": ["dameware"],
    "radmin": ["radmin"],
    "ammyy": ["ammyy"],
    "screenconnect": ["screenconnect", "connectwisecontrol"],
    "bomgar": ["bomgar", "beyondtrust"],
    "remote_utilities": ["remoteutilities", "rutserv", "rfusclient"],
    "supremo": ["supremo"],
    "showmypc": ["showmypc"],
    "zoho_assist": ["zohoassist", "zoho assist"],
    "ultraviewer": ["ultraviewer"],
    "rustdesk": ["rustdesk"],
    "nomachine": ["nxserver", "nxplayer", "nomachine"],
    "remmina": ["remmina"],
}

REMOTE_CONTROL_DISPLAY_NAMES: Dict[str, str] = {
    "teamviewer": "TeamViewer",
    "anydesk": "AnyDesk",
    "chrome_remote": "Chrome Remote Desktop",
    "vnc": "VNC",
    "rdp": "Remote Desktop",
    "logmein": "LogMeIn",
    "remotepc": "RemotePC",
    "screenconnect": "ScreenConnect",
    "remote_utilities": "Remote Utilities",
    "zoho_assist": "Zoho Assist",
    "ultraviewer": "UltraViewer",
    "rustdesk": "RustDesk",
    "nomachine": "NoMachine",
}

# name or command-line fragments of remote-access daemons
BACKGROUND_SERVICES: List[str] = [
    "teamviewerd",
    "tv_bin/teamviewerd",
    "ad_service",
    "anydesk_service",
    "vncserver-x11-core",
    "vncserver-x11-serviced",
    "rdp-server",
    "xrdp-sesman",
    "chrome-remote-desktop-host",
    "remoting_host --type=daemon",
]

# argv tokens that mark a daemon/service invocation
DAEMON_FLAGS: FrozenSet[str] = frozenset({"-d", "--daemon", "--service", "--background", "-service"})

SUSPICIOUS_PROCESSES: List[str] = [
    "calculator", "gnome-calculator", "kcalc", "galculator", "qalculate", "mate-calc", "xcalc", "calc.exe",
    "notepad", "wordpad", "gedit", "sublime_text", "sublime", "vscode", "brackets",
    "intellij", "idea64", "eclipse", "pycharm", "webstorm", "devenv", "dev-cpp", "codeblocks",
    "android studio", "studio64", "xcode", "matlab", "mathematica", "wolfram", "maple", "octave",
    "rstudio", "spyder", "anaconda-navigator",
]

# names that must match exactly (too short for substring matching)
SUSPICIOUS_EXACT_NAMES: FrozenSet[str] = frozenset({"calc", "code", "kate", "atom"})

SUSPICIOUS_PORTS: FrozenSet[int] = frozenset(
    {5900, 5901, 5902, 5903, 5904, 3389, 22, 23, 5938, 7070, 4899, 5500, 6129}
)

# STUN / TURN relay ports used by WebRTC media
RTC_RELAY_PORTS: FrozenSet[int] = frozenset({3478, 5349, 19302})

BROWSERS: Dict[str, List[str]] = {
    "chrome": ["chrome", "google-chrome"],
    "chromium": ["chromium"],
    "firefox": ["firefox"],
    "edge": ["msedge", "microsoft-edge", "microsoft edge"],
    "brave": ["brave"],
    "opera": ["opera"],
    "safari": ["safari"],
}

# main browser executables, lowercased and without ".exe"; helpers such as
# crash handlers or sync agents are not the browser itself
BROWSER_PROCESS_NAMES: Dict[str, List[str]] = {
    "chrome": ["chrome", "google-chrome", "google-chrome-stable", "google chrome"],
    "chromium": ["chromium", "chromium-browser"],
    "firefox": ["firefox", "firefox-bin", "firefox-esr"],
    "edge": ["msedge", "microsoft-edge", "microsoft-edge-stable", "microsoft edge"],
    "brave": ["brave", "brave-browser", "brave browser"],
    "opera": ["opera"],
    "safari": ["safari"],
}

MEETING_APPS: List[str] = ["zoom", "teams", "skype", "webex", "discord", "slack", "gotomeeting"]

FORCED_CAPTURE_FLAGS: List[str] = [
    "--enable-usermedia-screen-capturing",
    "--auto-select-desktop-capture-source",
    "--use-fake-ui-for-media-stream",
    "--disable-web-security",
    "--allow-running-insecure-content",
]

CAPTURE_TOOLS: List[str] = ["obs", "obs64", "obs-studio", "ffmpeg", "simplescreenrecorder", "kazam", "vokoscreen"]

CAPTURE_BACKEND_HINTS: List[str] = [
    "x11grab", "gdigrab", "avfoundation", "dshow", "screen-capture", "pipewire", "xcbgrab", "ddagrab", "kmsgrab",
]

SCREEN_SHARING_DOMAINS: List[str] = [
    "meet.google.com", "teams.microsoft.com", "teams.live.com", "zoom.us", "webex.com", "gotomeeting.com",
    "discord.com", "slack.com", "whereby.com", "meet.jit.si", "jitsi.org", "appear.in", "skype.com",
    "teamviewer.com", "anydesk.com", "remotedesktop.google.com",
]

SCREEN_SHARING_KEYWORDS: List[str] = [
    "is sharing your screen", "sharing your screen", "screen sharing", "share screen", "presenting",
    "you are presenting", "remote desktop", "screencast",
]

VM_INDICATORS: List[str] = ["vmware", "virtualbox", "vbox", "qemu", "kvm", "hyper-v", "xen", "parallels", "bochs"]

# process names that are VM guest agents or hypervisors
VM_PROCESSES: List[str] = [
    "vmtoolsd", "vmware", "vboxservice", "vboxclient", "virtualbox", "qemu-ga", "qemu-system",
    "prl_tools", "prl_cc", "xenservice", "hyperv",
]

MESSAGING_APPS: Dict[str, List[str]] = {
    "whatsapp": ["whatsapp"],
    "telegram": ["telegram"],
    "discord": ["discord"],
    "teams": ["ms-teams", "msteams", "teams"],
    "slack": ["slack"],
    "zoom": ["zoom"],
    "signal": ["signal-desktop", "signal"],
    "messenger": ["messenger", "caprine"],
    "skype": ["skype"],
    "webex": ["webex"],
}

CLIPBOARD_TOOLS: List[str] = ["xclip", "xsel", "wl-copy", "wl-paste", "pbcopy", "pbpaste", "clipit", "copyq", "rdpclip"]

# (tool, feature) pairs that both have to appear in the command line
REMOTE_CLIPBOARD_FEATURES: List[Tuple[str, str]] = [
    ("teamviewer", "clipboard"),
    ("anydesk", "clipboard"),
    ("vnc", "clipboard"),
    ("vnc", "autocutsel"),
]

SCREEN_CAPABLE_APPS: List[str] = ["chrome", "chromium", "firefox", "obs", "zoom", "teams", "discord"]

# keyword categories for the application inventory
THREAT_PATTERNS: Dict[str, List[str]] = {
    "messaging": [
        "whatsapp", "telegram", "discord", "microsoft teams", "teams", "slack", "zoom", "signal", "messenger", "skype",
    ],
    "remote_control": [
        "teamviewer", "anydesk", "chrome remote desktop", "chrome_remote_desktop", "remote desktop", "zoho assist",
        "ultraviewer", "remote utilities", "remotepc", "splashtop", "vnc", "realvnc", "tightvnc", "ultravnc",
        "rdp", "radmin", "screenconnect", "bomgar", "rustdesk",
    ],
    "virtualization": ["virtualbox", "vmware", "parallels", "qemu", "kvm", "hyper-v", "hyperv", "xen"],
    "screen_capture": ["snagit", "sharex", "obs", "obs studio", "gyazo", "camtasia", "bandicam", "fraps", "screencast"],
}


def display_name(app_key: str) -> str:
    if app_key in REMOTE_CONTROL_DISPLAY_NAMES:
        return REMOTE_CONTROL_DISPLAY_NAMES[app_key]
    return app_key.replace("_", " ").title()


def match_category(text: str) -> Tuple[str, str] | None:
    n = (text or "").lower()
    for category, patterns in THREAT_PATTERNS.items():
        for p in patterns:
            if p in n:
                return category, p
    return None


def browser_key(name: str) -> str | None:
    """Return the browser family a process belongs to, if any.

    Only the main executable counts, plus the "<App> Helper" renderer
    processes macOS Chromium builds spawn under the app's own name.
    """
    n = strip_exe((name or "").lower())
    for key, names in BROWSER_PROCESS_NAMES.items():
        for main in names:
            if n == main or (" " in main and n.startswith(main + " helper")):
                return key
    return None
