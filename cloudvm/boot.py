"""Boot readiness detection and guest address scraping."""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Callable, List, Tuple

from cloudvm.config import Settings
from cloudvm.constants import LOGIN_MARKER, TAIL_LINES
from cloudvm.models import BootResult, BootState
from cloudvm.utils import log

_IPV4 = r"(?:\d{1,3}\.){3}\d{1,3}"
_IPV4_RE = re.compile(_IPV4)
_NET_TABLE_ROW_RE = re.compile(r"^.*\|\s*(?:enp0s1|eth0)\s*\|\s*True\s*\|.*$", re.MULTILINE)
_INET_RE = re.compile(rf"inet ({_IPV4})")
_BOUND_RE = re.compile(rf"bound to ({_IPV4})")
_IP_ADDRESS_RE = re.compile(rf"IP address:\s*({_IPV4})")
_ADDRESS_RE = re.compile(rf"address ({_IPV4})")

LOOPBACK = "127.0.0.1"


def ip_from_net_table(transcript: str) -> str:
    """cloud-init "Net device info" rows for the primary interface, ignoring netmasks."""
    for row in _NET_TABLE_ROW_RE.findall(transcript):
        for candidate in _IPV4_RE.findall(row):
            if not candidate.startswith("255.255.255."):
                return candidate
    return ""


def ip_from_inet(transcript: str) -> str:
    return next((ip for ip in _INET_RE.findall(transcript) if ip != LOOPBACK), "")


def ip_from_dhcp_bound(transcript: str) -> str:
    match = _BOUND_RE.search(transcript)
    return match.group(1) if match else ""


def ip_from_ip_address_line(transcript: str) -> str:
    match = _IP_ADDRESS_RE.search(transcript)
    return match.group(1) if match else ""


def ip_from_address_line(transcript: str) -> str:
    return next((ip for ip in _ADDRESS_RE.findall(transcript) if ip != LOOPBACK), "")


IP_HEURISTICS: Tuple[Callable[[str], str], ...] = (
    ip_from_net_table,
    ip_from_inet,
    ip_from_dhcp_bound,
    ip_from_ip_address_line,
    ip_from_address_line,
)


def extract_ip(transcript: str) -> str:
    """Return the first address any heuristic finds, or an empty string."""
    for heuristic in IP_HEURISTICS:
        address = heuristic(transcript)
        if address:
            return address
    return ""


def read_transcript(log_path: Path) -> str:
    try:
        return log_path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""


def tail(transcript: str, lines: int = TAIL_LINES) -> List[str]:
    return transcript.splitlines()[-lines:]


class BootDetector:
    """Poll a console transcript until the guest prints a login prompt."""

    def __init__(self, settings: Settings, env, sleep: Callable[[float], None] = time.sleep) -> None:
        self.attempts = settings.boot_attempts
        self.interval = settings.boot_interval
        self.env = env
        self._sleep = sleep

    def wait(self, pid: int, log_path: Path) -> BootResult:
        log("INFO", f"Waiting for boot (up to {self.attempts} checks)...")
        for attempt in range(1, self.attempts + 1):
            if not self.env.probe_alive(pid):
                transcript = read_transcript(log_path)
                log("ERROR", f"Hypervisor process {pid} exited during boot")
                return BootResult(BootState.FAILED, tail=tail(transcript))
            transcript = read_transcript(log_path)
            if LOGIN_MARKER in transcript:
                address = extract_ip(transcript)
                log("SUCCESS", f"Guest reached login prompt after {attempt} check(s)")
                if not address:
                    log("WARN", "Could not determine guest IP from console output")
                return BootResult(BootState.READY, address=address)
            if attempt < self.attempts:
                self._sleep(self.interval)
        return BootResult(BootState.TIMEOUT, tail=tail(read_transcript(log_path)))
