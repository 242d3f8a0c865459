"""Host accelerator detection for cloudvm."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cloudvm.utils import log

KVM_DEVICE = Path("/dev/kvm")


@dataclass
class HostInfo:
    system: str  # "Darwin", "Linux", ...
    machine: str  # "arm64", "aarch64", "x86_64", ...
    accel: str  # "hvf", "kvm", "tcg"


def _kvm_usable(device: Path = KVM_DEVICE) -> bool:
    """Check that /dev/kvm exists and is read/write accessible."""
    if not device.exists():
        return False
    try:
        fd = os.open(str(device), os.O_RDWR)
    except OSError:
        return False
    os.close(fd)
    return True


def _detect_accel(system: str) -> str:
    if system == "Darwin":
        return "hvf"
    if system == "Linux" and _kvm_usable():
        return "kvm"
    return "tcg"


def detect_host(configured_accel: Optional[str] = None) -> HostInfo:
    """Detect the host platform and the best available accelerator."""
    system = platform.system()
    machine = platform.machine()
    accel = configured_accel or _detect_accel(system)

    if accel == "tcg":
        log("WARN", "No hardware acceleration available; falling back to TCG (guests will be slow)")
    if system == "Darwin" and machine not in ("arm64", "aarch64"):
        log("WARN", f"Host architecture {machine} is not Apple Silicon; aarch64 guests will be emulated")
    log("DEBUG", f"Host: {system}/{machine}, accel={accel}")

    return HostInfo(system=system, machine=machine, accel=accel)
