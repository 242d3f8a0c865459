"""Shared test fixtures: settings rooted in tmp_path and a recording fake host environment."""

from __future__ import annotations

import re
import shutil
import signal
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from cloudvm.config import Settings
from cloudvm.exceptions import DownloadFailed, PackagingFailed
from cloudvm.lifecycle import LifecycleController
from cloudvm.models import DiskUsage
from cloudvm.utils import hash_password

IMAGE_URL = "https://example.com/images/debian-12-generic-arm64.qcow2"

BOOT_TRANSCRIPT = (
    "EFI stub: Booting Linux Kernel...\n"
    "ci-info: ++++++++++++++++++++++++Net device info+++++++++++++++++++++++++\n"
    "ci-info: | enp0s1 | True |       192.168.105.20        | 255.255.255.0 | global | 52:54:00:45:f7:82 |\n"
    "ci-info: |   lo   | True |          127.0.0.1          |   255.0.0.0   |  host  |         .         |\n"
    "\n"
    "Debian GNU/Linux 12 test-vm-1 ttyAMA0\n"
    "\n"
    "test-vm-1 login: "
)


def no_sleep(_seconds: float) -> None:
    return None


class FakeEnvironment:
    """In-memory stand-in for HostEnvironment; records every call in ``calls``."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.downloads: List[str] = []
        self.spawned: List[List[str]] = []
        self.signals: List[tuple] = []
        self.alive: Set[int] = set()
        self.process_table: Dict[int, str] = {}
        self.volumes: Dict[str, Dict[str, str]] = {}
        self.mdns: Dict[str, str] = {}
        self.arp: Dict[str, str] = {}
        self.boot_output: Optional[str] = BOOT_TRANSCRIPT
        self.exit_on_spawn = False
        self.download_error: Optional[Exception] = None
        self.fail_packaging = False
        self.monitor_ok = True
        self.powerdown_stops = True
        self.ssh_ok = False
        self.ignore_sigterm = False
        self._next_pid = 4000

    # files and disks
    def download_file(self, url: str, destination: Path) -> None:
        self.calls.append(("download_file", url, destination))
        self.downloads.append(url)
        if self.download_error is not None:
            destination.write_bytes(b"partial")
            raise self.download_error
        destination.write_bytes(b"qcow2-base-image")

    def copy_file(self, source: Path, destination: Path) -> None:
        self.calls.append(("copy_file", source, destination))
        shutil.copyfile(source, destination)

    def resize_disk(self, path: Path, size: str) -> None:
        self.calls.append(("resize_disk", path, size))

    def disk_info(self, path: Path) -> DiskUsage:
        self.calls.append(("disk_info", path))
        if not path.exists():
            return DiskUsage(None, None)
        return DiskUsage(20 * 1024**3, path.stat().st_size)

    def hash_password(self, password: str) -> str:
        self.calls.append(("hash_password",))
        return hash_password(password)

    def package_volume(self, source_dir: Path, output: Path, label: str) -> None:
        self.calls.append(("package_volume", source_dir, output, label))
        if self.fail_packaging:
            raise PackagingFailed("mkisofs exploded")
        files = {entry.name: entry.read_text() for entry in sorted(source_dir.iterdir())}
        output.write_text("".join(f"--- {name}\n{content}" for name, content in files.items()))
        self.volumes[label] = files

    # processes
    def spawn_process(self, argv: List[str], log_path: Path) -> int:
        self.calls.append(("spawn_process", argv, log_path))
        self.spawned.append(list(argv))
        self._next_pid += 1
        pid = self._next_pid
        if not self.exit_on_spawn:
            self.alive.add(pid)
        self.process_table[pid] = " ".join(argv)
        if self.boot_output:
            with open(log_path, "a") as fh:
                fh.write(self.boot_output)
        return pid

    def probe_alive(self, pid: int) -> bool:
        self.calls.append(("probe_alive", pid))
        return pid in self.alive

    def send_signal(self, pid: int, sig: int) -> bool:
        self.calls.append(("send_signal", pid, sig))
        self.signals.append((pid, sig))
        if pid not in self.alive:
            return False
        if sig == signal.SIGKILL or not self.ignore_sigterm:
            self.alive.discard(pid)
            self.process_table.pop(pid, None)
        return True

    def find_processes(self, pattern: str) -> List[int]:
        self.calls.append(("find_processes", pattern))
        regex = re.compile(pattern)
        return [pid for pid, cmdline in self.process_table.items() if pid in self.alive and regex.search(cmdline)]

    # control channels
    def send_control_command(self, socket_path: Path, command: str) -> bool:
        self.calls.append(("send_control_command", socket_path, command))
        if self.monitor_ok and self.powerdown_stops:
            self.alive.clear()
        return self.monitor_ok

    def ssh_command(self, user: str, host: str, key: Path, command: str) -> bool:
        self.calls.append(("ssh_command", user, host, key, command))
        return self.ssh_ok

    def attach_console(self, socket_path: Path) -> int:
        self.calls.append(("attach_console", socket_path))
        return 0

    # lookups
    def resolve_mdns(self, hostname: str) -> str:
        self.calls.append(("resolve_mdns", hostname))
        return self.mdns.get(hostname, "")

    def arp_lookup(self, mac: str) -> str:
        self.calls.append(("arp_lookup", mac))
        return self.arp.get(mac, "")

    def brew_prefix(self) -> Optional[Path]:
        self.calls.append(("brew_prefix",))
        return None

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in tmp_path with instant boot/shutdown polling and user-mode networking."""
    firmware = tmp_path / "firmware" / "edk2-aarch64-code.fd"
    firmware.parent.mkdir()
    firmware.write_bytes(b"\0" * 16)
    return Settings(
        home=tmp_path / "home",
        images={"debian12": IMAGE_URL},
        network_mode="user",
        accel="tcg",
        firmware_code=firmware,
        firmware_vars=tmp_path / "firmware" / "edk2-aarch64-vars.fd",
        firmware_vars_size=4096,
        boot_attempts=3,
        boot_interval=0.0,
        shutdown_wait=0.0,
        term_wait=0.0,
    )


@pytest.fixture
def fake_env() -> FakeEnvironment:
    return FakeEnvironment()


@pytest.fixture
def controller(settings, fake_env, tmp_path) -> LifecycleController:
    return LifecycleController(
        settings,
        fake_env,
        sleep=no_sleep,
        interactive=lambda: False,
        ssh_dir=tmp_path / "no-ssh",
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Every environment variable load_settings() reads, cleared for a clean slate.
_SETTINGS_ENV_VARS = [
    "CLOUDVM_HOME",
    "CLOUDVM_CONFIG",
    "CLOUDVM_MEMORY",
    "CLOUDVM_CPUS",
    "CLOUDVM_DISK_SIZE",
    "CLOUDVM_DEFAULT_IMAGE",
    "CLOUDVM_DEFAULT_USER",
    "CLOUDVM_NETWORK_MODE",
    "CLOUDVM_ACCEL",
    "CLOUDVM_BOOT_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear all cloudvm environment variables and point CLOUDVM_HOME at tmp_path."""
    for key in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CLOUDVM_HOME", str(tmp_path / "cloudvm-home"))
    return tmp_path / "cloudvm-home"
