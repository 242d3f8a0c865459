"""Data models for cloudvm."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from cloudvm.constants import (
    CLOUD_INIT_ISO_NAME,
    CONSOLE_LOG_NAME,
    CONSOLE_SOCKET_NAME,
    DISK_FILE_NAME,
    EFI_VARS_FILE_NAME,
    FIRST_BOOT_SENTINEL_NAME,
    MONITOR_SOCKET_NAME,
    PID_FILE_NAME,
    RECORD_FILE_NAME,
    START_LOCK_NAME,
)


class BootState(Enum):
    BOOTING = "booting"
    READY = "ready"
    FAILED = "failed"
    TIMEOUT = "timeout"


class VMState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ORPHANED = "orphaned"


class DiskUsage(NamedTuple):
    virtual_bytes: Optional[int]
    actual_bytes: Optional[int]


class InstanceConfig(NamedTuple):
    user_data: str
    meta_data: str


@dataclass
class BaseImage:
    identifier: str
    path: Path
    size_bytes: Optional[int] = None


@dataclass
class VMRecord:
    name: str
    image: str
    username: str
    password: str
    mac: str
    memory_mb: int
    cpus: int
    disk_size: str
    created: str

    def to_dict(self) -> Dict[str, str]:
        # Every value is a string so line-oriented tools can grep the file.
        return {
            "name": self.name,
            "image": self.image,
            "username": self.username,
            "password": self.password,
            "mac": self.mac,
            "memory": str(self.memory_mb),
            "cpus": str(self.cpus),
            "disk_size": self.disk_size,
            "created": self.created,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "VMRecord":
        return cls(
            name=str(data["name"]),
            image=str(data["image"]),
            username=str(data["username"]),
            password=str(data["password"]),
            mac=str(data["mac"]).lower(),
            memory_mb=int(str(data["memory"])),
            cpus=int(str(data["cpus"])),
            disk_size=str(data["disk_size"]),
            created=str(data["created"]),
        )


@dataclass
class PidFile:
    """Pid of the detached hypervisor, as recorded in ``vm.pid``."""

    path: Path
    pid: Optional[int] = None
    validated_at: Optional[float] = None

    def read(self) -> Optional[int]:
        try:
            raw = self.path.read_text().strip()
        except OSError:
            self.pid = None
            return None
        self.pid = int(raw) if raw.isdigit() else None
        return self.pid

    def write(self, pid: int) -> None:
        self.path.write_text(f"{pid}\n")
        self.pid = pid
        self.validated_at = time.time()

    def mark_validated(self) -> None:
        self.validated_at = time.time()

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)
        self.pid = None
        self.validated_at = None


@dataclass
class FirstBootSentinel:
    """Marker that the guest completed one boot with the cloud-init volume attached."""

    path: Path

    def exists(self) -> bool:
        return self.path.exists()

    def mark(self) -> None:
        self.path.touch(exist_ok=True)


@dataclass
class VMPaths:
    root: Path

    @property
    def record(self) -> Path:
        return self.root / RECORD_FILE_NAME

    @property
    def disk(self) -> Path:
        return self.root / DISK_FILE_NAME

    @property
    def efi_vars(self) -> Path:
        return self.root / EFI_VARS_FILE_NAME

    @property
    def cloud_init_iso(self) -> Path:
        return self.root / CLOUD_INIT_ISO_NAME

    @property
    def console_log(self) -> Path:
        return self.root / CONSOLE_LOG_NAME

    @property
    def monitor_socket(self) -> Path:
        return self.root / MONITOR_SOCKET_NAME

    @property
    def console_socket(self) -> Path:
        return self.root / CONSOLE_SOCKET_NAME

    @property
    def start_lock(self) -> Path:
        return self.root / START_LOCK_NAME

    def pid_file(self) -> PidFile:
        return PidFile(self.root / PID_FILE_NAME)

    def first_boot(self) -> FirstBootSentinel:
        return FirstBootSentinel(self.root / FIRST_BOOT_SENTINEL_NAME)


@dataclass
class NetworkBackend:
    mode: str
    socket_path: Optional[Path] = None
    client_path: Optional[Path] = None

    def wrap(self, argv: List[str]) -> List[str]:
        """Prefix the hypervisor argv with the backend client, if any."""
        if self.mode == "socket_vmnet":
            return [str(self.client_path), str(self.socket_path)] + argv
        return argv

    def netdev_args(self, mac: str) -> List[str]:
        if self.mode == "socket_vmnet":
            netdev = "socket,id=net0,fd=3"
        else:
            netdev = "user,id=net0"
        return ["-netdev", netdev, "-device", f"virtio-net-device,netdev=net0,mac={mac}"]


@dataclass
class BootResult:
    state: BootState
    address: str = ""
    tail: List[str] = field(default_factory=list)


@dataclass
class RunningHandle:
    name: str
    pid: Optional[int]
    mac: str
    log_path: Path
    address: str = ""
    already_running: bool = False


@dataclass
class VMStatus:
    record: VMRecord
    state: VMState
    pid: Optional[int]
    address: str
    log_path: Path
    disk: DiskUsage
    orphan_pids: List[int] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.state is not VMState.STOPPED


@dataclass
class StopResult:
    name: str
    was_running: bool
    strategy: Optional[str] = None
    orphans_stopped: List[int] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.was_running and not self.orphans_stopped:
            return f"VM '{self.name}' is not running"
        if not self.was_running:
            return f"Stopped {len(self.orphans_stopped)} orphaned process(es) for VM '{self.name}'"
        return f"VM '{self.name}' stopped ({self.strategy})"

