"""VM creation and hypervisor launch."""

from __future__ import annotations

import contextlib
import fcntl
import math
import shutil
import signal
import time
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from cloudvm.boot import BootDetector
from cloudvm.cloud_init import build_instance_config, package_instance_config
from cloudvm.config import Settings
from cloudvm.constants import FIRMWARE_CODE_NAME, FIRMWARE_VARS_NAME, NAME_ATTEMPTS, SHUTDOWN_POLL_INTERVAL
from cloudvm.exceptions import BootFailed, BootTimeout, InvalidName, ManagerError, NameCollision
from cloudvm.host import HostInfo, detect_host
from cloudvm.images import ImageStore
from cloudvm.models import BootState, NetworkBackend, RunningHandle, VMPaths, VMRecord
from cloudvm.network import expected_address, resolve_backend, resolve_brew_prefix
from cloudvm.registry import Registry
from cloudvm.utils import ensure_directory, generate_name, generate_password, log, random_mac, sanitize_name


def wait_for_exit(env, pid: int, timeout: float, sleep: Callable[[float], None] = time.sleep) -> bool:
    """Poll until ``pid`` has exited or ``timeout`` seconds of polling have passed."""
    polls = max(1, math.ceil(timeout / SHUTDOWN_POLL_INTERVAL))
    for _ in range(polls):
        if not env.probe_alive(pid):
            return True
        sleep(SHUTDOWN_POLL_INTERVAL)
    return not env.probe_alive(pid)


def _qemu_path(path: Path) -> str:
    # commas separate QEMU option values
    return str(path).replace(",", ",,")


def terminate_process(env, pid: int, term_wait: float, sleep: Callable[[float], None] = time.sleep) -> bool:
    """SIGTERM, wait up to ``term_wait``, then SIGKILL. Returns False if the pid was already gone."""
    if not env.send_signal(pid, signal.SIGTERM):
        return False
    if not wait_for_exit(env, pid, term_wait, sleep):
        log("WARN", f"PID {pid} ignored SIGTERM; sending SIGKILL")
        env.send_signal(pid, signal.SIGKILL)
    return True


class VMLauncher:
    """Builds per-VM artifacts and spawns the hypervisor for a record."""

    def __init__(
        self,
        settings: Settings,
        env,
        registry: Optional[Registry] = None,
        images: Optional[ImageStore] = None,
        host: Optional[HostInfo] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.env = env
        self.registry = registry or Registry(settings)
        self.images = images or ImageStore(settings, env)
        self._host = host
        self._sleep = sleep

    @property
    def host(self) -> HostInfo:
        if self._host is None:
            self._host = detect_host(self.settings.accel)
        return self._host

    # -- naming ----------------------------------------------------------

    def _claim_name(self, requested: Optional[str]) -> str:
        if requested is not None:
            name = sanitize_name(requested)
            if not name:
                raise InvalidName(f"VM name '{requested}' contains no usable characters")
            if self.registry.exists(name):
                raise NameCollision(f"VM '{name}' already exists")
            return name
        for _ in range(NAME_ATTEMPTS):
            name = generate_name()
            if not self.registry.exists(name):
                return name
        raise NameCollision(f"Could not generate a free VM name after {NAME_ATTEMPTS} attempts")

    # -- firmware --------------------------------------------------------

    def _firmware_dir(self) -> Path:
        return resolve_brew_prefix(self.settings, self.env) / "share" / "qemu"

    def firmware_code(self) -> Path:
        code = self.settings.firmware_code or self._firmware_dir() / FIRMWARE_CODE_NAME
        if not code.exists():
            raise ManagerError(f"EFI firmware not found at {code}. Install QEMU or set qemu.firmware_code.")
        return code

    def _seed_efi_vars(self, destination: Path) -> None:
        template = self.settings.firmware_vars or self._firmware_dir() / FIRMWARE_VARS_NAME
        if template.exists():
            self.env.copy_file(template, destination)
            log("DEBUG", f"EFI vars seeded from {template}")
            return
        with open(destination, "wb") as fh:
            fh.truncate(self.settings.firmware_vars_size)
        log("DEBUG", f"EFI vars zero-filled ({self.settings.firmware_vars_size} bytes)")

    # -- create ----------------------------------------------------------

    def create_vm(
        self,
        name: Optional[str] = None,
        image: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        start: bool = True,
    ) -> VMRecord:
        name = self._claim_name(name)
        image = image or self.settings.default_image
        username = username or self.settings.default_user
        paths = self.registry.paths(name)

        log("INFO", f"Creating VM '{name}' from {image}")
        try:
            password = password or generate_password()
            ensure_directory(paths.root)
            base = self.images.ensure_base_image(image)

            log("INFO", f"Preparing disk ({self.settings.disk_size})...")
            self.env.copy_file(base, paths.disk)
            self.env.resize_disk(paths.disk, self.settings.disk_size)
            self._seed_efi_vars(paths.efi_vars)

            mac = random_mac()
            config = build_instance_config(
                name,
                username,
                self.env.hash_password(password),
                self.settings.packages,
                self.settings.timezone,
            )
            package_instance_config(config, paths.cloud_init_iso, self.env)

            record = VMRecord(
                name=name,
                image=image,
                username=username,
                password=password,
                mac=mac,
                memory_mb=self.settings.memory_mb,
                cpus=self.settings.cpus,
                disk_size=self.settings.disk_size,
                created=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            )
            self.registry.save(record)
        except BaseException:
            if paths.root.exists():
                shutil.rmtree(paths.root, ignore_errors=True)
                log("WARN", f"Removed partially created VM directory {paths.root}")
            raise
        log("SUCCESS", f"VM '{name}' created (MAC {record.mac})")

        if start:
            self.start_vm(record)
        return record

    # -- start -----------------------------------------------------------

    @contextlib.contextmanager
    def _start_lock(self, paths: VMPaths) -> Iterator[None]:
        if not self.settings.lock_start:
            yield
            return
        with open(paths.start_lock, "w") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def build_qemu_command(self, record: VMRecord, paths: VMPaths, backend: NetworkBackend) -> List[str]:
        accel = self.host.accel
        cmd = [
            self.settings.qemu_binary,
            "-name", record.name,
            "-machine", self.settings.machine,
            "-cpu", "host" if accel in ("hvf", "kvm") else "max",
            "-accel", accel,
            "-smp", str(record.cpus),
            "-m", str(record.memory_mb),
            "-drive", f"if=pflash,format=raw,file={_qemu_path(self.firmware_code())},readonly=on",
            "-drive", f"if=pflash,format=raw,file={_qemu_path(paths.efi_vars)}",
            "-drive", f"file={_qemu_path(paths.disk)},format=qcow2,if=virtio",
        ]
        if not paths.first_boot().exists():
            cmd += ["-drive", f"file={_qemu_path(paths.cloud_init_iso)},media=cdrom,if=virtio,readonly=on"]
        cmd += backend.netdev_args(record.mac)
        serial = f"socket,id=serial0,path={_qemu_path(paths.console_socket)},server=on,wait=off"
        serial += f",logfile={_qemu_path(paths.console_log)},logappend=on"
        cmd += [
            "-chardev", serial,
            "-serial", "chardev:serial0",
            "-monitor", f"unix:{_qemu_path(paths.monitor_socket)},server,nowait",
            "-nographic",
        ]
        return cmd

    def start_vm(self, record: VMRecord) -> RunningHandle:
        paths = self.registry.paths(record.name)
        pid_file = paths.pid_file()

        with self._start_lock(paths):
            existing = pid_file.read()
            if existing is not None and self.env.probe_alive(existing):
                pid_file.mark_validated()
                log("INFO", f"VM '{record.name}' is already running (PID {existing})")
                return RunningHandle(
                    name=record.name,
                    pid=existing,
                    mac=record.mac,
                    log_path=paths.console_log,
                    already_running=True,
                )
            if existing is not None:
                log("DEBUG", f"Removing stale pid file for '{record.name}' (PID {existing})")
                pid_file.remove()

            backend = resolve_backend(self.settings, self.env)
            argv = backend.wrap(self.build_qemu_command(record, paths, backend))
            paths.console_log.write_text("")
            pid = self.env.spawn_process(argv, paths.console_log)
            pid_file.write(pid)
            log("INFO", f"Started VM '{record.name}' (PID {pid})")

        result = BootDetector(self.settings, self.env, sleep=self._sleep).wait(pid, paths.console_log)

        if result.state is BootState.FAILED:
            pid_file.remove()
            details = "\n".join(result.tail)
            raise BootFailed(f"VM '{record.name}' exited during boot. Log: {paths.console_log}\n{details}")
        if result.state is BootState.TIMEOUT:
            log("WARN", f"Boot timed out; terminating PID {pid}")
            terminate_process(self.env, pid, self.settings.term_wait, self._sleep)
            pid_file.remove()
            raise BootTimeout(
                f"VM '{record.name}' did not reach a login prompt after "
                f"{self.settings.boot_attempts} checks. Log: {paths.console_log}"
            )

        paths.first_boot().mark()
        address = result.address
        if not address and backend.mode == "socket_vmnet":
            address = expected_address(self.settings, record.mac)
        log("SUCCESS", f"VM '{record.name}' is ready" + (f" at {address}" if address else ""))
        return RunningHandle(
            name=record.name,
            pid=pid,
            mac=record.mac,
            log_path=paths.console_log,
            address=address,
        )
