"""Start/stop/status/delete orchestration for cloudvm VMs."""

from __future__ import annotations

import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from cloudvm.config import Settings
from cloudvm.constants import MONITOR_POWERDOWN, PURGE_PHRASE, SSH_KEY_CANDIDATES, SSH_SHUTDOWN_COMMANDS
from cloudvm.exceptions import (
    ConfirmationRequired,
    ManagerError,
    NotFound,
    NotRunning,
    ShutdownEscalationExhausted,
)
from cloudvm.images import ImageStore
from cloudvm.launcher import VMLauncher, terminate_process, wait_for_exit
from cloudvm.models import RunningHandle, StopResult, VMPaths, VMRecord, VMState, VMStatus
from cloudvm.network import expected_address
from cloudvm.registry import Registry
from cloudvm.utils import has_controlling_tty, log


@dataclass
class ShutdownTarget:
    record: VMRecord
    paths: VMPaths
    pid: int


class ShutdownStrategy:
    """One tier of the shutdown escalation.

    ``attempt`` returns True when the request was delivered; the controller
    then waits ``wait`` seconds for the process to exit before escalating.
    """

    name = "base"

    def __init__(self, wait: float) -> None:
        self.wait = wait

    def attempt(self, target: ShutdownTarget) -> bool:
        raise NotImplementedError


class MonitorPowerdown(ShutdownStrategy):
    name = "monitor powerdown"

    def __init__(self, env, wait: float) -> None:
        super().__init__(wait)
        self.env = env

    def attempt(self, target: ShutdownTarget) -> bool:
        return self.env.send_control_command(target.paths.monitor_socket, MONITOR_POWERDOWN)


class SshPoweroff(ShutdownStrategy):
    name = "ssh poweroff"

    def __init__(
        self,
        env,
        wait: float,
        key_resolver: Callable[[], Optional[Path]],
        address_resolver: Callable[[VMRecord], str],
    ) -> None:
        super().__init__(wait)
        self.env = env
        self.key_resolver = key_resolver
        self.address_resolver = address_resolver

    def attempt(self, target: ShutdownTarget) -> bool:
        key = self.key_resolver()
        if key is None:
            log("DEBUG", "No SSH key configured; skipping SSH shutdown")
            return False
        address = self.address_resolver(target.record)
        if not address:
            log("DEBUG", "Guest address unknown; skipping SSH shutdown")
            return False
        for command in SSH_SHUTDOWN_COMMANDS:
            if self.env.ssh_command(target.record.username, address, key, command):
                log("DEBUG", f"Sent '{command}' to {address}")
                return True
        return False


class SignalTerminate(ShutdownStrategy):
    name = "signal"

    def __init__(self, env, wait: float, sleep: Callable[[float], None] = time.sleep) -> None:
        super().__init__(wait)
        self.env = env
        self._sleep = sleep

    def attempt(self, target: ShutdownTarget) -> bool:
        return terminate_process(self.env, target.pid, self.wait, self._sleep)


def resolve_ssh_key(
    settings: Settings,
    ssh_dir: Optional[Path] = None,
    interactive: Callable[[], bool] = has_controlling_tty,
    prompt: Callable[[str], str] = input,
) -> Optional[Path]:
    """Saved key path, then common keys in ``~/.ssh``, then ask (TTY only)."""
    saved_file = settings.ssh_key_file
    if saved_file.exists():
        saved = Path(saved_file.read_text().strip()).expanduser()
        if saved.exists():
            return saved
        log("WARN", f"Saved SSH key {saved} no longer exists")

    ssh_dir = ssh_dir or Path.home() / ".ssh"
    for candidate in SSH_KEY_CANDIDATES:
        path = ssh_dir / candidate
        if path.exists():
            return path

    if not interactive():
        return None
    answer = prompt("Path to an SSH private key for guest shutdown (blank to skip): ").strip()
    if not answer:
        return None
    key = Path(answer).expanduser()
    if not key.exists():
        log("WARN", f"SSH key {key} not found")
        return None
    saved_file.parent.mkdir(parents=True, exist_ok=True)
    saved_file.write_text(f"{key}\n")
    log("INFO", f"Saved SSH key path to {saved_file}")
    return key


def _vm_state(pid: Optional[int], orphans: List[int]) -> VMState:
    if pid:
        return VMState.RUNNING
    if orphans:
        return VMState.ORPHANED
    return VMState.STOPPED


class LifecycleController:
    def __init__(
        self,
        settings: Settings,
        env,
        launcher: Optional[VMLauncher] = None,
        sleep: Callable[[float], None] = time.sleep,
        interactive: Callable[[], bool] = has_controlling_tty,
        prompt: Callable[[str], str] = input,
        ssh_dir: Optional[Path] = None,
    ) -> None:
        self.settings = settings
        self.env = env
        self.registry = Registry(settings)
        self.images = ImageStore(settings, env)
        self.launcher = launcher or VMLauncher(settings, env, self.registry, self.images, sleep=sleep)
        self._sleep = sleep
        self._interactive = interactive
        self._prompt = prompt
        self._ssh_dir = ssh_dir
        self.strategies: Sequence[ShutdownStrategy] = (
            MonitorPowerdown(env, settings.shutdown_wait),
            SshPoweroff(env, settings.shutdown_wait, self._ssh_key, self.resolve_address),
            SignalTerminate(env, settings.term_wait, sleep),
        )

    # -- helpers ---------------------------------------------------------

    def _ssh_key(self) -> Optional[Path]:
        return resolve_ssh_key(self.settings, self._ssh_dir, self._interactive, self._prompt)

    def _live_pid(self, paths: VMPaths, remove_stale: bool = True) -> Optional[int]:
        pid_file = paths.pid_file()
        pid = pid_file.read()
        if pid is None:
            return None
        if self.env.probe_alive(pid):
            pid_file.mark_validated()
            return pid
        if remove_stale:
            log("DEBUG", f"Removing stale pid file {pid_file.path} (PID {pid})")
            pid_file.remove()
        return None

    def resolve_address(self, record: VMRecord) -> str:
        address = self.env.resolve_mdns(f"{record.name}.local")
        if address:
            return address
        return self.env.arp_lookup(record.mac)

    def orphan_pattern(self, name: str) -> str:
        binary = re.escape(self.settings.qemu_binary)
        return rf"{binary}\s.*-name\s+{re.escape(name)}(\s|$)"

    def find_orphans(self, name: str, tracked_pid: Optional[int]) -> List[int]:
        try:
            pids = self.env.find_processes(self.orphan_pattern(name))
        except (OSError, ManagerError) as exc:
            log("WARN", f"Orphan scan for '{name}' failed: {exc}")
            return []
        return [pid for pid in pids if pid != tracked_pid]

    def reconcile_orphans(self, name: str, tracked_pid: Optional[int]) -> List[int]:
        stopped: List[int] = []
        for pid in self.find_orphans(name, tracked_pid):
            log("WARN", f"Stopping orphaned hypervisor for '{name}' (PID {pid})")
            try:
                if terminate_process(self.env, pid, self.settings.term_wait, self._sleep):
                    stopped.append(pid)
            except (OSError, ManagerError) as exc:
                log("WARN", f"Could not stop orphan PID {pid}: {exc}")
        return stopped

    def _confirm(self, question: str) -> Optional[str]:
        if not self._interactive():
            return None
        return self._prompt(question)

    # -- operations ------------------------------------------------------

    def create(
        self,
        name: Optional[str] = None,
        image: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Tuple[VMRecord, RunningHandle]:
        record = self.launcher.create_vm(name, image, username, password, start=False)
        return record, self.launcher.start_vm(record)

    def start(self, name: str) -> RunningHandle:
        return self.launcher.start_vm(self.registry.load(name))

    def list_vms(self) -> List[VMStatus]:
        statuses: List[VMStatus] = []
        for record in self.registry.list_records():
            paths = self.registry.paths(record.name)
            pid = self._live_pid(paths, remove_stale=False)
            orphans = [] if pid else self.find_orphans(record.name, None)
            state = _vm_state(pid, orphans)
            statuses.append(
                VMStatus(
                    record=record,
                    state=state,
                    pid=pid,
                    address=self.resolve_address(record) if state is not VMState.STOPPED else "",
                    log_path=paths.console_log,
                    disk=self.env.disk_info(paths.disk),
                    orphan_pids=orphans,
                )
            )
        return statuses

    def status(self, name: str) -> VMStatus:
        record = self.registry.load(name)
        paths = self.registry.paths(name)
        pid = self._live_pid(paths)
        orphans = self.find_orphans(name, pid)
        state = _vm_state(pid, orphans)
        if state is VMState.ORPHANED:
            log("WARN", f"VM '{name}' has no pid file but hypervisor process(es) {orphans} are running")
        return VMStatus(
            record=record,
            state=state,
            pid=pid,
            address=self.resolve_address(record) if state is not VMState.STOPPED else "",
            log_path=paths.console_log,
            disk=self.env.disk_info(paths.disk),
            orphan_pids=orphans,
        )

    def stop(self, name: str) -> StopResult:
        record = self.registry.load(name)
        paths = self.registry.paths(name)
        pid = self._live_pid(paths)
        if pid is None:
            orphans = self.reconcile_orphans(name, None)
            result = StopResult(name=name, was_running=False, orphans_stopped=orphans)
            log("INFO", result.message)
            return result

        target = ShutdownTarget(record=record, paths=paths, pid=pid)
        used: Optional[str] = None
        attempted: Optional[str] = None
        try:
            for strategy in self.strategies:
                log("INFO", f"Stopping '{name}' via {strategy.name}...")
                try:
                    started = strategy.attempt(target)
                except (OSError, ManagerError) as exc:
                    log("WARN", f"{strategy.name} failed: {exc}")
                    started = False
                if not started:
                    continue
                attempted = strategy.name
                if wait_for_exit(self.env, pid, strategy.wait, self._sleep):
                    used = strategy.name
                    break
                log("WARN", f"VM '{name}' still running after {strategy.name}")
        finally:
            paths.pid_file().remove()
            orphans = self.reconcile_orphans(name, pid)

        if used is None:
            if self.env.probe_alive(pid):
                raise ShutdownEscalationExhausted(f"PID {pid} for VM '{name}' survived every shutdown strategy")
            used = attempted or "exited"
        result = StopResult(name=name, was_running=True, strategy=used, orphans_stopped=orphans)
        log("SUCCESS", result.message)
        return result

    def delete(self, name: str, confirm: Optional[bool] = None) -> bool:
        if not self.registry.exists(name):
            raise NotFound(f"VM '{name}' not found")
        if confirm is None:
            answer = self._confirm(f"Delete VM '{name}' and all its data? [y/N] ")
            if answer is None:
                raise ConfirmationRequired(f"Refusing to delete '{name}' without confirmation (use --yes)")
            confirm = answer.strip().lower() in ("y", "yes")
        if not confirm:
            log("INFO", "Deletion cancelled")
            return False

        if self.registry.paths(name).record.exists():
            self.stop(name)
        self.registry.remove(name)
        log("SUCCESS", f"VM '{name}' deleted")
        return True

    def purge(self, confirmation: Optional[str] = None) -> bool:
        if confirmation is None:
            confirmation = self._confirm(
                f"This deletes ALL VMs and base images. Type '{PURGE_PHRASE}' to continue: "
            )
            if confirmation is None:
                raise ConfirmationRequired(f"Purge requires the phrase '{PURGE_PHRASE}' (use --confirm)")
        if confirmation.strip() != PURGE_PHRASE:
            log("INFO", "Purge cancelled")
            return False

        for record in self.registry.list_records():
            try:
                self.stop(record.name)
            except ShutdownEscalationExhausted as exc:
                log("WARN", str(exc))
        if self.settings.vms_dir.exists():
            shutil.rmtree(self.settings.vms_dir)
        self.images.purge_all()
        log("SUCCESS", "All VMs and base images removed")
        return True

    def ip(self, name: str) -> str:
        record = self.registry.load(name)
        if self._live_pid(self.registry.paths(name)) is None:
            raise NotRunning(f"VM '{name}' is not running")
        address = self.resolve_address(record)
        if not address and self.settings.network_mode == "socket_vmnet":
            address = expected_address(self.settings, record.mac)
        if not address:
            raise ManagerError(f"Could not determine an address for '{name}'")
        return address

    def console(self, name: str) -> int:
        """Attach the terminal to the serial console of a running VM."""
        self.registry.load(name)
        paths = self.registry.paths(name)
        if self._live_pid(paths) is None:
            raise NotRunning(f"VM '{name}' is not running")
        if not paths.console_socket.exists():
            raise ManagerError(f"Console socket not found for VM '{name}'")
        log("INFO", f"Connecting to console for VM '{name}'")
        return self.env.attach_console(paths.console_socket)
