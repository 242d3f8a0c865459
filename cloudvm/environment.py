"""Host primitives used by cloudvm (processes, disks, sockets, lookups)."""

from __future__ import annotations

import errno
import json
import os
import platform
import re
import shutil
import signal
import socket
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

try:
    import psutil  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("psutil is required but not installed") from exc

from cloudvm.exceptions import ManagerError, PackagingFailed
from cloudvm.models import DiskUsage
from cloudvm.utils import download_file, hash_password, log, run

_ARP_LINE_RE = re.compile(r"\((?P<ip>\d{1,3}(?:\.\d{1,3}){3})\) at (?P<mac>[0-9a-fA-F:]+)")
_DSCACHE_IP_RE = re.compile(r"ip_address:\s*(?P<ip>\d{1,3}(?:\.\d{1,3}){3})")
_ISO_TOOLS = ("xorriso", "genisoimage", "mkisofs")


def _normalize_mac(mac: str) -> str:
    # arp on macOS drops leading zeros ("52:54:0:a:b:c")
    try:
        return ":".join(f"{int(part, 16):02x}" for part in mac.split(":"))
    except ValueError:
        return mac.lower()


class HostEnvironment:
    """Every side effect cloudvm has on the host goes through this object."""

    def __init__(self) -> None:
        self.system = platform.system()
        self._children: Dict[int, subprocess.Popen] = {}

    # -- files and disks -------------------------------------------------

    def download_file(self, url: str, destination: Path) -> None:
        download_file(url, destination, label="Downloading base image")

    def copy_file(self, source: Path, destination: Path) -> None:
        shutil.copyfile(source, destination)

    def resize_disk(self, path: Path, size: str) -> None:
        try:
            run(["qemu-img", "resize", str(path), size], capture_output=True)
        except FileNotFoundError:
            raise ManagerError("qemu-img not found. Install QEMU (e.g. 'brew install qemu').")
        except subprocess.CalledProcessError as exc:
            raise ManagerError(f"qemu-img resize failed for {path}: {(exc.stderr or '').strip()}")

    def disk_info(self, path: Path) -> DiskUsage:
        if not path.exists():
            return DiskUsage(None, None)
        actual: Optional[int]
        try:
            actual = path.stat().st_blocks * 512
        except (OSError, AttributeError):
            actual = None
        virtual: Optional[int] = None
        try:
            info = run(
                ["qemu-img", "info", "--force-share", "--output=json", str(path)],
                check=False,
                capture_output=True,
            )
            if info.returncode == 0:
                virtual = int(json.loads(info.stdout).get("virtual-size", 0)) or None
        except (FileNotFoundError, ValueError):
            log("DEBUG", f"Could not read virtual size of {path}")
        return DiskUsage(virtual, actual)

    def hash_password(self, password: str) -> str:
        return hash_password(password)

    def package_volume(self, source_dir: Path, output: Path, label: str) -> None:
        """Build an ISO-9660 + Joliet volume from the files in ``source_dir``."""
        if self.system == "Darwin" and shutil.which("hdiutil"):
            cmd = [
                "hdiutil", "makehybrid", "-iso", "-joliet",
                "-default-volume-name", label,
                "-o", str(output), str(source_dir),
            ]
        else:
            tool = next((name for name in _ISO_TOOLS if shutil.which(name)), None)
            if tool is None:
                raise PackagingFailed(
                    "No ISO builder found. Install one of: hdiutil (macOS), xorriso, genisoimage, mkisofs"
                )
            prefix = ["xorriso", "-as", "mkisofs"] if tool == "xorriso" else [tool]
            files = sorted(str(entry) for entry in source_dir.iterdir())
            cmd = prefix + ["-output", str(output), "-volid", label, "-joliet", "-rock"] + files
        try:
            run(cmd, capture_output=True)
        except subprocess.CalledProcessError as exc:
            output.unlink(missing_ok=True)
            raise PackagingFailed(f"{cmd[0]} failed (code {exc.returncode}): {(exc.stderr or '').strip()}")
        except OSError as exc:
            output.unlink(missing_ok=True)
            raise PackagingFailed(f"Could not run {cmd[0]}: {exc}")
        if not output.exists():
            raise PackagingFailed(f"{cmd[0]} did not produce {output}")

    # -- processes -------------------------------------------------------

    def spawn_process(self, argv: List[str], log_path: Path) -> int:
        """Start ``argv`` detached from our session with output appended to ``log_path``."""
        with open(log_path, "ab") as log_file:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError:
                raise ManagerError(f"{argv[0]} not found. Is QEMU installed?")
        self._children[proc.pid] = proc
        log("DEBUG", f"Spawned PID {proc.pid}: {' '.join(argv)}")
        return proc.pid

    def probe_alive(self, pid: int) -> bool:
        child = self._children.get(pid)
        if child is not None:
            # Our own child: poll() reaps it so a zombie reads as dead.
            return child.poll() is None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def send_signal(self, pid: int, sig: int) -> bool:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            log("WARN", f"Not permitted to signal PID {pid}: {exc}")
            return False
        return True

    def find_processes(self, pattern: str) -> List[int]:
        """Return pids whose joined command line matches the regex ``pattern``."""
        regex = re.compile(pattern)
        own = os.getpid()
        matches: List[int] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if proc.info["pid"] == own or not cmdline:
                continue
            if regex.search(" ".join(cmdline)):
                matches.append(proc.info["pid"])
        return matches

    # -- control channels ------------------------------------------------

    def send_control_command(self, socket_path: Path, command: str) -> bool:
        if not socket_path.exists():
            return False
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
                client.settimeout(2.0)
                client.connect(str(socket_path))
                client.sendall(f"{command}\n".encode("utf-8"))
        except socket.timeout:
            log("DEBUG", f"Timed out talking to {socket_path}")
            return False
        except OSError as exc:
            if exc.errno in {errno.ECONNREFUSED, errno.ENOENT}:
                log("DEBUG", f"Control socket {socket_path} is stale")
            else:
                log("DEBUG", f"Control socket {socket_path} failed: {exc}")
            return False
        return True

    def ssh_command(self, user: str, host: str, key: Path, command: str) -> bool:
        cmd = [
            "ssh",
            "-i", str(key),
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=5",
            f"{user}@{host}",
            command,
        ]
        try:
            result = run(cmd, check=False, capture_output=True, timeout=15)
        except FileNotFoundError:
            log("WARN", "ssh client not found")
            return False
        except subprocess.TimeoutExpired:
            log("DEBUG", f"ssh '{command}' timed out")
            return False
        if result.returncode == 0:
            return True
        # poweroff tears the session down under us
        return result.returncode == 255 and "closed by remote host" in (result.stderr or "")

    def attach_console(self, socket_path: Path) -> int:
        """Bridge the terminal to the guest serial socket until the user detaches."""
        cmd = ["socat", "-,raw,echo=0,escape=0x1d", f"UNIX-CONNECT:{socket_path}"]
        log("INFO", "Attaching to VM console (Ctrl+] to exit)")
        try:
            proc = subprocess.Popen(cmd)
        except FileNotFoundError:
            raise ManagerError("socat not found. Install it to use the serial console.")

        def _terminate_console(signum, frame):
            proc.terminate()

        prev_sigterm = signal.signal(signal.SIGTERM, _terminate_console)
        try:
            return proc.wait()
        except KeyboardInterrupt:
            proc.send_signal(signal.SIGINT)
            return proc.wait()
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)

    # -- lookups ---------------------------------------------------------

    def resolve_mdns(self, hostname: str) -> str:
        if shutil.which("dscacheutil"):
            cmd = ["dscacheutil", "-q", "host", "-a", "name", hostname]
        elif shutil.which("getent"):
            cmd = ["getent", "ahostsv4", hostname]
        else:
            return ""
        try:
            result = run(cmd, check=False, capture_output=True, timeout=3)
        except subprocess.TimeoutExpired:
            return ""
        if result.returncode != 0:
            return ""
        match = _DSCACHE_IP_RE.search(result.stdout)
        if match:
            return match.group("ip")
        first = result.stdout.split()
        return first[0] if first else ""

    def arp_lookup(self, mac: str) -> str:
        try:
            result = run(["arp", "-an"], check=False, capture_output=True, timeout=3)
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return ""
        wanted = _normalize_mac(mac)
        for line in result.stdout.splitlines():
            match = _ARP_LINE_RE.search(line)
            if match and _normalize_mac(match.group("mac")) == wanted:
                return match.group("ip")
        return ""

    def brew_prefix(self) -> Optional[Path]:
        try:
            result = run(["brew", "--prefix"], capture_output=True, timeout=10)
        except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired):
            return None
        prefix = result.stdout.strip()
        return Path(prefix) if prefix else None
