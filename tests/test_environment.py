"""Tests for cloudvm.environment module."""

from __future__ import annotations

import os
import signal
import socket
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import psutil
import pytest

from cloudvm.environment import HostEnvironment, _normalize_mac
from cloudvm.exceptions import ManagerError, PackagingFailed


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=["cmd"], returncode=returncode, stdout=stdout, stderr=stderr)


class TestProcesses:
    def test_spawn_detached_and_tracked(self, tmp_path):
        env = HostEnvironment()
        child = MagicMock(pid=555)
        child.poll.side_effect = [None, 0]
        with patch("cloudvm.environment.subprocess.Popen", return_value=child) as mock_popen:
            pid = env.spawn_process(["qemu-system-aarch64", "-nographic"], tmp_path / "console.log")
        assert pid == 555
        kwargs = mock_popen.call_args[1]
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] is subprocess.DEVNULL
        assert kwargs["stderr"] is subprocess.STDOUT
        assert env.probe_alive(555) is True
        assert env.probe_alive(555) is False

    def test_spawn_missing_binary(self, tmp_path):
        with pytest.raises(ManagerError, match="not found"):
            HostEnvironment().spawn_process(["/nonexistent/qemu-system-aarch64"], tmp_path / "console.log")

    def test_probe_foreign_pid(self):
        env = HostEnvironment()
        assert env.probe_alive(os.getpid()) is True
        with patch("cloudvm.environment.os.kill", side_effect=ProcessLookupError):
            assert env.probe_alive(999999) is False

    def test_probe_zombie_reads_dead(self):
        process = MagicMock()
        process.status.return_value = psutil.STATUS_ZOMBIE
        with patch("cloudvm.environment.os.kill"), patch("cloudvm.environment.psutil.Process", return_value=process):
            assert HostEnvironment().probe_alive(4242) is False

    def test_send_signal_to_gone_pid(self):
        with patch("cloudvm.environment.os.kill", side_effect=ProcessLookupError):
            assert HostEnvironment().send_signal(4242, signal.SIGTERM) is False

    def test_find_processes(self):
        procs = [
            MagicMock(info={"pid": 10, "cmdline": ["qemu-system-aarch64", "-name", "web", "-nographic"]}),
            MagicMock(info={"pid": 11, "cmdline": ["qemu-system-aarch64", "-name", "web2"]}),
            MagicMock(info={"pid": 12, "cmdline": None}),
            MagicMock(info={"pid": os.getpid(), "cmdline": ["qemu-system-aarch64", "-name", "web"]}),
        ]
        with patch("cloudvm.environment.psutil.process_iter", return_value=procs):
            pids = HostEnvironment().find_processes(r"qemu-system-aarch64\s.*-name\s+web(\s|$)")
        assert pids == [10]


class TestControlChannels:
    def test_monitor_socket_missing(self, tmp_path):
        assert HostEnvironment().send_control_command(tmp_path / "monitor.sock", "system_powerdown") is False

    def test_monitor_command_delivered(self):
        directory = Path(tempfile.mkdtemp(prefix="cvm"))
        path = directory / "m.sock"
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(path))
        server.listen(1)
        try:
            assert HostEnvironment().send_control_command(path, "system_powerdown") is True
            conn, _ = server.accept()
            with conn:
                assert conn.recv(64) == b"system_powerdown\n"
        finally:
            server.close()
            path.unlink()
            directory.rmdir()

    def test_ssh_success_and_dropped_session(self, tmp_path):
        env = HostEnvironment()
        with patch("cloudvm.environment.run", return_value=_completed(0)) as mock_run:
            assert env.ssh_command("alice", "192.168.105.20", tmp_path / "key", "sudo poweroff") is True
        cmd = mock_run.call_args[0][0]
        assert cmd[0] == "ssh"
        assert "BatchMode=yes" in cmd
        assert cmd[-2:] == ["alice@192.168.105.20", "sudo poweroff"]

        dropped = _completed(255, stderr="Connection to 192.168.105.20 closed by remote host.")
        with patch("cloudvm.environment.run", return_value=dropped):
            assert env.ssh_command("alice", "192.168.105.20", tmp_path / "key", "sudo poweroff") is True
        with patch("cloudvm.environment.run", return_value=_completed(255, stderr="Permission denied")):
            assert env.ssh_command("alice", "192.168.105.20", tmp_path / "key", "sudo poweroff") is False


class TestLookups:
    def test_normalize_mac(self):
        assert _normalize_mac("52:54:0:a:b:c") == "52:54:00:0a:0b:0c"

    def test_arp_lookup(self):
        table = (
            "? (192.168.105.1) at 3e:22:fb:0:0:64 on bridge100 ifscope [bridge]\n"
            "? (192.168.105.33) at 52:54:0:12:34:56 on bridge100 ifscope [bridge]\n"
        )
        with patch("cloudvm.environment.run", return_value=_completed(stdout=table)):
            assert HostEnvironment().arp_lookup("52:54:00:12:34:56") == "192.168.105.33"

    def test_mdns_with_dscacheutil(self):
        output = "name: web.local\nip_address: 192.168.105.40\n"
        with patch("cloudvm.environment.shutil.which", side_effect=lambda name: "/usr/bin/dscacheutil" if name == "dscacheutil" else None), patch(
            "cloudvm.environment.run", return_value=_completed(stdout=output)
        ):
            assert HostEnvironment().resolve_mdns("web.local") == "192.168.105.40"

    def test_mdns_with_getent(self):
        output = "192.168.105.41   STREAM web.local\n"
        with patch("cloudvm.environment.shutil.which", side_effect=lambda name: "/usr/bin/getent" if name == "getent" else None), patch(
            "cloudvm.environment.run", return_value=_completed(stdout=output)
        ):
            assert HostEnvironment().resolve_mdns("web.local") == "192.168.105.41"

    def test_brew_prefix_absent(self):
        with patch("cloudvm.environment.run", side_effect=FileNotFoundError):
            assert HostEnvironment().brew_prefix() is None


class TestDisks:
    def test_resize_failure(self, tmp_path):
        error = subprocess.CalledProcessError(1, ["qemu-img"], stderr="Image is read-only")
        with patch("cloudvm.environment.run", side_effect=error):
            with pytest.raises(ManagerError, match="read-only"):
                HostEnvironment().resize_disk(tmp_path / "disk.qcow2", "20G")

    def test_disk_info(self, tmp_path):
        disk = tmp_path / "disk.qcow2"
        disk.write_bytes(b"\0" * 4096)
        with patch("cloudvm.environment.run", return_value=_completed(stdout='{"virtual-size": 21474836480}')):
            usage = HostEnvironment().disk_info(disk)
        assert usage.virtual_bytes == 21474836480
        assert usage.actual_bytes is not None

    def test_disk_info_missing(self, tmp_path):
        usage = HostEnvironment().disk_info(tmp_path / "absent.qcow2")
        assert usage.virtual_bytes is None and usage.actual_bytes is None


class TestPackageVolume:
    def test_no_iso_tool(self, tmp_path):
        env = HostEnvironment()
        env.system = "Linux"
        with patch("cloudvm.environment.shutil.which", return_value=None):
            with pytest.raises(PackagingFailed, match="No ISO builder"):
                env.package_volume(tmp_path, tmp_path / "out.iso", "cidata")

    def test_genisoimage_command(self, tmp_path):
        source = tmp_path / "cidata"
        source.mkdir()
        (source / "meta-data").write_text("m")
        (source / "user-data").write_text("u")
        output = tmp_path / "out.iso"
        env = HostEnvironment()
        env.system = "Linux"

        def fake_run(cmd, **_kwargs):
            output.write_text("iso")
            return _completed()

        which = lambda name: "/usr/bin/genisoimage" if name == "genisoimage" else None
        with patch("cloudvm.environment.shutil.which", side_effect=which), patch(
            "cloudvm.environment.run", side_effect=fake_run
        ) as mock_run:
            env.package_volume(source, output, "cidata")
        cmd = mock_run.call_args[0][0]
        assert cmd[0] == "genisoimage"
        assert cmd[cmd.index("-volid") + 1] == "cidata"
        assert "-joliet" in cmd and "-rock" in cmd
        assert cmd[-2:] == [str(source / "meta-data"), str(source / "user-data")]

    def test_hdiutil_on_darwin(self, tmp_path):
        output = tmp_path / "out.iso"
        env = HostEnvironment()
        env.system = "Darwin"

        def fake_run(cmd, **_kwargs):
            output.write_text("iso")
            return _completed()

        with patch("cloudvm.environment.shutil.which", return_value="/usr/bin/hdiutil"), patch(
            "cloudvm.environment.run", side_effect=fake_run
        ) as mock_run:
            env.package_volume(tmp_path, output, "cidata")
        cmd = mock_run.call_args[0][0]
        assert cmd[:2] == ["hdiutil", "makehybrid"]
        assert cmd[cmd.index("-default-volume-name") + 1] == "cidata"

    def test_tool_failure(self, tmp_path):
        env = HostEnvironment()
        env.system = "Linux"
        error = subprocess.CalledProcessError(2, ["xorriso"], stderr="bad volid")
        with patch("cloudvm.environment.shutil.which", return_value="/usr/bin/xorriso"), patch(
            "cloudvm.environment.run", side_effect=error
        ):
            with pytest.raises(PackagingFailed, match="bad volid"):
                env.package_volume(tmp_path, tmp_path / "out.iso", "cidata")


class TestConsole:
    def test_attach_runs_socat_and_restores_sigterm(self, tmp_path):
        proc = MagicMock()
        proc.wait.return_value = 0
        before = signal.getsignal(signal.SIGTERM)
        with patch("cloudvm.environment.subprocess.Popen", return_value=proc) as mock_popen:
            assert HostEnvironment().attach_console(tmp_path / "console.sock") == 0
        cmd = mock_popen.call_args[0][0]
        assert cmd[0] == "socat"
        assert "escape=0x1d" in cmd[1]
        assert cmd[-1] == f"UNIX-CONNECT:{tmp_path / 'console.sock'}"
        assert signal.getsignal(signal.SIGTERM) == before

    def test_interrupt_forwarded(self, tmp_path):
        proc = MagicMock()
        proc.wait.side_effect = [KeyboardInterrupt, 130]
        with patch("cloudvm.environment.subprocess.Popen", return_value=proc):
            assert HostEnvironment().attach_console(tmp_path / "console.sock") == 130
        proc.send_signal.assert_called_once_with(signal.SIGINT)

    def test_socat_missing(self, tmp_path):
        with patch("cloudvm.environment.subprocess.Popen", side_effect=FileNotFoundError):
            with pytest.raises(ManagerError, match="socat not found"):
                HostEnvironment().attach_console(tmp_path / "console.sock")
