"""Tests for cloudvm.network module."""

from __future__ import annotations

import shutil
import socket
import tempfile
from pathlib import Path

import pytest

from cloudvm.constants import DEFAULT_BREW_PREFIX
from cloudvm.exceptions import NetworkBackendUnavailable
from cloudvm.network import (
    SOCKET_VMNET_PATTERN,
    expected_address,
    resolve_backend,
    resolve_brew_prefix,
    socket_vmnet_paths,
)


@pytest.fixture
def brew_prefix():
    # AF_UNIX paths are length-limited, so keep the prefix short.
    prefix = Path(tempfile.mkdtemp(prefix="cvm"))
    yield prefix
    shutil.rmtree(prefix, ignore_errors=True)


def _daemon_running(fake_env) -> None:
    pid = 900
    fake_env.alive.add(pid)
    fake_env.process_table[pid] = "/opt/homebrew/opt/socket_vmnet/bin/socket_vmnet --vmnet-gateway=192.168.105.1"


def _make_socket(path: Path) -> socket.socket:
    path.parent.mkdir(parents=True, exist_ok=True)
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(str(path))
    return server


def _make_client(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexec \"$@\"\n")
    path.chmod(0o755)


class TestBrewPrefix:
    def test_configured_prefix_wins(self, settings, fake_env, tmp_path):
        settings.brew_prefix = tmp_path
        assert resolve_brew_prefix(settings, fake_env) == tmp_path
        assert fake_env.called("brew_prefix") == []

    def test_falls_back_to_default(self, settings, fake_env):
        assert resolve_brew_prefix(settings, fake_env) == DEFAULT_BREW_PREFIX

    def test_paths_layout(self):
        socket_path, client_path = socket_vmnet_paths(Path("/opt/homebrew"))
        assert socket_path == Path("/opt/homebrew/var/run/socket_vmnet")
        assert client_path == Path("/opt/homebrew/opt/socket_vmnet/bin/socket_vmnet_client")


class TestResolveBackend:
    def test_user_mode_needs_nothing(self, settings, fake_env):
        backend = resolve_backend(settings, fake_env)
        assert backend.mode == "user"
        assert fake_env.called("find_processes") == []

    def test_daemon_not_running(self, settings, fake_env, brew_prefix):
        settings.network_mode = "socket_vmnet"
        settings.brew_prefix = brew_prefix
        with pytest.raises(NetworkBackendUnavailable, match="not running"):
            resolve_backend(settings, fake_env)

    def test_socket_missing(self, settings, fake_env, brew_prefix):
        settings.network_mode = "socket_vmnet"
        settings.brew_prefix = brew_prefix
        _daemon_running(fake_env)
        with pytest.raises(NetworkBackendUnavailable, match="control socket missing"):
            resolve_backend(settings, fake_env)

    def test_regular_file_is_not_a_socket(self, settings, fake_env, brew_prefix):
        settings.network_mode = "socket_vmnet"
        settings.brew_prefix = brew_prefix
        _daemon_running(fake_env)
        socket_path, _ = socket_vmnet_paths(brew_prefix)
        socket_path.parent.mkdir(parents=True)
        socket_path.write_text("")
        with pytest.raises(NetworkBackendUnavailable, match="control socket missing"):
            resolve_backend(settings, fake_env)

    def test_client_missing(self, settings, fake_env, brew_prefix):
        settings.network_mode = "socket_vmnet"
        settings.brew_prefix = brew_prefix
        _daemon_running(fake_env)
        socket_path, _ = socket_vmnet_paths(brew_prefix)
        server = _make_socket(socket_path)
        try:
            with pytest.raises(NetworkBackendUnavailable, match="socket_vmnet_client not found"):
                resolve_backend(settings, fake_env)
        finally:
            server.close()

    def test_available(self, settings, fake_env, brew_prefix):
        settings.network_mode = "socket_vmnet"
        settings.brew_prefix = brew_prefix
        _daemon_running(fake_env)
        socket_path, client_path = socket_vmnet_paths(brew_prefix)
        server = _make_socket(socket_path)
        _make_client(client_path)
        try:
            backend = resolve_backend(settings, fake_env)
        finally:
            server.close()
        assert backend.mode == "socket_vmnet"
        assert backend.socket_path == socket_path
        assert backend.client_path == client_path
        assert fake_env.called("find_processes")[0][1] == SOCKET_VMNET_PATTERN


class TestExpectedAddress:
    def test_uses_subnet_base(self, settings):
        settings.subnet_base = "10.20.30"
        assert expected_address(settings, "52:54:00:00:00:2a") == "10.20.30.42"
