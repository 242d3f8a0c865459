"""Network backend resolution for cloudvm."""

from __future__ import annotations

import os
from pathlib import Path

from cloudvm.config import Settings
from cloudvm.constants import DEFAULT_BREW_PREFIX, SOCKET_VMNET_PROCESS
from cloudvm.exceptions import NetworkBackendUnavailable
from cloudvm.models import NetworkBackend
from cloudvm.utils import derive_ip_from_mac, log

SOCKET_VMNET_PATTERN = rf"(^|/){SOCKET_VMNET_PROCESS}(\s|$)"

_START_HINT = (
    "  Possible fixes:\n"
    "    - Start the daemon: sudo brew services start socket_vmnet\n"
    "    - Or set network.mode: user in config.yaml (no host bridging)"
)


def resolve_brew_prefix(settings: Settings, env) -> Path:
    if settings.brew_prefix is not None:
        return settings.brew_prefix
    prefix = env.brew_prefix()
    return prefix if prefix is not None else DEFAULT_BREW_PREFIX


def socket_vmnet_paths(prefix: Path):
    """Return ``(socket_path, client_path)`` under a Homebrew prefix."""
    return (
        prefix / "var" / "run" / "socket_vmnet",
        prefix / "opt" / "socket_vmnet" / "bin" / "socket_vmnet_client",
    )


def resolve_backend(settings: Settings, env) -> NetworkBackend:
    """Pick the backend for ``settings.network_mode``; never starts a daemon."""
    if settings.network_mode == "user":
        return NetworkBackend(mode="user")

    prefix = resolve_brew_prefix(settings, env)
    socket_path, client_path = socket_vmnet_paths(prefix)

    if not env.find_processes(SOCKET_VMNET_PATTERN):
        raise NetworkBackendUnavailable(f"socket_vmnet daemon is not running.\n{_START_HINT}")
    if not socket_path.exists() or not socket_path.is_socket():
        raise NetworkBackendUnavailable(f"socket_vmnet control socket missing at {socket_path}.\n{_START_HINT}")
    if not client_path.exists() or not os.access(client_path, os.X_OK):
        raise NetworkBackendUnavailable(
            f"socket_vmnet_client not found at {client_path}. Install it with 'brew install socket_vmnet'."
        )
    log("DEBUG", f"Using socket_vmnet at {socket_path}")
    return NetworkBackend(mode="socket_vmnet", socket_path=socket_path, client_path=client_path)


def expected_address(settings: Settings, mac: str) -> str:
    return derive_ip_from_mac(mac, settings.subnet_base)
