"""Global constants and built-in defaults for cloudvm."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_HOME = Path.home() / ".cloudvm"
CONFIG_FILE_NAME = "config.yaml"
IMAGES_SUBDIR = "images"
VMS_SUBDIR = "vms"
SSH_KEY_FILE_NAME = "ssh_key"

# Per-VM artifact layout
RECORD_FILE_NAME = "vm-info.json"
DISK_FILE_NAME = "disk.qcow2"
EFI_VARS_FILE_NAME = "efi-vars.fd"
CLOUD_INIT_ISO_NAME = "cloud-init.iso"
CONSOLE_LOG_NAME = "console.log"
PID_FILE_NAME = "vm.pid"
MONITOR_SOCKET_NAME = "monitor.sock"
CONSOLE_SOCKET_NAME = "console.sock"
FIRST_BOOT_SENTINEL_NAME = ".first_boot_complete"
START_LOCK_NAME = ".start.lock"

DEFAULT_IMAGES = {
    "debian12": "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-arm64.qcow2",
    "debian13": "https://cloud.debian.org/images/cloud/trixie/latest/debian-13-generic-arm64.qcow2",
    "ubuntu22": "https://cloud-images.ubuntu.com/releases/22.04/release/ubuntu-22.04-server-cloudimg-arm64.img",
    "ubuntu24": "https://cloud-images.ubuntu.com/releases/24.04/release/ubuntu-24.04-server-cloudimg-arm64.img",
}
DEFAULT_IMAGE = "debian12"
DEFAULT_USER = "user01"
DEFAULT_MEMORY_MB = 4096
DEFAULT_CPUS = 4
DEFAULT_DISK_SIZE = "20G"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_SUBNET_BASE = "192.168.105"
DEFAULT_PACKAGES = [
    "openssh-server",
    "sudo",
    "curl",
    "wget",
    "vim",
    "net-tools",
    "htop",
    "avahi-daemon",
    "avahi-utils",
]

NAME_ADJECTIVES = ("fast", "quick", "smart", "bright", "cool", "swift", "agile", "sharp", "clever", "rapid")
NAME_NOUNS = ("vm", "box", "node", "server", "instance", "machine", "host", "system", "unit", "engine")
NAME_ATTEMPTS = 10

PASSWORD_LENGTH = 12
MAC_PREFIX = (0x52, 0x54, 0x00)  # qemu prefix

CIDATA_LABEL = "cidata"
USER_DATA_NAME = "user-data"
META_DATA_NAME = "meta-data"

# QEMU
DEFAULT_QEMU_BINARY = "qemu-system-aarch64"
DEFAULT_MACHINE = "virt,highmem=on"
FIRMWARE_CODE_NAME = "edk2-aarch64-code.fd"
FIRMWARE_VARS_NAME = "edk2-aarch64-vars.fd"
FIRMWARE_VARS_SIZE = 64 * 1024 * 1024
SUPPORTED_ACCELS = {"hvf", "kvm", "tcg"}

# Networking
NETWORK_MODES = {"socket_vmnet", "user"}
DEFAULT_NETWORK_MODE = "socket_vmnet"
DEFAULT_BREW_PREFIX = Path("/opt/homebrew")
SOCKET_VMNET_PROCESS = "socket_vmnet"

# Boot detection
LOGIN_MARKER = "login:"
DEFAULT_BOOT_ATTEMPTS = 120
DEFAULT_BOOT_INTERVAL = 1.0
TAIL_LINES = 20

# Shutdown
MONITOR_POWERDOWN = "system_powerdown"
DEFAULT_SHUTDOWN_WAIT = 30.0
DEFAULT_TERM_WAIT = 2.0
SHUTDOWN_POLL_INTERVAL = 1.0
SSH_SHUTDOWN_COMMANDS = (
    "sudo systemctl poweroff",
    "sudo shutdown -h now",
    "sudo poweroff",
    "sudo halt",
)
SSH_KEY_CANDIDATES = ("id_ed25519", "id_rsa", "id_ecdsa", "vm_key")

PURGE_PHRASE = "DELETE ALL"

TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
CHECKSUM_RE = re.compile(r"^sha256:[0-9a-f]{64}$")

_LOG_VERBOSE = os.environ.get("CLOUDVM_LOG_VERBOSE", "").lower() in TRUTHY

_SENSITIVE_FIELDS = {"password"}
