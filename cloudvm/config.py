"""Configuration loading and environment variable parsing for cloudvm."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from cloudvm.constants import (
    CHECKSUM_RE,
    CONFIG_FILE_NAME,
    DEFAULT_BOOT_ATTEMPTS,
    DEFAULT_BOOT_INTERVAL,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_HOME,
    DEFAULT_IMAGE,
    DEFAULT_IMAGES,
    DEFAULT_MACHINE,
    DEFAULT_MEMORY_MB,
    DEFAULT_NETWORK_MODE,
    DEFAULT_PACKAGES,
    DEFAULT_QEMU_BINARY,
    DEFAULT_SHUTDOWN_WAIT,
    DEFAULT_SUBNET_BASE,
    DEFAULT_TERM_WAIT,
    DEFAULT_TIMEZONE,
    DEFAULT_USER,
    FIRMWARE_VARS_SIZE,
    IMAGES_SUBDIR,
    NETWORK_MODES,
    SSH_KEY_FILE_NAME,
    SUPPORTED_ACCELS,
    TRUTHY,
    VMS_SUBDIR,
)
from cloudvm.exceptions import ConfigError
from cloudvm.utils import get_env, parse_int, validate_disk_size


@dataclass
class Settings:
    """Resolved configuration, built once per process and passed to every component."""

    home: Path
    images: Dict[str, str]
    default_image: str = DEFAULT_IMAGE
    default_user: str = DEFAULT_USER
    memory_mb: int = DEFAULT_MEMORY_MB
    cpus: int = DEFAULT_CPUS
    disk_size: str = DEFAULT_DISK_SIZE
    timezone: str = DEFAULT_TIMEZONE
    packages: List[str] = field(default_factory=lambda: list(DEFAULT_PACKAGES))
    network_mode: str = DEFAULT_NETWORK_MODE
    subnet_base: str = DEFAULT_SUBNET_BASE
    brew_prefix: Optional[Path] = None
    qemu_binary: str = DEFAULT_QEMU_BINARY
    machine: str = DEFAULT_MACHINE
    accel: Optional[str] = None
    firmware_code: Optional[Path] = None
    firmware_vars: Optional[Path] = None
    firmware_vars_size: int = FIRMWARE_VARS_SIZE
    boot_attempts: int = DEFAULT_BOOT_ATTEMPTS
    boot_interval: float = DEFAULT_BOOT_INTERVAL
    shutdown_wait: float = DEFAULT_SHUTDOWN_WAIT
    term_wait: float = DEFAULT_TERM_WAIT
    image_checksums: Dict[str, str] = field(default_factory=dict)
    verify_cached_images: bool = False
    lock_start: bool = False

    @property
    def images_dir(self) -> Path:
        return self.home / IMAGES_SUBDIR

    @property
    def vms_dir(self) -> Path:
        return self.home / VMS_SUBDIR

    @property
    def ssh_key_file(self) -> Path:
        return self.home / SSH_KEY_FILE_NAME


def load_config_file(config_path: Path) -> Dict[str, object]:
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a YAML mapping, got {type(data).__name__}")
    return data


def _section(data: Dict[str, object], key: str) -> Dict[str, object]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping in the config file")
    return value


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


def _as_float(name: str, value: object) -> float:
    try:
        result = float(str(value))
    except ValueError:
        raise ConfigError(f"{name} must be a number (got '{value}')")
    if result < 0:
        raise ConfigError(f"{name} must be >= 0 (got {result})")
    return result


def _optional_path(value: object) -> Optional[Path]:
    if value is None or not str(value).strip():
        return None
    return Path(str(value)).expanduser()


def load_settings(config_path: Optional[Path] = None) -> Settings:
    home_raw = get_env("CLOUDVM_HOME")
    home = Path(home_raw).expanduser() if home_raw else DEFAULT_HOME

    if config_path is None:
        config_env = get_env("CLOUDVM_CONFIG")
        config_path = Path(config_env).expanduser() if config_env else home / CONFIG_FILE_NAME
    data = load_config_file(config_path)

    images = dict(DEFAULT_IMAGES)
    for key, url in _section(data, "images").items():
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ConfigError(f"Image '{key}' must map to an http(s) URL")
        images[str(key)] = url

    checksums: Dict[str, str] = {}
    for key, value in _section(data, "image_checksums").items():
        digest = str(value).strip().lower()
        if not CHECKSUM_RE.match(digest):
            raise ConfigError(f"Checksum for image '{key}' must look like 'sha256:<64 hex chars>'")
        checksums[str(key)] = digest

    defaults = _section(data, "defaults")
    network = _section(data, "network")
    qemu = _section(data, "qemu")
    boot = _section(data, "boot")
    shutdown = _section(data, "shutdown")

    default_image = str(get_env("CLOUDVM_DEFAULT_IMAGE") or defaults.get("image") or DEFAULT_IMAGE)
    default_user = str(get_env("CLOUDVM_DEFAULT_USER") or defaults.get("user") or DEFAULT_USER)
    memory_mb = parse_int("memory", get_env("CLOUDVM_MEMORY") or defaults.get("memory", DEFAULT_MEMORY_MB), min_val=256)
    cpus = parse_int("cpus", get_env("CLOUDVM_CPUS") or defaults.get("cpus", DEFAULT_CPUS), min_val=1)
    disk_size = validate_disk_size(str(get_env("CLOUDVM_DISK_SIZE") or defaults.get("disk_size", DEFAULT_DISK_SIZE)))

    packages_raw = data.get("packages")
    if packages_raw is None:
        packages = list(DEFAULT_PACKAGES)
    elif isinstance(packages_raw, str):
        packages = packages_raw.split()
    elif isinstance(packages_raw, list):
        packages = [str(pkg) for pkg in packages_raw]
    else:
        raise ConfigError("'packages' must be a list or a space-separated string")

    network_mode = str(get_env("CLOUDVM_NETWORK_MODE") or network.get("mode") or DEFAULT_NETWORK_MODE).strip().lower()
    if network_mode not in NETWORK_MODES:
        raise ConfigError(f"Unsupported network mode '{network_mode}'. Supported: {', '.join(sorted(NETWORK_MODES))}")

    accel_raw = get_env("CLOUDVM_ACCEL") or qemu.get("accel")
    accel = str(accel_raw).strip().lower() if accel_raw else None
    if accel is not None and accel not in SUPPORTED_ACCELS:
        raise ConfigError(f"Unsupported accel '{accel}'. Supported: {', '.join(sorted(SUPPORTED_ACCELS))}")

    boot_attempts = parse_int("boot.timeout", get_env("CLOUDVM_BOOT_TIMEOUT") or boot.get("timeout", DEFAULT_BOOT_ATTEMPTS))

    return Settings(
        home=home,
        images=images,
        default_image=default_image,
        default_user=default_user,
        memory_mb=memory_mb,
        cpus=cpus,
        disk_size=disk_size,
        timezone=str(data.get("timezone") or DEFAULT_TIMEZONE),
        packages=packages,
        network_mode=network_mode,
        subnet_base=str(network.get("subnet_base") or DEFAULT_SUBNET_BASE),
        brew_prefix=_optional_path(network.get("brew_prefix")),
        qemu_binary=str(qemu.get("binary") or DEFAULT_QEMU_BINARY),
        machine=str(qemu.get("machine") or DEFAULT_MACHINE),
        accel=accel,
        firmware_code=_optional_path(qemu.get("firmware_code")),
        firmware_vars=_optional_path(qemu.get("firmware_vars")),
        boot_attempts=boot_attempts,
        boot_interval=_as_float("boot.interval", boot.get("interval", DEFAULT_BOOT_INTERVAL)),
        shutdown_wait=_as_float("shutdown.wait", shutdown.get("wait", DEFAULT_SHUTDOWN_WAIT)),
        term_wait=_as_float("shutdown.term_wait", shutdown.get("term_wait", DEFAULT_TERM_WAIT)),
        image_checksums=checksums,
        verify_cached_images=_as_bool(data.get("verify_cached_images", False)),
        lock_start=_as_bool(data.get("lock_start", False)),
    )
