"""Utility functions for cloudvm."""

from __future__ import annotations

import os
import random
import re
import secrets
import string
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from cloudvm.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    MAC_ADDRESS_RE,
    MAC_PREFIX,
    NAME_ADJECTIVES,
    NAME_NOUNS,
    PASSWORD_LENGTH,
)
from cloudvm.exceptions import ConfigError, DownloadFailed, ManagerError

_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw))
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigError(f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')")
    return raw.upper()


def format_size(num_bytes: Optional[int]) -> str:
    """Render a byte count the way `du -h` would (1 decimal, binary units)."""
    if num_bytes is None:
        return "-"
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "cloudvm/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise DownloadFailed(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise DownloadFailed(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with response, tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=".partial-") as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)

                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)  # newline after progress
            tmp.flush()
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    if total_bytes is not None and downloaded != total_bytes:
        tmp_path.unlink(missing_ok=True)
        raise DownloadFailed(f"Truncated download of {url}: got {downloaded} of {total_bytes} bytes")
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def random_mac() -> str:
    """Generate a locally-administered MAC address with the qemu vendor prefix."""
    octets = list(MAC_PREFIX)
    octets += [random.randint(0x00, 0xFF) for _ in range(3)]
    return ":".join(f"{octet:02x}" for octet in octets)


def derive_ip_from_mac(mac: str, subnet_base: str) -> str:
    """Map the last MAC octet onto a host address in [10, 254] of ``subnet_base``.

    Octets below 10 are shifted up by 10 and 255 becomes 254, keeping clear of
    the network, gateway and broadcast addresses.
    """
    normalized = mac.strip().lower()
    if not MAC_ADDRESS_RE.match(normalized):
        raise ManagerError(f"Invalid MAC address '{mac}'")
    octet = int(normalized.rsplit(":", 1)[1], 16)
    if octet < 10:
        octet += 10
    elif octet == 255:
        octet = 254
    return f"{subnet_base.rstrip('.')}.{octet}"


def generate_name() -> str:
    """Return ``<adjective>-<noun>-<n>``; callers must check for collisions."""
    return f"{random.choice(NAME_ADJECTIVES)}-{random.choice(NAME_NOUNS)}-{random.randint(0, 99)}"


def sanitize_name(value: str) -> str:
    name = re.sub(r"[^a-z0-9-]", "-", value.lower())
    name = re.sub(r"-{2,}", "-", name)
    return name.strip("-")


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def check_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
