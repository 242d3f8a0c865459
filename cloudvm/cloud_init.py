"""cloud-init NoCloud documents and the ``cidata`` volume that carries them."""

from __future__ import annotations

import shutil
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from cloudvm.constants import CIDATA_LABEL, META_DATA_NAME, USER_DATA_NAME
from cloudvm.exceptions import ManagerError, PackagingFailed
from cloudvm.models import InstanceConfig
from cloudvm.utils import check_password, log


def build_instance_config(
    vm_name: str,
    username: str,
    hashed_password: str,
    packages: Sequence[str],
    timezone: str = "UTC",
    created_at: Optional[int] = None,
) -> InstanceConfig:
    """Render user-data and meta-data for a first boot.

    Both the guest user and root receive the same password hash. The
    instance-id embeds the build timestamp so the guest never reuses a
    cached identity from an earlier volume.
    """
    user_cfg: Dict[str, object] = {
        "hostname": vm_name,
        "fqdn": f"{vm_name}.local",
        "timezone": timezone,
        "ssh_pwauth": True,
        "disable_root": False,
        "network": {
            "version": 2,
            "ethernets": {"eth0": {"dhcp4": True, "dhcp6": False}},
        },
        "users": [
            {
                "name": username,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "groups": ["sudo", "users"],
                "shell": "/bin/bash",
                "lock_passwd": False,
                "passwd": hashed_password,
            },
            {
                "name": "root",
                "lock_passwd": False,
                "passwd": hashed_password,
            },
        ],
        "packages": list(packages),
        "runcmd": [
            "systemctl enable ssh",
            "systemctl start ssh",
            "systemctl enable avahi-daemon",
            "systemctl start avahi-daemon",
            "echo 'VM is ready!' > /tmp/vm-ready",
        ],
        "final_message": f"VM {vm_name} is ready! SSH available on port 22.",
    }
    user_data = "#cloud-config\n" + yaml.safe_dump(user_cfg, sort_keys=False, default_flow_style=False)

    stamp = int(time.time()) if created_at is None else created_at
    meta_data = f"instance-id: {vm_name}-{stamp}\nlocal-hostname: {vm_name}\n"
    return InstanceConfig(user_data=user_data, meta_data=meta_data)


def password_entries(config: InstanceConfig) -> List[Dict[str, object]]:
    """Return the ``users`` entries of a rendered user-data document."""
    document = yaml.safe_load(config.user_data) or {}
    return list(document.get("users") or [])


def verify_password(config: InstanceConfig, username: str, password: str) -> bool:
    for entry in password_entries(config):
        if entry.get("name") == username:
            return check_password(password, str(entry.get("passwd", "")))
    return False


def package_instance_config(config: InstanceConfig, destination: Path, env) -> Path:
    """Stage both documents and build the ``cidata`` volume at ``destination``.

    The staging directory is removed whether or not packaging succeeds.
    """
    with tempfile.TemporaryDirectory(prefix="cloudvm-cidata-") as tmpdir:
        staging = Path(tmpdir)
        source = staging / "cidata"
        source.mkdir()
        (source / USER_DATA_NAME).write_text(config.user_data, encoding="utf-8")
        (source / META_DATA_NAME).write_text(config.meta_data, encoding="utf-8")
        output = staging / "cidata.iso"
        try:
            env.package_volume(source, output, CIDATA_LABEL)
            shutil.move(str(output), str(destination))
        except PackagingFailed:
            raise
        except (OSError, ManagerError) as exc:
            raise PackagingFailed(f"Failed to build cloud-init volume: {exc}")
    log("SUCCESS", f"Cloud-init volume written to {destination}")
    return destination
