"""Directory-backed store of VM records."""

from __future__ import annotations

import json
import shutil
import tempfile
from pathlib import Path
from typing import List

from cloudvm.config import Settings
from cloudvm.constants import RECORD_FILE_NAME
from cloudvm.exceptions import ManagerError, NotFound
from cloudvm.models import VMPaths, VMRecord
from cloudvm.utils import ensure_directory, log, sanitize_name


class Registry:
    """One directory per VM under ``<home>/vms``, holding ``vm-info.json`` and its artifacts."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.root = settings.vms_dir

    def vm_dir(self, name: str) -> Path:
        if not name or sanitize_name(name) != name:
            raise NotFound(f"VM '{name}' not found")
        return self.root / name

    def paths(self, name: str) -> VMPaths:
        return VMPaths(self.vm_dir(name))

    def exists(self, name: str) -> bool:
        try:
            return self.vm_dir(name).exists()
        except NotFound:
            return False

    def load(self, name: str) -> VMRecord:
        record_path = self.paths(name).record
        if not record_path.exists():
            raise NotFound(f"VM '{name}' not found")
        try:
            data = json.loads(record_path.read_text(encoding="utf-8"))
            return VMRecord.from_dict(data)
        except (ValueError, KeyError) as exc:
            raise ManagerError(f"Corrupt VM record {record_path}: {exc}")

    def save(self, record: VMRecord) -> Path:
        vm_dir = self.vm_dir(record.name)
        ensure_directory(vm_dir)
        target = self.paths(record.name).record
        payload = json.dumps(record.to_dict(), indent=2) + "\n"
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=vm_dir, prefix=".vm-info-", delete=False
        ) as tmp:
            tmp.write(payload)
        Path(tmp.name).replace(target)
        return target

    def list_records(self) -> List[VMRecord]:
        if not self.root.exists():
            return []
        records: List[VMRecord] = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or not (entry / RECORD_FILE_NAME).exists():
                continue
            try:
                records.append(self.load(entry.name))
            except ManagerError as exc:
                log("WARN", str(exc))
        return records

    def remove(self, name: str) -> None:
        vm_dir = self.vm_dir(name)
        if not vm_dir.exists():
            raise NotFound(f"VM '{name}' not found")
        shutil.rmtree(vm_dir)
        log("DEBUG", f"Removed {vm_dir}")
