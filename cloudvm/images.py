"""Base image acquisition and cache management."""

from __future__ import annotations

import hashlib
import shutil
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from cloudvm.config import Settings
from cloudvm.exceptions import DownloadFailed, ManagerError, NotFound, UnknownImage
from cloudvm.models import BaseImage
from cloudvm.utils import ensure_directory, format_size, log


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


class ImageStore:
    """Immutable base images under ``<home>/images/<identifier>/``."""

    def __init__(self, settings: Settings, env) -> None:
        self.settings = settings
        self.env = env
        self.root = settings.images_dir

    def url_for(self, identifier: str) -> str:
        url = self.settings.images.get(identifier)
        if not url:
            available = ", ".join(sorted(self.settings.images))
            raise UnknownImage(f"Unknown image '{identifier}'. Available: {available}")
        return url

    def image_path(self, identifier: str) -> Path:
        url = self.url_for(identifier)
        filename = Path(urlparse(url).path).name or f"{identifier}.qcow2"
        return self.root / identifier / filename

    def _verify(self, identifier: str, path: Path) -> None:
        expected = self.settings.image_checksums.get(identifier)
        if not expected:
            return
        actual = sha256_of(path)
        if actual != expected:
            path.unlink(missing_ok=True)
            raise DownloadFailed(f"Checksum mismatch for '{identifier}': expected {expected}, got {actual}")
        log("DEBUG", f"Checksum verified for {identifier}")

    def ensure_base_image(self, identifier: str) -> Path:
        """Return the cached image for ``identifier``, downloading it on first use."""
        target = self.image_path(identifier)
        if target.exists():
            if self.settings.verify_cached_images:
                self._verify(identifier, target)
            log("INFO", f"Using cached image: {target}")
            return target

        ensure_directory(target.parent)
        url = self.url_for(identifier)
        try:
            self.env.download_file(url, target)
        except DownloadFailed:
            target.unlink(missing_ok=True)
            raise
        except (OSError, ManagerError) as exc:
            target.unlink(missing_ok=True)
            raise DownloadFailed(f"Failed to download {url}: {exc}")
        if not target.exists():
            raise DownloadFailed(f"Download of {url} produced no file")
        self._verify(identifier, target)
        return target

    def pull(self, identifier: str) -> Path:
        return self.ensure_base_image(identifier)

    def list_images(self) -> List[BaseImage]:
        images: List[BaseImage] = []
        if not self.root.exists():
            return images
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir():
                continue
            for candidate in sorted(entry.iterdir()):
                if candidate.is_file() and not candidate.name.startswith("."):
                    images.append(BaseImage(entry.name, candidate, candidate.stat().st_size))
        return images

    def delete(self, identifier: str) -> None:
        directory = self.root / identifier
        if not identifier or directory.resolve().parent != self.root.resolve() or not directory.exists():
            raise NotFound(f"Image '{identifier}' is not downloaded")
        shutil.rmtree(directory)
        log("SUCCESS", f"Deleted image {identifier}")

    def purge_all(self) -> int:
        images = self.list_images()
        if self.root.exists():
            shutil.rmtree(self.root)
        total = sum(image.size_bytes or 0 for image in images)
        log("INFO", f"Removed {len(images)} base image(s), {format_size(total)}")
        return len(images)
