#!/usr/bin/env python3
"""Validate the example image catalogue: schema correctness and URL reachability."""

from __future__ import annotations

import re
import sys
from pathlib import Path

import requests
import yaml

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "cloudvm.example.yaml"
URL_RE = re.compile(r"^https?://")
CHECKSUM_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
ARM64_HINT_RE = re.compile(r"(arm64|aarch64)")
REQUEST_TIMEOUT = 30
USER_AGENT = "cloudvm/image-validator (GitHub Actions)"


def load_config(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) or {}


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(data: dict) -> list[str]:
    errors: list[str] = []

    images = data.get("images")
    if images is None:
        errors.append("Top-level 'images' key is missing")
        return errors
    if not isinstance(images, dict) or not images:
        errors.append("'images' must be a non-empty mapping")
        return errors

    for key, url in images.items():
        if not isinstance(url, str):
            errors.append(f"[{key}] URL must be a string")
        elif not URL_RE.match(url):
            errors.append(f"[{key}] URL must start with http:// or https://")
        elif not ARM64_HINT_RE.search(url):
            errors.append(f"[{key}] URL does not look like an arm64 cloud image: {url}")

    checksums = data.get("image_checksums") or {}
    if not isinstance(checksums, dict):
        errors.append("'image_checksums' must be a mapping")
        return errors
    for key, digest in checksums.items():
        if key not in images:
            errors.append(f"[{key}] checksum given for an image that is not listed")
        if not isinstance(digest, str) or not CHECKSUM_RE.match(digest):
            errors.append(f"[{key}] checksum must look like 'sha256:<64 hex chars>'")

    defaults = data.get("defaults") or {}
    default_image = defaults.get("image")
    if default_image and default_image not in images:
        errors.append(f"defaults.image '{default_image}' is not in 'images'")

    return errors


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def check_url(key: str, url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        # Some mirrors reject HEAD
        if resp.status_code in (403, 405):
            resp = session.get(url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{key}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"


def validate_urls(data: dict) -> list[str]:
    errors: list[str] = []
    for key, url in data["images"].items():
        err = check_url(key, url)
        if err:
            errors.append(err)
    return errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {CONFIG_PATH}")
    data = load_config(CONFIG_PATH)

    print("\n=== Phase 1: Schema validation ===")
    schema_errors = validate_schema(data)
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    image_count = len(data["images"])
    print(f"  OK: {image_count} images, catalogue valid")

    print("\n=== Phase 2: URL reachability ===")
    url_errors = validate_urls(data)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)}/{image_count} unreachable")
        return 1
    print(f"  OK: all {image_count} URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
