"""cloudvm package."""

__all__ = [
    "boot",
    "cli",
    "cloud_init",
    "config",
    "constants",
    "environment",
    "exceptions",
    "host",
    "images",
    "launcher",
    "lifecycle",
    "models",
    "network",
    "registry",
    "utils",
]
