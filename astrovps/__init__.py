"""astroneer-vps package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "host",
    "locks",
    "media",
    "models",
    "network",
    "provision",
    "remote",
    "runner",
    "services",
    "status",
    "sync",
    "utils",
    "vm",
]
