"""Global constants and path configuration for astroneer-vps."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_PROFILE_PATH = PACKAGE_DIR / "profiles" / "astroneer.yaml"

# The operator's .env lives in the working directory unless overridden.
DEFAULT_ENV_PATH = Path(os.environ.get("ASTROVPS_ENV", ".env"))
ENV_EXAMPLE_NAME = ".env.example"

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
LOCK_FILE = Path("/tmp/astroneer-vps.lock")
QEMU_LOG_DIR = Path("/var/log/libvirt/qemu")
CPUINFO_PATH = Path("/proc/cpuinfo")

DEFAULT_LOG_DIR = Path.home() / ".local" / "log" / "astroneer-vps"
DEFAULT_DATA_DIR = Path.home() / "astroneer-data"
LOG_KEEP = 5

TRUTHY = {"1", "true", "yes", "on"}

# Locally administered prefix used by QEMU/KVM guests.
MAC_PREFIX = (0x52, 0x54, 0x00)
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TEMPLATE_TOKEN_RE = re.compile(r"\{\{\s*([A-Z][A-Z0-9_]*)\s*\}\}")

REQUIRED_STRING_KEYS = (
    "VM_NAME",
    "VM_IP",
    "VNC_PASSWORD",
    "WIN_USERNAME",
    "WIN_PASSWORD",
    "ASTRO_SERVER_NAME",
    "ASTRO_OWNER_NAME",
    "ASTRO_PUBLIC_IP",
    "IMAGES_DIR",
)
REQUIRED_NUMERIC_KEYS = ("VM_RAM", "VM_CPUS", "VM_DISK_SIZE", "VNC_PORT", "ASTRO_PORT")
PORT_KEYS = ("VNC_PORT", "ASTRO_PORT", "LAUNCHER_PORT")
DEFAULT_LAUNCHER_PORT = 5000
PLACEHOLDER_PASSWORD = "changeme"

# ---------- timeouts (seconds) ----------
SSH_PORT = 22
SSH_CONNECT_TIMEOUT = 5
SSH_TIMEOUT_DEFAULT = 120
SSH_TIMEOUT_START = 180
SSH_POLL_INTERVAL = 5
SETUP_SSH_TIMEOUT = 1800
SETUP_SSH_INTERVAL = 15
SHUTDOWN_TIMEOUT = 60
SHUTDOWN_POLL_INTERVAL = 3
WORKLOAD_START_TIMEOUT = 60
WORKLOAD_STOP_GRACE = 30
WORKLOAD_POLL_INTERVAL = 5
BACKGROUND_REAP_TIMEOUT = 30
LOG_TAIL_DEFAULT = 50

# ---------- retries ----------
REMOTE_RETRIES = 3
DOWNLOAD_RETRIES = 3
RETRY_INITIAL_DELAY = 5.0
RETRY_BACKOFF = 2.0

DISK_MARGIN_GB = 10
