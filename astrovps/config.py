"""Configuration loading and validation for astroneer-vps."""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from astrovps.constants import (
    DEFAULT_DATA_DIR,
    DEFAULT_LAUNCHER_PORT,
    DEFAULT_LOG_DIR,
    DEFAULT_PROFILE_PATH,
    ENV_EXAMPLE_NAME,
    ENV_KEY_RE,
    PLACEHOLDER_PASSWORD,
    PORT_KEYS,
    REQUIRED_NUMERIC_KEYS,
    REQUIRED_STRING_KEYS,
)
from astrovps.exceptions import ConfigInvalid, ConfigMissing
from astrovps.models import ImageSource, Settings, SyncTarget, WorkloadProfile
from astrovps.utils import log


def parse_env_text(text: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines. Comments, blank lines and ``export`` prefixes are ignored."""
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not ENV_KEY_RE.match(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        elif " #" in value:
            value = value.split(" #", 1)[0].rstrip()
        values[key] = value
    return values


def load_env_file(path: Path) -> Dict[str, str]:
    if not path.is_file():
        raise ConfigMissing(
            f"Configuration file not found: {path}",
            remediation=f"Create one from the template: cp {ENV_EXAMPLE_NAME} {path.name} && $EDITOR {path.name}",
        )
    return parse_env_text(path.read_text(encoding="utf-8"))


def _check_positive_int(key: str, raw: str, problems: List[str]) -> Optional[int]:
    try:
        value = int(raw)
    except ValueError:
        problems.append(f"{key} must be a positive integer (got: '{raw}')")
        return None
    if value <= 0:
        problems.append(f"{key} must be a positive integer (got: '{raw}')")
        return None
    return value


def collect_problems(values: Mapping[str, str]) -> List[str]:
    """Return every validation problem in ``values``; empty when the config is usable."""
    problems: List[str] = []
    missing = [key for key in REQUIRED_STRING_KEYS if not values.get(key, "").strip()]
    missing += [key for key in REQUIRED_NUMERIC_KEYS if not values.get(key, "").strip()]
    if missing:
        problems.append(f"Missing required variables: {' '.join(missing)}")

    numeric: Dict[str, int] = {}
    for key in REQUIRED_NUMERIC_KEYS + ("LAUNCHER_PORT",):
        raw = values.get(key, "").strip()
        if not raw:
            continue
        parsed = _check_positive_int(key, raw, problems)
        if parsed is not None:
            numeric[key] = parsed

    for key in PORT_KEYS:
        port = numeric.get(key)
        if port is not None and not 1 <= port <= 65535:
            problems.append(f"{key} must be 1-65535 (got: {port})")

    vm_ip = values.get("VM_IP", "").strip()
    if vm_ip:
        try:
            ipaddress.IPv4Address(vm_ip)
        except ValueError:
            problems.append(f"VM_IP must be an IPv4 address (got: '{vm_ip}')")
    return problems


def _warn_insecure(values: Mapping[str, str]) -> None:
    for key in ("WIN_PASSWORD", "VNC_PASSWORD"):
        if values.get(key) == PLACEHOLDER_PASSWORD:
            log("WARN", f"{key} is still set to '{PLACEHOLDER_PASSWORD}'; change it before setup!")
    if values.get("ASTRO_PUBLIC_IP") == "0.0.0.0":
        log("WARN", "ASTRO_PUBLIC_IP is 0.0.0.0; set it to the address players connect to")


def _path_value(values: Mapping[str, str], key: str, default: Path) -> Path:
    raw = values.get(key, "").strip()
    return Path(raw).expanduser() if raw else default


def validate(values: Mapping[str, str], source: Optional[Path] = None) -> Settings:
    problems = collect_problems(values)
    if problems:
        raise ConfigInvalid(problems, remediation=f"Fix the above errors; see {ENV_EXAMPLE_NAME} for reference.")
    _warn_insecure(values)

    profile_raw = values.get("PROFILE", "").strip()
    settings = Settings(
        vm_name=values["VM_NAME"].strip(),
        vm_ip=values["VM_IP"].strip(),
        vm_ram_mb=int(values["VM_RAM"]),
        vm_cpus=int(values["VM_CPUS"]),
        vm_disk_gb=int(values["VM_DISK_SIZE"]),
        vnc_port=int(values["VNC_PORT"]),
        vnc_password=values["VNC_PASSWORD"],
        win_username=values["WIN_USERNAME"].strip(),
        win_password=values["WIN_PASSWORD"],
        server_name=values["ASTRO_SERVER_NAME"],
        owner_name=values["ASTRO_OWNER_NAME"],
        public_ip=values["ASTRO_PUBLIC_IP"].strip(),
        astro_port=int(values["ASTRO_PORT"]),
        launcher_port=int(values.get("LAUNCHER_PORT", "").strip() or DEFAULT_LAUNCHER_PORT),
        images_dir=Path(values["IMAGES_DIR"]).expanduser(),
        data_dir=_path_value(values, "DATA_DIR", DEFAULT_DATA_DIR),
        log_dir=_path_value(values, "LOG_DIR", DEFAULT_LOG_DIR),
        network_name=values.get("NETWORK_NAME", "").strip() or "default",
        forward_interface=values.get("FORWARD_INTERFACE", "").strip() or None,
        profile_path=Path(profile_raw).expanduser() if profile_raw else None,
        source_path=source,
    )
    log("SUCCESS", "Configuration validated")
    return settings


def load_settings(path: Path) -> Settings:
    return validate(load_env_file(path), source=path)


def _require(data: Mapping[str, Any], key: str, where: str, problems: List[str]) -> Any:
    if key not in data or data[key] in (None, ""):
        problems.append(f"{where}.{key} is required")
        return None
    return data[key]


def _image_source(data: Mapping[str, Any], where: str, problems: List[str]) -> ImageSource:
    filename = _require(data, "filename", where, problems)
    return ImageSource(
        filename=str(filename or ""),
        url=data.get("url"),
        candidates=[str(c) for c in data.get("candidates", [])],
        download_page=data.get("download_page"),
    )


def load_profile(path: Optional[Path] = None) -> WorkloadProfile:
    """Load the workload profile YAML describing packages, images and remote layout."""
    if path is None:
        path = DEFAULT_PROFILE_PATH
    if not path.exists():
        raise ConfigInvalid([f"Workload profile missing: {path}"])
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigInvalid([f"Workload profile {path} contains invalid YAML: {exc}"])
    if not isinstance(data, dict):
        raise ConfigInvalid([f"Workload profile {path} must be a YAML mapping"])

    problems: List[str] = []
    workload = data.get("workload") or {}
    host = data.get("host") or {}
    images = data.get("images") or {}
    media = images.get("media") or {}
    installer = workload.get("installer") or {}
    supervisor = workload.get("supervisor") or {}

    targets: List[SyncTarget] = []
    for index, entry in enumerate(data.get("sync") or []):
        where = f"sync[{index}]"
        name = _require(entry, "name", where, problems)
        host_dir = _require(entry, "host_dir", where, problems)
        remote_path = _require(entry, "remote_path", where, problems)
        kind = entry.get("kind", "binary")
        direction = entry.get("direction", "both")
        if kind not in {"text", "binary"}:
            problems.append(f"{where}.kind must be 'text' or 'binary' (got: '{kind}')")
        if direction not in {"push", "pull", "both"}:
            problems.append(f"{where}.direction must be push, pull or both (got: '{direction}')")
        targets.append(
            SyncTarget(
                name=str(name or ""),
                host_dir=str(host_dir or ""),
                remote_path=str(remote_path or ""),
                kind=kind,
                pattern=str(entry.get("pattern", "*")),
                direction=direction,
                optional=bool(entry.get("optional", False)),
            )
        )

    profile = WorkloadProfile(
        name=str(_require(workload, "name", "workload", problems) or ""),
        os_variant=str(data.get("vm", {}).get("os_variant", "win2k22")),
        packages=[str(p) for p in host.get("packages", [])],
        driver_image=_image_source(images.get("driver") or {}, "images.driver", problems),
        base_image=_image_source(images.get("base") or {}, "images.base", problems),
        media_filename=str(media.get("filename", "autounattend.iso")),
        media_volume_id=str(media.get("volume_id", "OEMDRV")),
        media_template=str(_require(media, "template", "images.media", problems) or ""),
        installer_script=str(_require(installer, "script", "workload.installer", problems) or ""),
        installer_remote_path=str(_require(installer, "remote_path", "workload.installer", problems) or ""),
        install_dir=str(_require(workload, "install_dir", "workload", problems) or ""),
        supervisor_process=str(_require(supervisor, "process", "workload.supervisor", problems) or ""),
        supervisor_executable=str(_require(supervisor, "executable", "workload.supervisor", problems) or ""),
        workload_process=str(_require(workload, "process", "workload", problems) or ""),
        log_file=str(_require(workload, "log_file", "workload", problems) or ""),
        update_command=str(workload.get("update_command", "")),
        sync_targets=targets,
    )
    if problems:
        raise ConfigInvalid(problems, remediation=f"Fix the workload profile at {path}.")
    return profile
