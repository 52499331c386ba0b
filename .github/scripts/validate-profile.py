#!/usr/bin/env python3
"""Validate workload profiles: schema correctness and image URL reachability."""

from __future__ import annotations

import re
import sys
from pathlib import Path

import requests
import yaml

PROFILES_DIR = Path(__file__).resolve().parents[2] / "astrovps" / "profiles"
VALID_KINDS = {"text", "binary"}
VALID_DIRECTIONS = {"push", "pull", "both"}
URL_RE = re.compile(r"^https?://")
REQUEST_TIMEOUT = 30
USER_AGENT = "astroneer-vps/profile-validator (GitHub Actions)"

REQUIRED = {
    "workload": ("name", "install_dir", "process", "log_file"),
    "workload.installer": ("script", "remote_path"),
    "workload.supervisor": ("process", "executable"),
    "images.driver": ("filename",),
    "images.base": ("filename",),
    "images.media": ("template",),
}


def load_profile(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


def _section(data: dict, dotted: str):
    node = data
    for part in dotted.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(name: str, data: dict) -> list[str]:
    errors: list[str] = []
    if not isinstance(data, dict):
        return [f"[{name}] profile must be a mapping"]

    for section, fields in REQUIRED.items():
        node = _section(data, section)
        if not isinstance(node, dict):
            errors.append(f"[{name}] missing section '{section}'")
            continue
        for field in fields:
            if not node.get(field):
                errors.append(f"[{name}] {section}.{field} is required")

    packages = _section(data, "host.packages")
    if not isinstance(packages, list) or not packages:
        errors.append(f"[{name}] host.packages must be a non-empty list")

    for key in ("url", "download_page"):
        for image in ("driver", "base"):
            value = _section(data, f"images.{image}.{key}")
            if value is not None and not URL_RE.match(str(value)):
                errors.append(f"[{name}] images.{image}.{key} must start with http:// or https://")

    seen: set[str] = set()
    for index, entry in enumerate(data.get("sync") or []):
        where = f"[{name}] sync[{index}]"
        if not isinstance(entry, dict):
            errors.append(f"{where} entry is not a mapping")
            continue
        for field in ("name", "host_dir", "remote_path"):
            if not entry.get(field):
                errors.append(f"{where} missing required field '{field}'")
        if entry.get("name") in seen:
            errors.append(f"{where} duplicate target name '{entry['name']}'")
        seen.add(entry.get("name"))
        if entry.get("kind", "binary") not in VALID_KINDS:
            errors.append(f"{where} 'kind' must be one of {VALID_KINDS}")
        if entry.get("direction", "both") not in VALID_DIRECTIONS:
            errors.append(f"{where} 'direction' must be one of {VALID_DIRECTIONS}")

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
        # Some servers reject HEAD; fall back to GET with streaming
        if resp.status_code in (403, 405):
            resp = session.get(url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{key}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"


def validate_urls(name: str, data: dict) -> list[str]:
    errors: list[str] = []
    for dotted in ("images.driver.url", "images.base.download_page"):
        url = _section(data, dotted)
        if not url:
            continue
        err = check_url(f"{name}:{dotted}", url)
        if err:
            errors.append(err)
    return errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    paths = sorted(PROFILES_DIR.glob("*.yaml"))
    if not paths:
        print(f"No profiles found in {PROFILES_DIR}")
        return 1
    profiles = {}
    for path in paths:
        print(f"Loading {path}")
        profiles[path.stem] = load_profile(path)

    print("\n=== Phase 1: Schema validation ===")
    schema_errors = [e for name, data in profiles.items() for e in validate_schema(name, data)]
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    print(f"  OK: {len(profiles)} profile(s), all schemas valid")

    print("\n=== Phase 2: URL reachability ===")
    url_errors = [e for name, data in profiles.items() for e in validate_urls(name, data)]
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)} unreachable")
        return 1
    print("  OK: all image URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
