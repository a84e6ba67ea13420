#!/usr/bin/env python3
"""Validate templates/*.yaml: builder options and ISO URL reachability."""

from __future__ import annotations

import sys
from pathlib import Path

import requests
import yaml

from vmbuilder.config import decode_config, unknown_options
from vmbuilder.exceptions import BuildError
from vmbuilder.provision import hook_from_template

ROOT = Path(__file__).resolve().parents[2]
TEMPLATES_DIR = ROOT / "templates"
REQUEST_TIMEOUT = 30
USER_AGENT = "vmbuilder/template-validator (GitHub Actions)"


def load_template(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


# ── Phase 1: Option validation (collect-all) ────────────────────────


def validate_options(name: str, data: dict) -> list[str]:
    if not isinstance(data, dict) or "builder" not in data:
        return [f"[{name}] top-level 'builder' key is missing"]

    builder = data["builder"]
    _cfg, errors = decode_config(builder)
    messages = [f"[{name}] {err}" for err in errors]
    if isinstance(builder, dict):
        messages.extend(f"[{name}] unknown option '{key}'" for key in unknown_options(builder))
    try:
        hook_from_template(data.get("provisioners"))
    except BuildError as exc:
        messages.append(f"[{name}] {exc}")
    return messages


# ── Phase 2: ISO URL reachability (collect-all) ─────────────────────


def check_url(name: str, url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        # Some servers reject HEAD; fall back to GET with streaming
        if resp.status_code in (403, 405):
            resp = session.get(
                url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True
            )
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{name}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{name}] {exc.__class__.__name__}: {exc} for {url}"


def main() -> int:
    paths = sorted(TEMPLATES_DIR.glob("*.yaml"))
    print(f"Loading {len(paths)} template(s) from {TEMPLATES_DIR}")
    templates = {path.name: load_template(path) for path in paths}

    print("\n=== Phase 1: Option validation ===")
    option_errors: list[str] = []
    for name, data in templates.items():
        option_errors.extend(validate_options(name, data))
    if option_errors:
        for e in option_errors:
            print(f"  ERROR: {e}")
        print(f"\nOption validation failed with {len(option_errors)} error(s)")
        return 1
    print(f"  OK: {len(templates)} templates valid")

    print("\n=== Phase 2: ISO URL reachability ===")
    url_errors: list[str] = []
    for name, data in templates.items():
        url = str(data["builder"].get("iso_url", ""))
        if not url.startswith(("http://", "https://")):
            continue
        err = check_url(name, url)
        if err:
            url_errors.append(err)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)} unreachable")
        return 1
    print("  OK: all ISO URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
