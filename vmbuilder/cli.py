"""CLI entry points for vmbuilder."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from vmbuilder.builder import Builder
from vmbuilder.constants import _SENSITIVE_FIELDS
from vmbuilder.exceptions import BuildError, MultiError
from vmbuilder.models import BuildConfig
from vmbuilder.provision import hook_from_template
from vmbuilder.ui import ConsoleUi
from vmbuilder.utils import format_duration, log


def load_template(path: Path) -> Dict[str, Any]:
    """Load a YAML template: a ``builder`` mapping and optional ``provisioners`` list."""
    if not path.exists():
        raise BuildError(f"Template not found: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise BuildError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise BuildError(f"Template {path} must be a mapping")
    if "builder" not in data:
        raise BuildError(f"Template {path} has no 'builder' section")
    return data


def show_config(cfg: BuildConfig) -> None:
    """Print the resolved build configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS and value:
            print(f"  {field.name}: ********")
        elif field.name == "vmx_data":
            print(f"  {field.name}: {dict(value)}")
        elif field.name in {"boot_wait", "shutdown_timeout", "ssh_wait_timeout"}:
            print(f"  {field.name}: {format_duration(value)}")
        else:
            print(f"  {field.name}: {value}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build a VMware VM image from an installation ISO")
    parser.add_argument("template", type=Path, help="YAML build template")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate the template and driver, then exit")
    args = parser.parse_args(argv)

    try:
        template = load_template(args.template)
        hook = hook_from_template(template.get("provisioners"))
    except BuildError as exc:
        log("ERROR", str(exc))
        return 1

    builder = Builder()
    try:
        builder.prepare(template["builder"])
    except MultiError as exc:
        log("ERROR", "Template validation failed:")
        for err in exc.errors:
            log("ERROR", f"  * {err}")
        return 1

    assert builder.config is not None
    if args.show_config:
        show_config(builder.config)
        return 0
    if args.dry_run:
        log("SUCCESS", "Template is valid (no VM started)")
        return 0

    def _request_cancel(signum, frame):
        log("INFO", f"{signal.Signals(signum).name} received, cancelling build")
        builder.cancel()

    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    try:
        artifact = builder.run(ConsoleUi(), hook)
    finally:
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)

    if artifact is None:
        log("ERROR", "Build finished without an artifact")
        return 1
    log("SUCCESS", artifact.string())
    for path in artifact.files:
        print(f"  {path}", flush=True)
    return 0
