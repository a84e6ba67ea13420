"""Reading and writing VMware .vmx descriptor files."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, Mapping

from vmbuilder.exceptions import BuildError

_LINE_RE = re.compile(r'^\s*([^#=\s][^=]*?)\s*=\s*"?(.*?)"?\s*$')


def parse_vmx(contents: str) -> Dict[str, str]:
    """Parse vmx text into an ordered key/value mapping. Comments are dropped."""
    result: Dict[str, str] = {}
    for line in contents.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        match = _LINE_RE.match(line)
        if not match:
            continue
        result[match.group(1)] = match.group(2).replace("|22", '"')
    return result


def encode_vmx(data: Mapping[str, str]) -> str:
    """Serialize *data* with keys sorted, the way VMware writes them back."""
    lines = []
    for key in sorted(data):
        value = str(data[key]).replace('"', "|22")
        lines.append(f'{key} = "{value}"')
    return "\n".join(lines) + "\n"


def read_vmx(path: Path) -> Dict[str, str]:
    try:
        return parse_vmx(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise BuildError(f"Error reading VMX file {path}: {exc}") from exc


def write_vmx(path: Path, data: Mapping[str, str]) -> None:
    try:
        path.write_text(encode_vmx(data), encoding="utf-8")
    except OSError as exc:
        raise BuildError(f"Error writing VMX file {path}: {exc}") from exc
