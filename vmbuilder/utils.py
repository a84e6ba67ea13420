"""Utility functions for vmbuilder."""

from __future__ import annotations

import hashlib
import random
import re
import socket
import subprocess
from pathlib import Path
from typing import Iterator, List, Optional

from vmbuilder.constants import _LOG_VERBOSE
from vmbuilder.exceptions import BuildError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(raw: str) -> float:
    """Parse a Go-style duration string (``"1h30m"``, ``"300ms"``) into seconds.

    A bare ``"0"`` is accepted. Negative durations are rejected.
    """
    text = raw.strip()
    if not text:
        raise ValueError("empty duration")
    if text.startswith("-"):
        raise ValueError(f"negative duration '{raw}'")
    if text.startswith("+"):
        text = text[1:]
    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART_RE.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration '{raw}'")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return total


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{seconds:g}s"


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def port_candidates(port_min: int, port_max: int, rng: random.Random) -> Iterator[int]:
    """Yield every port in ``[port_min, port_max]`` once, in random order."""
    ports = list(range(port_min, port_max + 1))
    rng.shuffle(ports)
    yield from ports


def port_is_free(port: int, host: str = "0.0.0.0") -> bool:
    """Return True if a TCP listener could bind *port* right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def detect_host_ip() -> str:
    """Best-effort address of this host as seen from the guest network."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            # No packet is sent; connect() only selects the outbound interface.
            sock.connect(("10.255.255.255", 1))
            return sock.getsockname()[0]
        except OSError:
            return "127.0.0.1"


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def run_tool(cmd: List[str], label: Optional[str] = None) -> str:
    """Run an external tool, returning stdout or raising BuildError with its output."""
    name = label or Path(cmd[0]).name
    try:
        result = run(cmd, check=False, capture_output=True)
    except OSError as exc:
        raise BuildError(f"{name} could not be executed: {exc}") from exc
    if result.returncode != 0:
        output = (result.stderr or "").strip() or (result.stdout or "").strip()
        raise BuildError(f"{name} failed (exit {result.returncode}): {output}")
    return result.stdout or ""
