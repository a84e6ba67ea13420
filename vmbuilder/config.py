"""Configuration decoding, defaulting and validation for vmbuilder."""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from vmbuilder.constants import (
    DEFAULT_DISK_NAME,
    DEFAULT_DISK_SIZE_MB,
    DEFAULT_GUEST_OS_TYPE,
    DEFAULT_HTTP_PORT_MAX,
    DEFAULT_HTTP_PORT_MIN,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_WAIT_TIMEOUT,
    DEFAULT_VM_NAME,
    DEFAULT_VNC_PORT_MAX,
    DEFAULT_VNC_PORT_MIN,
    SHA256_RE,
    TRUTHY,
)
from vmbuilder.exceptions import MultiError
from vmbuilder.models import BuildConfig
from vmbuilder.utils import parse_duration

KNOWN_OPTIONS = {
    "vmdk_name",
    "guest_os_type",
    "iso_url",
    "iso_checksum",
    "vm_name",
    "output_directory",
    "http_directory",
    "http_port_min",
    "http_port_max",
    "boot_command",
    "boot_wait",
    "shutdown_command",
    "shutdown_timeout",
    "ssh_username",
    "ssh_password",
    "ssh_port",
    "ssh_wait_timeout",
    "vmx_data",
    "vnc_port_min",
    "vnc_port_max",
    "disk_size",
    "headless",
}


class _Decoder:
    """Pulls typed values out of a raw mapping, collecting errors instead of raising."""

    def __init__(self, raw: Mapping[str, Any]) -> None:
        self.raw = raw
        self.errors: List[str] = []

    def string(self, name: str, default: str = "") -> str:
        value = self.raw.get(name)
        if value is None or value == "":
            return default
        if isinstance(value, (bool, dict, list)):
            self.errors.append(f"{name} must be a string")
            return default
        return str(value)

    def integer(self, name: str, default: int) -> int:
        value = self.raw.get(name)
        if value is None or value == "" or value == 0:
            return default
        if isinstance(value, bool):
            self.errors.append(f"{name} must be an integer (got '{value}')")
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            self.errors.append(f"{name} must be an integer (got '{value}')")
            return default

    def boolean(self, name: str, default: bool = False) -> bool:
        value = self.raw.get(name)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, str)):
            return str(value).strip().lower() in TRUTHY
        self.errors.append(f"{name} must be a boolean")
        return default

    def string_list(self, name: str) -> Tuple[str, ...]:
        value = self.raw.get(name)
        if value is None:
            return ()
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            self.errors.append(f"{name} must be a list of strings")
            return ()
        return tuple(str(item) for item in value)

    def string_map(self, name: str) -> Dict[str, str]:
        value = self.raw.get(name)
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self.errors.append(f"{name} must be a mapping of strings")
            return {}
        return {str(k): _vmx_value(v) for k, v in value.items()}

    def duration(self, name: str, default: str) -> float:
        text = self.string(name) or default
        try:
            return parse_duration(text)
        except ValueError as exc:
            self.errors.append(f"Failed parsing {name}: {exc}")
            return 0.0


def _vmx_value(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


def decode_config(raw: Optional[Mapping[str, Any]]) -> Tuple[Optional[BuildConfig], List[str]]:
    """Decode *raw* options into a BuildConfig.

    Returns the config (``None`` when any error was found) and every
    validation error, so callers can merge in errors of their own before
    reporting.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        return None, ["builder configuration must be a mapping"]

    d = _Decoder(raw)

    iso_url = d.string("iso_url")
    ssh_username = d.string("ssh_username")
    http_port_min = d.integer("http_port_min", DEFAULT_HTTP_PORT_MIN)
    http_port_max = d.integer("http_port_max", DEFAULT_HTTP_PORT_MAX)
    vnc_port_min = d.integer("vnc_port_min", DEFAULT_VNC_PORT_MIN)
    vnc_port_max = d.integer("vnc_port_max", DEFAULT_VNC_PORT_MAX)
    ssh_port = d.integer("ssh_port", DEFAULT_SSH_PORT)
    disk_size = d.integer("disk_size", DEFAULT_DISK_SIZE_MB)
    iso_checksum = d.string("iso_checksum")

    boot_wait = d.duration("boot_wait", "0")
    shutdown_timeout = d.duration("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT)
    ssh_wait_timeout = d.duration("ssh_wait_timeout", DEFAULT_SSH_WAIT_TIMEOUT)

    errors = d.errors
    if http_port_min > http_port_max:
        errors.append("http_port_min must be less than http_port_max")
    if vnc_port_min > vnc_port_max:
        errors.append("vnc_port_min must be less than vnc_port_max")
    for name, port in (
        ("http_port_min", http_port_min),
        ("http_port_max", http_port_max),
        ("vnc_port_min", vnc_port_min),
        ("vnc_port_max", vnc_port_max),
        ("ssh_port", ssh_port),
    ):
        if not 1 <= port <= 65535:
            errors.append(f"{name} must be between 1 and 65535 (got {port})")
    if disk_size < 0:
        errors.append(f"disk_size must be a positive number of megabytes (got {disk_size})")
    if not iso_url:
        errors.append("An iso_url must be specified.")
    if iso_checksum and not SHA256_RE.match(iso_checksum):
        errors.append("iso_checksum must be a sha256 hex digest")
    if not ssh_username:
        errors.append("An ssh_username must be specified.")

    cfg = BuildConfig(
        iso_url=iso_url,
        ssh_username=ssh_username,
        disk_name=d.string("vmdk_name", DEFAULT_DISK_NAME),
        guest_os_type=d.string("guest_os_type", DEFAULT_GUEST_OS_TYPE),
        iso_checksum=iso_checksum.lower(),
        vm_name=d.string("vm_name", DEFAULT_VM_NAME),
        output_dir=Path(d.string("output_directory", DEFAULT_OUTPUT_DIR)),
        http_dir=d.string("http_directory"),
        http_port_min=http_port_min,
        http_port_max=http_port_max,
        boot_command=d.string_list("boot_command"),
        boot_wait=boot_wait,
        shutdown_command=d.string("shutdown_command"),
        shutdown_timeout=shutdown_timeout,
        ssh_password=d.string("ssh_password"),
        ssh_port=ssh_port,
        ssh_wait_timeout=ssh_wait_timeout,
        vmx_data=MappingProxyType(d.string_map("vmx_data")),
        vnc_port_min=vnc_port_min,
        vnc_port_max=vnc_port_max,
        disk_size=disk_size,
        headless=d.boolean("headless"),
    )
    if errors:
        return None, errors
    return cfg, []


def prepare_config(raw: Optional[Mapping[str, Any]]) -> BuildConfig:
    """Decode and validate *raw*, raising MultiError listing every problem."""
    cfg, errors = decode_config(raw)
    if errors:
        raise MultiError(errors)
    assert cfg is not None
    return cfg


def unknown_options(raw: Mapping[str, Any]) -> List[str]:
    return sorted(key for key in raw if key not in KNOWN_OPTIONS)
