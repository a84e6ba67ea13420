"""Data models for vmbuilder."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Tuple

from vmbuilder.constants import BUILDER_ID


@dataclass(frozen=True)
class BuildConfig:
    iso_url: str
    ssh_username: str
    disk_name: str = "disk"
    guest_os_type: str = "other"
    iso_checksum: str = ""
    vm_name: str = "packer"
    output_dir: Path = Path("vmware")
    http_dir: str = ""
    http_port_min: int = 8000
    http_port_max: int = 9000
    boot_command: Tuple[str, ...] = ()
    boot_wait: float = 0.0  # seconds
    shutdown_command: str = ""
    shutdown_timeout: float = 300.0
    ssh_password: str = ""
    ssh_port: int = 22
    ssh_wait_timeout: float = 1200.0
    vmx_data: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    vnc_port_min: int = 5900
    vnc_port_max: int = 6000
    disk_size: int = 40000  # MB
    headless: bool = False


@dataclass(frozen=True)
class Artifact:
    """Files produced by a successful build."""

    directory: Path
    files: Tuple[str, ...]

    @property
    def builder_id(self) -> str:
        return BUILDER_ID

    def id(self) -> str:
        return "VM"

    def string(self) -> str:
        return f"VM files in directory: {self.directory}"

    def destroy(self) -> None:
        shutil.rmtree(self.directory)
