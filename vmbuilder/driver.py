"""VMware driver abstraction and the concrete Fusion / Workstation drivers."""

from __future__ import annotations

import re
import shutil
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from vmbuilder.constants import DHCP_LEASE_PATHS, FUSION_APP_PATH
from vmbuilder.exceptions import BuildError
from vmbuilder.utils import log, run_tool
from vmbuilder.vmx import read_vmx

_LEASE_RE = re.compile(r"^\s*lease\s+(\S+)\s*\{")
_HARDWARE_RE = re.compile(r"^\s*hardware\s+ethernet\s+([0-9A-Fa-f:]+)\s*;")


class Driver(ABC):
    """Operations the build needs from the local virtualization product."""

    name = "driver"

    @abstractmethod
    def verify(self) -> None:
        """Raise BuildError unless the product is installed and usable."""

    @abstractmethod
    def create_disk(self, path: Path, size_mb: int) -> None: ...

    @abstractmethod
    def start(self, vmx_path: Path, headless: bool = False) -> None: ...

    @abstractmethod
    def stop(self, vmx_path: Path, force: bool = False) -> None:
        """Stop the VM. ``force`` powers it off instead of asking the guest."""

    @abstractmethod
    def is_running(self, vmx_path: Path) -> bool: ...

    @abstractmethod
    def guest_address(self, vmx_path: Path) -> Optional[str]:
        """Return the guest's IP address, or None while it has none yet."""


class VMwareDriver(Driver):
    """Shared vmrun / vmware-vdiskmanager implementation."""

    host_type = "ws"

    def __init__(
        self,
        vmrun_path: Path,
        vdiskmanager_path: Path,
        lease_paths: Sequence[Path] = (),
    ) -> None:
        self.vmrun_path = Path(vmrun_path)
        self.vdiskmanager_path = Path(vdiskmanager_path)
        self.lease_paths = list(lease_paths)

    def verify(self) -> None:
        for tool in (self.vmrun_path, self.vdiskmanager_path):
            if not tool.exists():
                raise BuildError(f"{self.name}: required tool not found at {tool}")

    def _vmrun(self, *args: str) -> str:
        return run_tool([str(self.vmrun_path), "-T", self.host_type, *args], label="vmrun")

    def create_disk(self, path: Path, size_mb: int) -> None:
        log("DEBUG", f"Creating {size_mb}M disk at {path}")
        run_tool(
            [
                str(self.vdiskmanager_path),
                "-c",
                "-s",
                f"{size_mb}M",
                "-a",
                "lsilogic",
                "-t",
                "1",
                str(path),
            ],
            label="vmware-vdiskmanager",
        )

    def start(self, vmx_path: Path, headless: bool = False) -> None:
        self._vmrun("start", str(vmx_path), "nogui" if headless else "gui")

    def stop(self, vmx_path: Path, force: bool = False) -> None:
        self._vmrun("stop", str(vmx_path), "hard" if force else "soft")

    def is_running(self, vmx_path: Path) -> bool:
        target = Path(vmx_path).resolve()
        output = self._vmrun("list")
        for line in output.splitlines():
            line = line.strip()
            if not line or line.lower().startswith("total running"):
                continue
            if Path(line).resolve() == target:
                return True
        return False

    def guest_address(self, vmx_path: Path) -> Optional[str]:
        vmx = read_vmx(Path(vmx_path))
        mac = vmx.get("ethernet0.generatedAddress") or vmx.get("ethernet0.address")
        if not mac:
            return None
        for lease_path in self.lease_paths:
            if not lease_path.exists():
                continue
            try:
                text = lease_path.read_text(errors="replace")
            except OSError as exc:
                log("WARN", f"Could not read DHCP leases {lease_path}: {exc}")
                continue
            address = find_lease_address(text, mac)
            if address:
                return address
        return None


class Fusion5Driver(VMwareDriver):
    """VMware Fusion 5+ on macOS."""

    name = "VMware Fusion"
    host_type = "fusion"

    def __init__(self, app_path: Path = FUSION_APP_PATH) -> None:
        self.app_path = Path(app_path)
        library = self.app_path / "Contents" / "Library"
        super().__init__(
            library / "vmrun",
            library / "vmware-vdiskmanager",
            DHCP_LEASE_PATHS["darwin"],
        )

    def verify(self) -> None:
        if not self.app_path.exists():
            raise BuildError(f"Fusion application not found at path: {self.app_path}")
        super().verify()


class WorkstationDriver(VMwareDriver):
    """VMware Workstation / Player, tools looked up on PATH."""

    name = "VMware Workstation"
    host_type = "ws"

    def __init__(self, platform: str = sys.platform) -> None:
        vmrun = shutil.which("vmrun")
        vdisk = shutil.which("vmware-vdiskmanager")
        super().__init__(
            Path(vmrun or "vmrun"),
            Path(vdisk or "vmware-vdiskmanager"),
            DHCP_LEASE_PATHS.get("win32" if platform.startswith("win") else "linux", ()),
        )
        self._found = bool(vmrun and vdisk)

    def verify(self) -> None:
        if not self._found:
            raise BuildError("vmrun and vmware-vdiskmanager must be on PATH")
        super().verify()


def find_lease_address(leases: str, mac: str) -> Optional[str]:
    """Return the most recent leased IP for *mac* in dhcpd.leases text."""
    wanted = mac.lower()
    current: Optional[str] = None
    found: Optional[str] = None
    for line in leases.splitlines():
        lease = _LEASE_RE.match(line)
        if lease:
            current = lease.group(1)
            continue
        hardware = _HARDWARE_RE.match(line)
        if hardware and current and hardware.group(1).lower() == wanted:
            found = current
    return found


def driver_candidates(platform: str = sys.platform) -> List[Driver]:
    if platform == "darwin":
        return [Fusion5Driver()]
    return [WorkstationDriver(platform)]


def new_driver(platform: str = sys.platform) -> Driver:
    """Bind the first candidate driver that verifies; raise BuildError if none do."""
    problems: List[str] = []
    for candidate in driver_candidates(platform):
        try:
            candidate.verify()
        except BuildError as exc:
            problems.append(str(exc))
            continue
        log("DEBUG", f"Using {candidate.name} driver")
        return candidate
    raise BuildError("; ".join(problems) or f"no VMware driver available for {platform}")
