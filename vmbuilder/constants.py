"""Global constants and path configuration for vmbuilder."""

from __future__ import annotations

import os
import re
from pathlib import Path

BUILDER_ID = "mitchellh.vmware"

# ISO downloads are cached here across builds.
ISO_CACHE_DIR = Path(os.environ.get("PACKER_CACHE_DIR", "packer_cache"))

FUSION_APP_PATH = Path("/Applications/VMware Fusion.app")

# NAT (vmnet8) DHCP lease files, per platform.
DHCP_LEASE_PATHS = {
    "darwin": (
        Path("/var/db/vmware/vmnet-dhcpd-vmnet8.leases"),
        Path("/private/var/db/vmware/vmnet-dhcpd-vmnet8.leases"),
    ),
    "linux": (
        Path("/etc/vmware/vmnet8/dhcpd/dhcpd.leases"),
        Path("/var/lib/vmware/vmnet8/dhcpd/dhcpd.leases"),
    ),
    "win32": (
        Path("C:/ProgramData/VMware/vmnetdhcp.leases"),
    ),
}

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

_SENSITIVE_FIELDS = {"ssh_password"}

# Defaults applied by config.prepare_config
DEFAULT_DISK_NAME = "disk"
DEFAULT_GUEST_OS_TYPE = "other"
DEFAULT_VM_NAME = "packer"
DEFAULT_OUTPUT_DIR = "vmware"
DEFAULT_HTTP_PORT_MIN = 8000
DEFAULT_HTTP_PORT_MAX = 9000
DEFAULT_VNC_PORT_MIN = 5900
DEFAULT_VNC_PORT_MAX = 6000
DEFAULT_SHUTDOWN_TIMEOUT = "5m"
DEFAULT_SSH_WAIT_TIMEOUT = "20m"
DEFAULT_SSH_PORT = 22
DEFAULT_DISK_SIZE_MB = 40000

SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")

# Base descriptor; vmx_data overrides are merged on top.
DEFAULT_VMX = {
    ".encoding": "UTF-8",
    "config.version": "8",
    "virtualHW.version": "9",
    "memsize": "512",
    "numvcpus": "1",
    "ethernet0.present": "TRUE",
    "ethernet0.connectionType": "nat",
    "ethernet0.addressType": "generated",
    "ethernet0.virtualDev": "e1000",
    "ethernet0.wakeOnPcktRcv": "FALSE",
    "ide1:0.present": "TRUE",
    "ide1:0.deviceType": "cdrom-image",
    "scsi0.present": "TRUE",
    "scsi0.virtualDev": "lsilogic",
    "scsi0:0.present": "TRUE",
    "usb.present": "TRUE",
    "sound.present": "FALSE",
    "floppy0.present": "FALSE",
    "tools.syncTime": "TRUE",
}

# Intervals for polling loops (seconds)
SSH_POLL_INTERVAL = 5.0
SHUTDOWN_POLL_INTERVAL = 1.0
KEY_INTERVAL = 0.01
