"""vmbuilder package."""

__all__ = [
    "builder",
    "cli",
    "config",
    "constants",
    "driver",
    "exceptions",
    "http_server",
    "models",
    "provision",
    "runner",
    "ssh",
    "state",
    "steps",
    "ui",
    "utils",
    "vmx",
    "vnc",
]
