"""Execution context shared by every pipeline step."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

from vmbuilder.exceptions import BuildError
from vmbuilder.models import BuildConfig

if TYPE_CHECKING:  # pragma: no cover
    from vmbuilder.driver import Driver
    from vmbuilder.provision import ProvisionHook
    from vmbuilder.ssh import SSHCommunicator
    from vmbuilder.ui import Ui


@dataclass
class BuildState:
    """Mutable state for one build.

    Inputs are set by the Builder; the remaining fields are written by the
    step that produces them and read by later steps. Keys that have no
    field live in ``extra`` and are reached through :meth:`get`/:meth:`set`.

    The cancelled/halted flags are events so that :meth:`mark_cancelled`
    can be called from a signal handler or another thread. Once set they
    stay set.
    """

    config: BuildConfig
    driver: "Driver"
    ui: "Ui"
    hook: Optional["ProvisionHook"] = None
    rng: random.Random = field(default_factory=random.Random)

    iso_path: Optional[Path] = None
    disk_path: Optional[Path] = None
    vmx_path: Optional[Path] = None
    http_port: Optional[int] = None
    vnc_port: Optional[int] = None
    guest_address: Optional[str] = None
    communicator: Optional["SSHCommunicator"] = None
    error: Optional[BuildError] = None

    extra: Dict[str, Any] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    halt_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def set(self, key: str, value: Any) -> None:
        if key in _FIELD_NAMES:
            setattr(self, key, value)
        else:
            self.extra[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        if key in _FIELD_NAMES:
            value = getattr(self, key)
            return default if value is None else value
        return self.extra.get(key, default)

    def mark_cancelled(self) -> None:
        self.cancel_event.set()

    def mark_halted(self) -> None:
        self.halt_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def halted(self) -> bool:
        return self.halt_event.is_set()

    def halt(self, error: BuildError | str) -> None:
        """Record *error*, report it and mark the build halted."""
        if not isinstance(error, BuildError):
            error = BuildError(error)
        if self.error is None:
            self.error = error
        self.ui.error(str(error))
        self.mark_halted()

    def sleep(self, seconds: float) -> bool:
        """Wait up to *seconds*; return True as soon as the build is cancelled."""
        if seconds <= 0:
            return self.cancelled
        return self.cancel_event.wait(seconds)


_FIELD_NAMES = frozenset(
    f.name for f in fields(BuildState) if f.name not in {"extra", "cancel_event", "halt_event"}
)
