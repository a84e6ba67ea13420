"""VMware ISO builder: prepare, run and cancel one build."""

from __future__ import annotations

import os
import random
import threading
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from vmbuilder.config import decode_config, unknown_options
from vmbuilder.driver import Driver, new_driver
from vmbuilder.exceptions import BuildError, MultiError
from vmbuilder.models import Artifact, BuildConfig
from vmbuilder.provision import ProvisionHook
from vmbuilder.runner import Runner, Step
from vmbuilder.state import BuildState
from vmbuilder.steps import default_steps
from vmbuilder.ui import Ui
from vmbuilder.utils import log


class Builder:
    """Build a VMware VM from an ISO.

    ``prepare`` validates the configuration and binds a driver; ``run``
    executes the step pipeline and returns an :class:`Artifact`, or None
    when the build was cancelled or halted. ``cancel`` may be called from
    another thread or a signal handler at any time.
    """

    def __init__(
        self,
        driver_factory: Callable[[], Driver] = new_driver,
        steps_factory: Callable[[], List[Step]] = default_steps,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config: Optional[BuildConfig] = None
        self.driver: Optional[Driver] = None
        self.runner: Optional[Runner] = None
        self.state: Optional[BuildState] = None
        self._driver_factory = driver_factory
        self._steps_factory = steps_factory
        self._rng = rng
        self._cancel_event = threading.Event()

    def prepare(self, raw: Optional[Mapping[str, Any]]) -> None:
        cfg, errors = decode_config(raw)
        if isinstance(raw, Mapping):
            for key in unknown_options(raw):
                log("WARN", f"Ignoring unknown option '{key}'")

        driver: Optional[Driver] = None
        try:
            driver = self._driver_factory()
        except BuildError as exc:
            errors.append(f"Failed creating VMware driver: {exc}")

        if errors:
            raise MultiError(errors)
        self.config = cfg
        self.driver = driver

    def run(self, ui: Ui, hook: Optional[ProvisionHook] = None) -> Optional[Artifact]:
        if self.config is None or self.driver is None:
            raise BuildError("Builder.run called before a successful prepare")

        state = BuildState(
            config=self.config,
            driver=self.driver,
            ui=ui,
            hook=hook,
            rng=self._rng or random.Random(),
            cancel_event=self._cancel_event,
        )
        self.state = state
        self.runner = Runner(self._steps_factory())
        self.runner.run(state)

        if state.cancelled:
            ui.say("Build was cancelled.")
            return None
        if state.halted:
            return None

        try:
            files = collect_files(self.config.output_dir)
        except OSError as exc:
            ui.error(f"Error collecting result files: {exc}")
            return None
        return Artifact(self.config.output_dir, tuple(files))

    def cancel(self) -> None:
        if self._cancel_event.is_set():
            return
        log("INFO", "Cancelling the step runner...")
        self._cancel_event.set()
        if self.runner is not None:
            self.runner.cancel()


def collect_files(directory: Path) -> List[str]:
    """Return every regular file below *directory*, sorted."""
    if not directory.is_dir():
        raise FileNotFoundError(f"output directory {directory} does not exist")
    files: List[str] = []

    def _raise(exc: OSError) -> None:
        raise exc

    for root, dirnames, filenames in os.walk(directory, onerror=_raise):
        dirnames.sort()
        for name in sorted(filenames):
            files.append(str(Path(root) / name))
    return sorted(files)
