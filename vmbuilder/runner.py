"""Sequential step runner with reverse-order cleanup."""

from __future__ import annotations

import enum
import traceback
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from vmbuilder.exceptions import BuildError
from vmbuilder.state import BuildState
from vmbuilder.utils import log


class StepAction(enum.Enum):
    CONTINUE = "continue"
    HALT = "halt"


class Step(ABC):
    """One unit of the build pipeline.

    ``run`` performs the step and returns a :class:`StepAction`. Raising
    an exception is equivalent to recording the error on the state and
    returning ``HALT``. ``cleanup`` is invoked for every step whose
    ``run`` was entered, in reverse order, once the pipeline stops.
    """

    name = "step"

    @abstractmethod
    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: BuildState) -> None:
        """Release resources acquired by :meth:`run`. Default: nothing."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Runner:
    """Runs steps in order against one BuildState.

    Stops advancing as soon as the state is cancelled or halted, then
    cleans up every executed step in reverse order. Cleanup failures are
    logged and never abort the remaining cleanups.
    """

    def __init__(self, steps: Iterable[Step]) -> None:
        self.steps: List[Step] = list(steps)
        self._state: Optional[BuildState] = None
        self._cancel_requested = False

    def run(self, state: BuildState) -> None:
        self._state = state
        if self._cancel_requested:
            state.mark_cancelled()

        executed: List[Step] = []
        try:
            for step in self.steps:
                if state.cancelled or state.halted:
                    break
                log("DEBUG", f"Running step {step.name}")
                executed.append(step)
                try:
                    action = step.run(state)
                except BuildError as exc:
                    state.halt(exc)
                    action = StepAction.HALT
                except Exception as exc:
                    log("DEBUG", f"Step {step.name} raised:\n{traceback.format_exc()}")
                    state.halt(BuildError(f"{step.name}: {exc}"))
                    action = StepAction.HALT
                if action is StepAction.HALT:
                    state.mark_halted()
                    break
        finally:
            while executed:
                step = executed.pop()
                try:
                    step.cleanup(state)
                except Exception as exc:
                    log("WARN", f"Cleanup of step {step.name} failed: {exc}")

    def cancel(self) -> None:
        """Request cancellation; safe from any thread and idempotent."""
        self._cancel_requested = True
        if self._state is not None:
            self._state.mark_cancelled()
