"""Custom exceptions for vmbuilder."""

from __future__ import annotations

from typing import Iterable, List


class BuildError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class MultiError(BuildError):
    """Several independent errors reported together."""

    def __init__(self, errors: Iterable[BuildError | str]) -> None:
        self.errors: List[str] = [str(err) for err in errors]
        lines = "\n".join(f"  * {err}" for err in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred:\n{lines}")
