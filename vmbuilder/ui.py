"""Build output sinks for vmbuilder."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Tuple

from vmbuilder.utils import log


class Ui(ABC):
    """Where steps report progress. Subclasses decide how it is shown."""

    @abstractmethod
    def say(self, message: str) -> None: ...

    @abstractmethod
    def message(self, message: str) -> None: ...

    @abstractmethod
    def error(self, message: str) -> None: ...


class ConsoleUi(Ui):
    """Print build progress through :func:`log`, prefixed with the builder name."""

    def __init__(self, prefix: str = "vmware") -> None:
        self.prefix = prefix

    def say(self, message: str) -> None:
        log("INFO", f"==> {self.prefix}: {message}")

    def message(self, message: str) -> None:
        log("INFO", f"    {self.prefix}: {message}")

    def error(self, message: str) -> None:
        log("ERROR", f"==> {self.prefix}: {message}")


class RecordingUi(Ui):
    """Keep every message in memory; used for dry runs and tests."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, str]] = []

    def say(self, message: str) -> None:
        self.records.append(("say", message))

    def message(self, message: str) -> None:
        self.records.append(("message", message))

    def error(self, message: str) -> None:
        self.records.append(("error", message))

    def errors(self) -> List[str]:
        return [msg for kind, msg in self.records if kind == "error"]
