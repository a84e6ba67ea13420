"""Provisioning hooks run against the guest once SSH is available."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from vmbuilder.exceptions import BuildError
from vmbuilder.ssh import SSHCommunicator
from vmbuilder.ui import Ui


class ProvisionHook(ABC):
    @abstractmethod
    def run(self, ui: Ui, communicator: SSHCommunicator) -> None:
        """Modify the guest; raise BuildError on failure."""


class ShellHook(ProvisionHook):
    """Run inline shell commands one by one, stopping at the first failure."""

    def __init__(self, inline: Sequence[str]) -> None:
        self.inline = list(inline)

    def run(self, ui: Ui, communicator: SSHCommunicator) -> None:
        for command in self.inline:
            ui.say(f"Provisioning with shell: {command}")
            result = communicator.start(command)
            for line in result.stdout.splitlines():
                ui.message(line)
            if result.exit_status != 0:
                detail = result.stderr.strip()
                raise BuildError(
                    f"Provisioning command exited with status {result.exit_status}: {command}"
                    + (f"\n{detail}" if detail else "")
                )


class HookChain(ProvisionHook):
    """Run several hooks in order."""

    def __init__(self, hooks: Iterable[ProvisionHook]) -> None:
        self.hooks: List[ProvisionHook] = list(hooks)

    def run(self, ui: Ui, communicator: SSHCommunicator) -> None:
        for hook in self.hooks:
            hook.run(ui, communicator)


def hook_from_template(provisioners: Optional[Sequence[Mapping[str, Any]]]) -> Optional[ProvisionHook]:
    """Build a hook from a template's ``provisioners`` list."""
    if not provisioners:
        return None
    hooks: List[ProvisionHook] = []
    for index, entry in enumerate(provisioners):
        if not isinstance(entry, Mapping):
            raise BuildError(f"provisioners[{index}] must be a mapping")
        kind = entry.get("type", "shell")
        if kind != "shell":
            raise BuildError(f"provisioners[{index}]: unsupported type '{kind}'")
        inline = entry.get("inline")
        if not isinstance(inline, list) or not inline:
            raise BuildError(f"provisioners[{index}]: 'inline' must be a non-empty list of commands")
        hooks.append(ShellHook([str(cmd) for cmd in inline]))
    return hooks[0] if len(hooks) == 1 else HookChain(hooks)
