"""SSH access to the guest: communicator and reachability probe."""

from __future__ import annotations

import time
from pathlib import Path
from typing import NamedTuple, Optional

import paramiko

from vmbuilder.constants import SSH_POLL_INTERVAL
from vmbuilder.exceptions import BuildError
from vmbuilder.state import BuildState
from vmbuilder.utils import log

CONNECT_TIMEOUT = 30.0


class RemoteCommandResult(NamedTuple):
    exit_status: int
    stdout: str
    stderr: str


class SSHCommunicator:
    """Run commands and copy files on the guest over one SSH connection."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str = "",
        timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        """Open the connection; TCP connect, banner and auth together take at most ``timeout``."""
        phase_timeout = self.timeout / 3
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password or None,
                timeout=phase_timeout,
                banner_timeout=phase_timeout,
                auth_timeout=phase_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            raise
        self._client = client

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise BuildError("SSH communicator is not connected")
        return self._client

    def start(self, command: str, timeout: Optional[float] = None) -> RemoteCommandResult:
        client = self._require_client()
        log("DEBUG", f"ssh {self.username}@{self.host}: {command}")
        try:
            _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise BuildError(f"Error executing remote command {command!r}: {exc}") from exc
        return RemoteCommandResult(status, out, err)

    def start_background(self, command: str) -> None:
        """Launch *command* without waiting for it; used for commands that drop the connection."""
        client = self._require_client()
        log("DEBUG", f"ssh {self.username}@{self.host} (background): {command}")
        try:
            client.exec_command(command)
        except (paramiko.SSHException, OSError) as exc:
            raise BuildError(f"Error executing remote command {command!r}: {exc}") from exc

    def upload(self, local_path: Path, remote_path: str) -> None:
        client = self._require_client()
        try:
            with client.open_sftp() as sftp:
                sftp.put(str(local_path), remote_path)
        except (paramiko.SSHException, OSError) as exc:
            raise BuildError(f"Error uploading {local_path} to {remote_path}: {exc}") from exc

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def wait_for_ssh(state: BuildState, interval: float = SSH_POLL_INTERVAL) -> Optional[SSHCommunicator]:
    """Poll the guest until an SSH login succeeds.

    Returns the connected communicator, or None if the build was cancelled
    while waiting. Raises BuildError once ``ssh_wait_timeout`` has elapsed.
    """
    cfg = state.config
    assert state.vmx_path is not None
    deadline = time.monotonic() + cfg.ssh_wait_timeout
    attempts = 0

    while not state.cancelled:
        attempts += 1
        address = _lookup_address(state)
        if address:
            remaining = max(deadline - time.monotonic(), 0.1)
            comm = SSHCommunicator(
                address,
                cfg.ssh_port,
                cfg.ssh_username,
                cfg.ssh_password,
                timeout=min(CONNECT_TIMEOUT, remaining),
            )
            try:
                comm.connect()
            except (paramiko.SSHException, OSError) as exc:
                log("DEBUG", f"SSH attempt {attempts} to {address}:{cfg.ssh_port} failed: {exc}")
            else:
                state.guest_address = address
                return comm

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise BuildError("Timeout waiting for SSH.")
        if state.sleep(min(interval, remaining)):
            break
    return None


def _lookup_address(state: BuildState) -> Optional[str]:
    try:
        return state.driver.guest_address(state.vmx_path)
    except BuildError as exc:
        log("DEBUG", f"Guest address lookup failed: {exc}")
        return None
