"""The build pipeline steps, in execution order."""

from __future__ import annotations

import hashlib
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote, urlparse

import requests

from vmbuilder.constants import (
    DEFAULT_VMX,
    ISO_CACHE_DIR,
    KEY_INTERVAL,
    SHUTDOWN_POLL_INTERVAL,
)
from vmbuilder.exceptions import BuildError
from vmbuilder.http_server import FileServer
from vmbuilder.runner import Step, StepAction
from vmbuilder.ssh import SSHCommunicator, wait_for_ssh
from vmbuilder.state import BuildState
from vmbuilder.utils import (
    detect_host_ip,
    ensure_directory,
    format_duration,
    log,
    port_candidates,
    port_is_free,
    sha256_file,
)
from vmbuilder.vmx import read_vmx, write_vmx
from vmbuilder.vnc import VNCClient, Wait, boot_command_actions, render_boot_command

USER_AGENT = "vmbuilder/1.0"
DOWNLOAD_TIMEOUT = 60
DOWNLOAD_CHUNK = 1024 * 256  # 256 KiB

CONTINUE = StepAction.CONTINUE


class StepDownloadISO(Step):
    """Resolve ``iso_url`` to a local file, downloading and caching remote ISOs."""

    name = "download_iso"

    def __init__(self, cache_dir: Optional[Path] = None) -> None:
        self.cache_dir = cache_dir

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        parsed = urlparse(cfg.iso_url)
        remote = parsed.scheme in ("http", "https")

        if remote:
            cache_dir = self.cache_dir or ISO_CACHE_DIR
            ensure_directory(cache_dir)
            digest = hashlib.sha256(cfg.iso_url.encode("utf-8")).hexdigest()[:12]
            filename = Path(unquote(parsed.path or "")).name or "install.iso"
            safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename)
            iso_path = cache_dir / f"{digest}-{safe_name}"
            if iso_path.exists() and iso_path.stat().st_size > 0:
                state.ui.say(f"Using cached ISO: {iso_path}")
            else:
                state.ui.say(f"Downloading ISO: {cfg.iso_url}")
                if not self._download(state, cfg.iso_url, iso_path):
                    return CONTINUE
        elif parsed.scheme == "file":
            iso_path = Path(unquote(parsed.path))
        elif parsed.scheme and len(parsed.scheme) > 1:
            raise BuildError(f"Unsupported iso_url scheme '{parsed.scheme}': {cfg.iso_url}")
        else:
            iso_path = Path(cfg.iso_url)

        if not iso_path.is_file():
            raise BuildError(f"ISO not found: {iso_path}")

        if cfg.iso_checksum:
            state.ui.say("Verifying ISO checksum...")
            actual = sha256_file(iso_path)
            if actual != cfg.iso_checksum:
                if remote:
                    iso_path.unlink(missing_ok=True)
                raise BuildError(f"ISO checksum mismatch: expected {cfg.iso_checksum}, got {actual}")

        state.iso_path = iso_path.resolve()
        return CONTINUE

    def _download(self, state: BuildState, url: str, destination: Path) -> bool:
        """Stream *url* into *destination*. Returns False if cancelled midway."""
        session = requests.Session()
        session.headers["User-Agent"] = USER_AGENT
        with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, suffix=".part") as tmp:
            tmp_path = Path(tmp.name)
            try:
                with session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
                    response.raise_for_status()
                    total = int(response.headers.get("Content-Length") or 0)
                    downloaded = 0
                    next_report = 10
                    start = time.monotonic()
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                        if state.cancelled:
                            log("INFO", "ISO download cancelled")
                            tmp_path.unlink(missing_ok=True)
                            return False
                        tmp.write(chunk)
                        downloaded += len(chunk)
                        if total and downloaded * 100 // total >= next_report:
                            state.ui.message(f"Downloaded {downloaded * 100 // total}%")
                            next_report += 10
            except requests.RequestException as exc:
                tmp_path.unlink(missing_ok=True)
                raise BuildError(f"Failed to download {url}: {exc}") from exc
            except Exception:
                tmp_path.unlink(missing_ok=True)
                raise
        tmp_path.replace(destination)
        elapsed = time.monotonic() - start
        log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        return True


class StepPrepareOutputDir(Step):
    name = "prepare_output_dir"

    def run(self, state: BuildState) -> StepAction:
        output_dir = state.config.output_dir
        try:
            if output_dir.exists():
                if not output_dir.is_dir():
                    raise BuildError(f"Output path exists and is not a directory: {output_dir}")
                children = list(output_dir.iterdir())
                if children:
                    state.ui.say(f"Clearing previous contents of {output_dir}")
                for child in children:
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
            ensure_directory(output_dir)
        except OSError as exc:
            raise BuildError(f"Error preparing output directory {output_dir}: {exc}") from exc
        return CONTINUE


class StepCreateDisk(Step):
    name = "create_disk"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        disk_path = cfg.output_dir / f"{cfg.disk_name}.vmdk"
        state.ui.say("Creating virtual machine disk")
        try:
            state.driver.create_disk(disk_path, cfg.disk_size)
        except BuildError as exc:
            raise BuildError(f"Error creating disk: {exc}") from exc
        state.disk_path = disk_path
        return CONTINUE


class StepCreateVMX(Step):
    """Write the VM descriptor: base settings, disk, ISO, then user overrides."""

    name = "create_vmx"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        assert state.disk_path is not None
        state.ui.say("Building and writing VMX file")

        data = dict(DEFAULT_VMX)
        data["displayName"] = cfg.vm_name
        data["guestOS"] = cfg.guest_os_type
        data["scsi0:0.fileName"] = state.disk_path.name
        if state.iso_path is not None:
            data["ide1:0.fileName"] = str(state.iso_path)
        for key, value in cfg.vmx_data.items():
            state.ui.message(f"Setting custom VMX data: {key} = {value}")
            data[key] = value

        vmx_path = cfg.output_dir / f"{cfg.vm_name}.vmx"
        write_vmx(vmx_path, data)
        state.vmx_path = vmx_path
        return CONTINUE


class StepHTTPServer(Step):
    """Serve ``http_directory`` for the installer until the build ends."""

    name = "http_server"

    def __init__(self) -> None:
        self._server: Optional[FileServer] = None

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if not cfg.http_dir:
            state.http_port = 0
            return CONTINUE

        state.ui.say("Starting HTTP server")
        server = FileServer(Path(cfg.http_dir), cfg.http_port_min, cfg.http_port_max, rng=state.rng)
        port = server.start()
        self._server = server
        host_ip = detect_host_ip()
        state.http_port = port
        state.set("http_ip", host_ip)
        state.set("http_url", f"http://{host_ip}:{port}/")
        state.ui.message(f"Serving {cfg.http_dir} on port {port}")
        return CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self._server is not None:
            self._server.stop()
            self._server = None


class StepConfigureVNC(Step):
    """Pick a free VNC port and enable VMware's VNC server on it."""

    name = "configure_vnc"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        assert state.vmx_path is not None
        state.ui.say("Configuring VNC")

        port = next(
            (p for p in port_candidates(cfg.vnc_port_min, cfg.vnc_port_max, state.rng) if port_is_free(p)),
            None,
        )
        if port is None:
            raise BuildError(f"No free port for VNC in range {cfg.vnc_port_min}-{cfg.vnc_port_max}")

        vmx = read_vmx(state.vmx_path)
        vmx["RemoteDisplay.vnc.enabled"] = "TRUE"
        vmx["RemoteDisplay.vnc.port"] = str(port)
        write_vmx(state.vmx_path, vmx)
        state.vnc_port = port
        log("DEBUG", f"VNC port: {port}")
        return CONTINUE


class StepRun(Step):
    name = "run"

    def __init__(self) -> None:
        self._vmx_path: Optional[Path] = None

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        assert state.vmx_path is not None
        state.ui.say("Starting virtual machine...")
        if cfg.headless:
            state.ui.message(
                "The VM will be run headless, without a GUI. To view it, connect "
                f"with VNC to 127.0.0.1:{state.vnc_port}"
            )
        try:
            state.driver.start(state.vmx_path, headless=cfg.headless)
        except BuildError as exc:
            raise BuildError(f"Error starting VM: {exc}") from exc
        self._vmx_path = state.vmx_path
        return CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self._vmx_path is None:
            return
        vmx_path, self._vmx_path = self._vmx_path, None
        try:
            if state.driver.is_running(vmx_path):
                state.ui.say("Stopping virtual machine...")
                state.driver.stop(vmx_path, force=True)
        except BuildError as exc:
            state.ui.error(f"Error stopping VM: {exc}")


class StepTypeBootCommand(Step):
    name = "type_boot_command"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        if cfg.boot_wait > 0:
            state.ui.say(f"Waiting {format_duration(cfg.boot_wait)} for boot...")
            if state.sleep(cfg.boot_wait):
                return CONTINUE
        if not cfg.boot_command:
            return CONTINUE
        assert state.vnc_port is not None

        variables = {
            "HTTPIP": state.get("http_ip") or detect_host_ip(),
            "HTTPPort": state.http_port or 0,
        }
        commands = [render_boot_command(command, variables) for command in cfg.boot_command]

        state.ui.say("Connecting to VM via VNC")
        with VNCClient("127.0.0.1", state.vnc_port) as client:
            state.ui.say("Typing the boot command over VNC...")
            for command in commands:
                for action in boot_command_actions(command):
                    if state.cancelled:
                        log("INFO", "Cancelled while typing boot command")
                        return CONTINUE
                    if isinstance(action, Wait):
                        if state.sleep(action.seconds):
                            return CONTINUE
                        continue
                    client.press(action)
                    state.sleep(KEY_INTERVAL)
        return CONTINUE


class StepWaitForSSH(Step):
    name = "wait_for_ssh"

    def __init__(self) -> None:
        self._comm: Optional[SSHCommunicator] = None

    def run(self, state: BuildState) -> StepAction:
        state.ui.say("Waiting for SSH to become available...")
        comm = wait_for_ssh(state)
        if comm is None:
            return CONTINUE
        self._comm = comm
        state.communicator = comm
        state.ui.say(f"Connected to SSH at {state.guest_address}")
        return CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self._comm is not None:
            self._comm.close()
            self._comm = None


class StepProvision(Step):
    name = "provision"

    def run(self, state: BuildState) -> StepAction:
        if state.hook is None:
            log("DEBUG", "No provisioning hook configured")
            return CONTINUE
        assert state.communicator is not None
        state.ui.say("Provisioning...")
        try:
            state.hook.run(state.ui, state.communicator)
        except BuildError as exc:
            raise BuildError(f"Error provisioning: {exc}") from exc
        return CONTINUE


class StepShutdown(Step):
    """Power the guest off, escalating to a forced stop after ``shutdown_timeout``."""

    name = "shutdown"

    def __init__(self, interval: float = SHUTDOWN_POLL_INTERVAL) -> None:
        self.interval = interval

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        driver = state.driver
        vmx_path = state.vmx_path
        assert vmx_path is not None

        force = False
        if cfg.shutdown_command and state.communicator is not None:
            state.ui.say("Gracefully halting virtual machine...")
            state.communicator.start_background(cfg.shutdown_command)
        else:
            state.ui.say("Halting the virtual machine...")
            try:
                driver.stop(vmx_path)
            except BuildError as exc:
                log("WARN", f"Graceful stop failed: {exc}")
                force = True

        if not force:
            log("INFO", f"Waiting max {format_duration(cfg.shutdown_timeout)} for shutdown to complete")
            deadline = time.monotonic() + cfg.shutdown_timeout
            while driver.is_running(vmx_path):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    state.ui.error("Timeout while waiting for machine to shut down; forcing power off")
                    force = True
                    break
                if state.sleep(min(self.interval, remaining)):
                    return CONTINUE

        if force:
            try:
                driver.stop(vmx_path, force=True)
            except BuildError as exc:
                raise BuildError(f"Error forcing VM shutdown: {exc}") from exc

        self._remove_lock_files(state)
        state.ui.message("VM shut down.")
        return CONTINUE

    def _remove_lock_files(self, state: BuildState) -> None:
        for lock in sorted(state.config.output_dir.glob("*.lck")):
            log("DEBUG", f"Removing lock file {lock}")
            try:
                if lock.is_dir():
                    shutil.rmtree(lock)
                else:
                    lock.unlink()
            except OSError as exc:
                log("WARN", f"Could not remove lock file {lock}: {exc}")


def default_steps() -> List[Step]:
    return [
        StepDownloadISO(),
        StepPrepareOutputDir(),
        StepCreateDisk(),
        StepCreateVMX(),
        StepHTTPServer(),
        StepConfigureVNC(),
        StepRun(),
        StepTypeBootCommand(),
        StepWaitForSSH(),
        StepProvision(),
        StepShutdown(),
    ]
