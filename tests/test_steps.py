"""Tests for vmbuilder.steps module."""

from __future__ import annotations

import dataclasses
import hashlib
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from vmbuilder.exceptions import BuildError
from vmbuilder.runner import StepAction
from vmbuilder.ssh import SSHCommunicator
from vmbuilder.steps import (
    StepConfigureVNC,
    StepCreateDisk,
    StepCreateVMX,
    StepDownloadISO,
    StepHTTPServer,
    StepPrepareOutputDir,
    StepProvision,
    StepRun,
    StepShutdown,
    StepTypeBootCommand,
    StepWaitForSSH,
    default_steps,
)
from vmbuilder.vmx import read_vmx, write_vmx
from vmbuilder.vnc import SPECIAL_KEYS, KeyPress

ISO_BYTES = b"iso-bytes"
ISO_SHA256 = hashlib.sha256(ISO_BYTES).hexdigest()


@pytest.fixture
def with_config(make_state, build_config):
    """Build a state whose config has the given fields replaced."""

    def _make(**changes):
        return make_state(config=dataclasses.replace(build_config, **changes))

    return _make


def _fake_session(chunks, content_length=None):
    response = MagicMock()
    response.headers = {"Content-Length": str(content_length)} if content_length else {}
    response.iter_content.return_value = chunks
    session = MagicMock()
    session.headers = {}
    session.get.return_value.__enter__.return_value = response
    return session


class TestDownloadISO:
    def test_local_path(self, make_state, tmp_path):
        state = make_state()
        assert StepDownloadISO().run(state) is StepAction.CONTINUE
        assert state.iso_path == (tmp_path / "install.iso").resolve()

    def test_file_url(self, with_config, tmp_path):
        state = with_config(iso_url=(tmp_path / "install.iso").as_uri())
        StepDownloadISO().run(state)
        assert state.iso_path == (tmp_path / "install.iso").resolve()

    def test_missing_local_iso(self, with_config, tmp_path):
        state = with_config(iso_url=str(tmp_path / "missing.iso"))
        with pytest.raises(BuildError, match="ISO not found"):
            StepDownloadISO().run(state)

    def test_unsupported_scheme(self, with_config):
        state = with_config(iso_url="ftp://mirror/ubuntu.iso")
        with pytest.raises(BuildError, match="Unsupported iso_url scheme 'ftp'"):
            StepDownloadISO().run(state)

    def test_checksum_verified(self, with_config, ui):
        state = with_config(iso_checksum=ISO_SHA256)
        StepDownloadISO().run(state)
        assert ("say", "Verifying ISO checksum...") in ui.records

    def test_checksum_mismatch_keeps_local_file(self, with_config, tmp_path):
        state = with_config(iso_checksum="0" * 64)
        with pytest.raises(BuildError, match="ISO checksum mismatch"):
            StepDownloadISO().run(state)
        assert (tmp_path / "install.iso").exists()

    def test_remote_download_is_cached(self, with_config, tmp_path, ui):
        url = "http://mirror.example.com/images/ubuntu-12.04.iso"
        state = with_config(iso_url=url, iso_checksum=ISO_SHA256)
        cache = tmp_path / "cache"
        session = _fake_session([b"iso-", b"bytes"], content_length=len(ISO_BYTES))
        with patch("vmbuilder.steps.requests.Session", return_value=session):
            StepDownloadISO(cache).run(state)
            StepDownloadISO(cache).run(state)

        assert session.get.call_count == 1
        assert state.iso_path.read_bytes() == ISO_BYTES
        assert state.iso_path.name.endswith("-ubuntu-12.04.iso")
        assert ("say", f"Using cached ISO: {state.iso_path}") in ui.records
        assert ("message", "Downloaded 100%") in ui.records
        assert not list(cache.glob("*.part"))

    def test_remote_checksum_mismatch_deletes_download(self, with_config, tmp_path):
        state = with_config(iso_url="https://mirror/a.iso", iso_checksum="0" * 64)
        cache = tmp_path / "cache"
        with patch("vmbuilder.steps.requests.Session", return_value=_fake_session([ISO_BYTES])):
            with pytest.raises(BuildError, match="ISO checksum mismatch"):
                StepDownloadISO(cache).run(state)
        assert list(cache.iterdir()) == []

    def test_download_failure(self, with_config, tmp_path):
        state = with_config(iso_url="https://mirror/a.iso")
        cache = tmp_path / "cache"
        session = _fake_session([])
        session.get.side_effect = requests.ConnectionError("connection reset")
        with patch("vmbuilder.steps.requests.Session", return_value=session):
            with pytest.raises(BuildError, match="Failed to download https://mirror/a.iso"):
                StepDownloadISO(cache).run(state)
        assert list(cache.iterdir()) == []

    def test_cancelled_download_leaves_no_iso(self, with_config, tmp_path):
        state = with_config(iso_url="https://mirror/a.iso")
        state.mark_cancelled()
        cache = tmp_path / "cache"
        with patch("vmbuilder.steps.requests.Session", return_value=_fake_session([ISO_BYTES])):
            assert StepDownloadISO(cache).run(state) is StepAction.CONTINUE
        assert state.iso_path is None
        assert list(cache.iterdir()) == []


class TestPrepareOutputDir:
    def test_creates_directory(self, make_state, build_config):
        StepPrepareOutputDir().run(make_state())
        assert build_config.output_dir.is_dir()

    def test_clears_previous_contents(self, make_state, build_config):
        out = build_config.output_dir
        (out / "old").mkdir(parents=True)
        (out / "old" / "disk.vmdk").write_text("x")
        (out / "packer.vmx").write_text("x")
        StepPrepareOutputDir().run(make_state())
        assert list(out.iterdir()) == []

    def test_output_path_is_a_file(self, make_state, build_config):
        build_config.output_dir.write_text("not a dir")
        with pytest.raises(BuildError, match="not a directory"):
            StepPrepareOutputDir().run(make_state())


class TestCreateDisk:
    def test_creates_disk_in_output_dir(self, make_state, build_config, fake_driver):
        state = make_state()
        StepCreateDisk().run(state)
        expected = build_config.output_dir / "disk.vmdk"
        fake_driver.create_disk.assert_called_once_with(expected, 40000)
        assert state.disk_path == expected

    def test_driver_error_is_wrapped(self, make_state, fake_driver):
        fake_driver.create_disk.side_effect = BuildError("vmware-vdiskmanager failed (exit 1)")
        state = make_state()
        with pytest.raises(BuildError, match="Error creating disk: vmware-vdiskmanager failed"):
            StepCreateDisk().run(state)
        assert state.disk_path is None


class TestCreateVMX:
    def test_writes_descriptor_with_overrides(self, with_config, build_config, ui):
        build_config.output_dir.mkdir()
        state = with_config(vm_name="ubuntu", guest_os_type="ubuntu-64", vmx_data={"memsize": "2048"})
        state.disk_path = build_config.output_dir / "disk.vmdk"
        state.iso_path = Path("/isos/ubuntu.iso")

        StepCreateVMX().run(state)

        assert state.vmx_path == build_config.output_dir / "ubuntu.vmx"
        vmx = read_vmx(state.vmx_path)
        assert vmx["displayName"] == "ubuntu"
        assert vmx["guestOS"] == "ubuntu-64"
        assert vmx["scsi0:0.fileName"] == "disk.vmdk"
        assert vmx["ide1:0.fileName"] == str(Path("/isos/ubuntu.iso"))
        assert vmx["memsize"] == "2048"
        assert vmx["numvcpus"] == "1"
        assert ("message", "Setting custom VMX data: memsize = 2048") in ui.records


class TestHTTPServer:
    def test_no_http_directory(self, make_state):
        state = make_state()
        step = StepHTTPServer()
        step.run(state)
        assert state.http_port == 0
        step.cleanup(state)

    def test_starts_and_stops_server(self, with_config, tmp_path):
        state = with_config(http_dir=str(tmp_path))
        step = StepHTTPServer()
        with patch("vmbuilder.steps.FileServer") as mock_server_cls, patch(
            "vmbuilder.steps.detect_host_ip", return_value="192.168.56.1"
        ):
            mock_server_cls.return_value.start.return_value = 8123
            step.run(state)
            assert state.http_port == 8123
            assert state.get("http_ip") == "192.168.56.1"
            assert state.get("http_url") == "http://192.168.56.1:8123/"
            step.cleanup(state)
        mock_server_cls.assert_called_once_with(tmp_path, 8000, 9000, rng=state.rng)
        mock_server_cls.return_value.stop.assert_called_once()


class TestConfigureVNC:
    @pytest.fixture
    def vnc_state(self, make_state, build_config):
        build_config.output_dir.mkdir()
        vmx_path = build_config.output_dir / "packer.vmx"
        write_vmx(vmx_path, {"displayName": "packer"})
        return make_state(vmx_path=vmx_path)

    def test_enables_vnc_on_free_port(self, vnc_state):
        with patch("vmbuilder.steps.port_is_free", return_value=True):
            StepConfigureVNC().run(vnc_state)
        assert 5900 <= vnc_state.vnc_port <= 6000
        vmx = read_vmx(vnc_state.vmx_path)
        assert vmx["RemoteDisplay.vnc.enabled"] == "TRUE"
        assert vmx["RemoteDisplay.vnc.port"] == str(vnc_state.vnc_port)
        assert vmx["displayName"] == "packer"

    def test_skips_busy_ports(self, vnc_state):
        with patch("vmbuilder.steps.port_is_free", side_effect=lambda port: port == 5950):
            StepConfigureVNC().run(vnc_state)
        assert vnc_state.vnc_port == 5950

    def test_no_free_port(self, vnc_state):
        with patch("vmbuilder.steps.port_is_free", return_value=False) as mock_free:
            with pytest.raises(BuildError, match="No free port for VNC in range 5900-6000"):
                StepConfigureVNC().run(vnc_state)
        assert mock_free.call_count == 101


class TestRun:
    def test_starts_vm(self, with_config, fake_driver, ui):
        state = with_config(headless=True)
        state.vmx_path = Path("/out/packer.vmx")
        state.vnc_port = 5901
        StepRun().run(state)
        fake_driver.start.assert_called_once_with(Path("/out/packer.vmx"), headless=True)
        assert any("127.0.0.1:5901" in msg for kind, msg in ui.records if kind == "message")

    def test_start_error(self, make_state, fake_driver):
        fake_driver.start.side_effect = BuildError("vmrun failed (exit 255)")
        state = make_state(vmx_path=Path("/out/packer.vmx"))
        step = StepRun()
        with pytest.raises(BuildError, match="Error starting VM"):
            step.run(state)
        step.cleanup(state)
        fake_driver.is_running.assert_not_called()

    def test_cleanup_force_stops_running_vm(self, make_state, fake_driver):
        state = make_state(vmx_path=Path("/out/packer.vmx"))
        step = StepRun()
        step.run(state)
        fake_driver.is_running.return_value = True
        step.cleanup(state)
        fake_driver.stop.assert_called_once_with(Path("/out/packer.vmx"), force=True)

    def test_cleanup_leaves_stopped_vm_alone(self, make_state, fake_driver):
        state = make_state(vmx_path=Path("/out/packer.vmx"))
        step = StepRun()
        step.run(state)
        step.cleanup(state)
        fake_driver.stop.assert_not_called()

    def test_cleanup_reports_stop_errors(self, make_state, fake_driver, ui):
        state = make_state(vmx_path=Path("/out/packer.vmx"))
        step = StepRun()
        step.run(state)
        fake_driver.is_running.return_value = True
        fake_driver.stop.side_effect = BuildError("vmrun failed")
        step.cleanup(state)
        assert ui.errors() == ["Error stopping VM: vmrun failed"]


class TestTypeBootCommand:
    def test_nothing_to_type(self, make_state):
        with patch("vmbuilder.steps.VNCClient") as mock_vnc:
            StepTypeBootCommand().run(make_state())
        mock_vnc.assert_not_called()

    def test_types_rendered_command(self, with_config):
        state = with_config(boot_command=("a{{ .HTTPPort }}", "<enter>"))
        state.vnc_port = 5901
        state.http_port = 8
        with patch("vmbuilder.steps.VNCClient") as mock_vnc, patch(
            "vmbuilder.steps.detect_host_ip", return_value="10.0.0.1"
        ):
            StepTypeBootCommand().run(state)
        mock_vnc.assert_called_once_with("127.0.0.1", 5901)
        client = mock_vnc.return_value.__enter__.return_value
        assert [c.args[0] for c in client.press.call_args_list] == [
            KeyPress(ord("a")),
            KeyPress(ord("8")),
            KeyPress(SPECIAL_KEYS["enter"]),
        ]

    def test_uses_file_server_address(self, with_config):
        state = with_config(boot_command=("{{ .HTTPIP }}",))
        state.vnc_port = 5901
        state.set("http_ip", "7")
        with patch("vmbuilder.steps.VNCClient") as mock_vnc, patch("vmbuilder.steps.detect_host_ip") as mock_ip:
            StepTypeBootCommand().run(state)
        mock_ip.assert_not_called()
        client = mock_vnc.return_value.__enter__.return_value
        assert [c.args[0] for c in client.press.call_args_list] == [KeyPress(ord("7"))]

    def test_cancel_during_boot_wait_skips_typing(self, with_config):
        state = with_config(boot_wait=30.0, boot_command=("x",))
        state.vnc_port = 5901
        state.mark_cancelled()
        with patch("vmbuilder.steps.VNCClient") as mock_vnc:
            assert StepTypeBootCommand().run(state) is StepAction.CONTINUE
        mock_vnc.assert_not_called()


class TestWaitForSSH:
    def test_stores_communicator_and_closes_it(self, make_state):
        state = make_state()
        comm = MagicMock(spec=SSHCommunicator)
        step = StepWaitForSSH()
        with patch("vmbuilder.steps.wait_for_ssh", return_value=comm):
            step.run(state)
        assert state.communicator is comm
        step.cleanup(state)
        comm.close.assert_called_once()

    def test_cancelled_wait(self, make_state):
        state = make_state()
        with patch("vmbuilder.steps.wait_for_ssh", return_value=None):
            StepWaitForSSH().run(state)
        assert state.communicator is None


class TestProvision:
    def test_no_hook(self, make_state):
        assert StepProvision().run(make_state()) is StepAction.CONTINUE

    def test_runs_hook(self, make_state, ui):
        hook = MagicMock()
        comm = MagicMock()
        StepProvision().run(make_state(hook=hook, communicator=comm))
        hook.run.assert_called_once_with(ui, comm)

    def test_hook_failure(self, make_state):
        hook = MagicMock()
        hook.run.side_effect = BuildError("exit 1")
        with pytest.raises(BuildError, match="Error provisioning: exit 1"):
            StepProvision().run(make_state(hook=hook, communicator=MagicMock()))


class TestShutdown:
    @pytest.fixture
    def shutdown_state(self, with_config, build_config):
        def _make(**changes):
            build_config.output_dir.mkdir(exist_ok=True)
            state = with_config(**changes)
            state.vmx_path = build_config.output_dir / "packer.vmx"
            return state

        return _make

    def test_shutdown_command_then_wait(self, shutdown_state, fake_driver, build_config, ui):
        state = shutdown_state(shutdown_command="shutdown -P now")
        state.communicator = MagicMock()
        fake_driver.is_running.side_effect = [True, True, False]
        (build_config.output_dir / "packer.vmx.lck").mkdir()
        (build_config.output_dir / "disk.vmdk.lck").write_text("")

        StepShutdown(interval=0.01).run(state)

        state.communicator.start_background.assert_called_once_with("shutdown -P now")
        fake_driver.stop.assert_not_called()
        assert list(build_config.output_dir.glob("*.lck")) == []
        assert ("message", "VM shut down.") in ui.records

    def test_no_command_uses_soft_stop(self, shutdown_state, fake_driver):
        state = shutdown_state()
        StepShutdown(interval=0.01).run(state)
        fake_driver.stop.assert_called_once_with(state.vmx_path)

    def test_timeout_forces_power_off(self, shutdown_state, fake_driver, ui):
        state = shutdown_state(shutdown_command="halt", shutdown_timeout=0.05)
        state.communicator = MagicMock()
        fake_driver.is_running.return_value = True

        StepShutdown(interval=0.01).run(state)

        fake_driver.stop.assert_called_once_with(state.vmx_path, force=True)
        assert ui.errors() == ["Timeout while waiting for machine to shut down; forcing power off"]

    def test_failed_soft_stop_escalates(self, shutdown_state, fake_driver):
        state = shutdown_state()
        fake_driver.stop.side_effect = [BuildError("soft stop unsupported"), None]
        StepShutdown(interval=0.01).run(state)
        assert fake_driver.stop.call_args_list[-1].kwargs == {"force": True}

    def test_forced_stop_failure(self, shutdown_state, fake_driver):
        state = shutdown_state(shutdown_timeout=0.0)
        fake_driver.is_running.return_value = True
        fake_driver.stop.side_effect = [None, BuildError("vmrun failed")]
        with pytest.raises(BuildError, match="Error forcing VM shutdown"):
            StepShutdown(interval=0.01).run(state)


def test_default_pipeline_order():
    assert [step.name for step in default_steps()] == [
        "download_iso",
        "prepare_output_dir",
        "create_disk",
        "create_vmx",
        "http_server",
        "configure_vnc",
        "run",
        "type_boot_command",
        "wait_for_ssh",
        "provision",
        "shutdown",
    ]
