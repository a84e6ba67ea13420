"""Tests for vmbuilder.vmx module."""

from __future__ import annotations

import textwrap

import pytest

from vmbuilder.exceptions import BuildError
from vmbuilder.vmx import encode_vmx, parse_vmx, read_vmx, write_vmx


class TestParseVmx:
    def test_parses_quoted_values(self):
        contents = textwrap.dedent(
            """\
            .encoding = "UTF-8"
            displayName = "packer"
            scsi0:0.fileName = "disk.vmdk"
            """
        )
        assert parse_vmx(contents) == {
            ".encoding": "UTF-8",
            "displayName": "packer",
            "scsi0:0.fileName": "disk.vmdk",
        }

    def test_skips_comments_and_blank_lines(self):
        contents = '# generated\n\nmemsize = "512"\n'
        assert parse_vmx(contents) == {"memsize": "512"}

    def test_unquoted_value_and_spacing(self):
        assert parse_vmx("numvcpus=2\n") == {"numvcpus": "2"}

    def test_decodes_escaped_quotes(self):
        assert parse_vmx('annotation = "say |22hi|22"\n') == {"annotation": 'say "hi"'}

    def test_empty_value(self):
        assert parse_vmx('ide1:0.fileName = ""\n') == {"ide1:0.fileName": ""}


class TestEncodeVmx:
    def test_sorted_and_quoted(self):
        text = encode_vmx({"numvcpus": "1", "displayName": "vm", "RemoteDisplay.vnc.port": "5901"})
        assert text == 'RemoteDisplay.vnc.port = "5901"\ndisplayName = "vm"\nnumvcpus = "1"\n'

    def test_escapes_quotes(self):
        assert encode_vmx({"annotation": 'a "b"'}) == 'annotation = "a |22b|22"\n'


class TestFiles:
    def test_write_then_read(self, tmp_path):
        path = tmp_path / "vm.vmx"
        write_vmx(path, {"guestOS": "ubuntu-64", "memsize": "1024"})
        assert read_vmx(path) == {"guestOS": "ubuntu-64", "memsize": "1024"}

    def test_read_missing_raises(self, tmp_path):
        with pytest.raises(BuildError, match="Error reading VMX file"):
            read_vmx(tmp_path / "missing.vmx")

    def test_write_into_missing_dir_raises(self, tmp_path):
        with pytest.raises(BuildError, match="Error writing VMX file"):
            write_vmx(tmp_path / "nope" / "vm.vmx", {})
