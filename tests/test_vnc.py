"""Tests for vmbuilder.vnc module."""

from __future__ import annotations

import struct
from unittest.mock import patch

import pytest

from vmbuilder.exceptions import BuildError
from vmbuilder.vnc import (
    SPECIAL_KEYS,
    XK_SHIFT_L,
    KeyPress,
    VNCClient,
    Wait,
    boot_command_actions,
    render_boot_command,
)


class FakeSocket:
    """Replays canned server bytes and records what the client sends."""

    def __init__(self, incoming: bytes) -> None:
        self.incoming = incoming
        self.sent = []
        self.closed = False

    def recv(self, size):
        chunk, self.incoming = self.incoming[:size], self.incoming[size:]
        return chunk

    def sendall(self, payload):
        self.sent.append(payload)

    def close(self):
        self.closed = True


def _server_init(name: bytes = b"packer") -> bytes:
    return struct.pack("!HH16sI", 640, 480, b"\x00" * 16, len(name)) + name


class TestRenderBootCommand:
    def test_substitutes_variables(self):
        rendered = render_boot_command(
            "url=http://{{ .HTTPIP }}:{{ .HTTPPort }}/preseed.cfg",
            {"HTTPIP": "10.0.2.2", "HTTPPort": 8123},
        )
        assert rendered == "url=http://10.0.2.2:8123/preseed.cfg"

    def test_unknown_variable(self):
        with pytest.raises(BuildError, match="Unknown boot command variable 'Name'"):
            render_boot_command("{{ .Name }}", {})


class TestBootCommandActions:
    def test_plain_text(self):
        assert boot_command_actions("ab") == [KeyPress(ord("a")), KeyPress(ord("b"))]

    def test_uppercase_and_symbols_need_shift(self):
        assert boot_command_actions("A:") == [KeyPress(ord("A"), True), KeyPress(ord(":"), True)]

    def test_special_keys(self):
        assert boot_command_actions("<esc><Enter><f1>") == [
            KeyPress(SPECIAL_KEYS["esc"]),
            KeyPress(SPECIAL_KEYS["enter"]),
            KeyPress(0xFFBE),
        ]

    def test_waits(self):
        assert boot_command_actions("<wait><wait5><WAIT10>") == [Wait(1.0), Wait(5.0), Wait(10.0)]

    def test_unknown_tag_is_typed_literally(self):
        actions = boot_command_actions("<nope>")
        assert [chr(a.keysym) for a in actions] == list("<nope>")


class TestVNCClient:
    def test_rfb_38_handshake_without_auth(self):
        sock = FakeSocket(b"RFB 003.008\n" + b"\x01\x01" + struct.pack("!I", 0) + _server_init())
        with patch("vmbuilder.vnc.socket.create_connection", return_value=sock) as mock_conn:
            client = VNCClient("127.0.0.1", 5901)
            client.connect()
        mock_conn.assert_called_once_with(("127.0.0.1", 5901), timeout=10.0)
        assert sock.sent == [b"RFB 003.008\n", b"\x01", b"\x01"]
        assert client.server_name == "packer"

    def test_rfb_33_handshake(self):
        sock = FakeSocket(b"RFB 003.003\n" + struct.pack("!I", 1) + _server_init(b"vm"))
        with patch("vmbuilder.vnc.socket.create_connection", return_value=sock):
            client = VNCClient("127.0.0.1", 5900)
            client.connect()
        assert sock.sent == [b"RFB 003.003\n", b"\x01"]
        assert client.server_name == "vm"

    def test_auth_required_is_rejected(self):
        sock = FakeSocket(b"RFB 003.008\n" + b"\x01\x02")
        with patch("vmbuilder.vnc.socket.create_connection", return_value=sock):
            with pytest.raises(BuildError, match="requires authentication"):
                VNCClient("127.0.0.1", 5900).connect()
        assert sock.closed

    def test_not_a_vnc_server(self):
        sock = FakeSocket(b"SSH-2.0-Open")
        with patch("vmbuilder.vnc.socket.create_connection", return_value=sock):
            with pytest.raises(BuildError, match="Not a VNC server"):
                VNCClient("127.0.0.1", 5900).connect()

    def test_connection_refused(self):
        with patch("vmbuilder.vnc.socket.create_connection", side_effect=ConnectionRefusedError("refused")):
            with pytest.raises(BuildError, match="Error connecting to VNC at 127.0.0.1:5900"):
                VNCClient("127.0.0.1", 5900).connect()

    def test_press_wraps_shifted_keys(self):
        sock = FakeSocket(b"RFB 003.003\n" + struct.pack("!I", 1) + _server_init())
        with patch("vmbuilder.vnc.socket.create_connection", return_value=sock):
            with VNCClient("127.0.0.1", 5900) as client:
                sock.sent.clear()
                client.press(KeyPress(ord("A"), True))
        assert sock.sent == [
            struct.pack("!BBxxI", 4, 1, XK_SHIFT_L),
            struct.pack("!BBxxI", 4, 1, ord("A")),
            struct.pack("!BBxxI", 4, 0, ord("A")),
            struct.pack("!BBxxI", 4, 0, XK_SHIFT_L),
        ]
        assert sock.closed
