"""Minimal VNC (RFB) client and boot-command keystroke translation."""

from __future__ import annotations

import re
import socket
import struct
from typing import Dict, List, Mapping, NamedTuple, Optional, Union

from vmbuilder.exceptions import BuildError
from vmbuilder.utils import log

XK_SHIFT_L = 0xFFE1

SPECIAL_KEYS: Dict[str, int] = {
    "bs": 0xFF08,
    "del": 0xFFFF,
    "enter": 0xFF0D,
    "return": 0xFF0D,
    "esc": 0xFF1B,
    "tab": 0xFF09,
    "spacebar": 0x0020,
    "insert": 0xFF63,
    "home": 0xFF50,
    "end": 0xFF57,
    "pageup": 0xFF55,
    "pagedown": 0xFF56,
    "left": 0xFF51,
    "up": 0xFF52,
    "right": 0xFF53,
    "down": 0xFF54,
}
SPECIAL_KEYS.update({f"f{n}": 0xFFBE + n - 1 for n in range(1, 13)})

_SHIFTED_CHARS = set('~!@#$%^&*()_+{}|:"<>?')
_SPECIAL_RE = re.compile(r"<(\w+)>")
_WAIT_RE = re.compile(r"^wait(\d*)$", re.IGNORECASE)
_TEMPLATE_RE = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")


class KeyPress(NamedTuple):
    keysym: int
    shift: bool = False


class Wait(NamedTuple):
    seconds: float


BootAction = Union[KeyPress, Wait]


def render_boot_command(command: str, variables: Mapping[str, object]) -> str:
    """Substitute ``{{ .Name }}`` placeholders in one boot command entry."""

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in variables:
            raise BuildError(f"Unknown boot command variable '{name}' in {command!r}")
        return str(variables[name])

    return _TEMPLATE_RE.sub(_sub, command)


def boot_command_actions(command: str) -> List[BootAction]:
    """Translate rendered boot command text into key presses and waits."""
    actions: List[BootAction] = []
    pos = 0
    while pos < len(command):
        match = _SPECIAL_RE.match(command, pos)
        if match:
            name = match.group(1)
            wait = _WAIT_RE.match(name)
            if wait:
                actions.append(Wait(float(wait.group(1) or 1)))
                pos = match.end()
                continue
            keysym = SPECIAL_KEYS.get(name.lower())
            if keysym is not None:
                actions.append(KeyPress(keysym))
                pos = match.end()
                continue
        char = command[pos]
        actions.append(KeyPress(ord(char), char.isupper() or char in _SHIFTED_CHARS))
        pos += 1
    return actions


class VNCClient:
    """Just enough of RFB 3.3/3.7/3.8 to send key events without authentication."""

    def __init__(self, host: str, port: int, timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.server_name = ""
        self._sock: Optional[socket.socket] = None

    def __enter__(self) -> "VNCClient":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def connect(self) -> None:
        try:
            self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise BuildError(f"Error connecting to VNC at {self.host}:{self.port}: {exc}") from exc
        try:
            self._handshake()
        except BuildError:
            self.close()
            raise
        except (OSError, struct.error) as exc:
            self.close()
            raise BuildError(f"VNC handshake failed: {exc}") from exc

    def _handshake(self) -> None:
        banner = self._recv_exact(12)
        match = re.match(rb"RFB (\d{3})\.(\d{3})\n", banner)
        if not match:
            raise BuildError(f"Not a VNC server: {banner!r}")
        minor = min(int(match.group(2)), 8)
        if minor not in (3, 7, 8):
            minor = 3
        self._send(f"RFB 003.{minor:03d}\n".encode("ascii"))

        if minor == 3:
            (sec_type,) = struct.unpack("!I", self._recv_exact(4))
            if sec_type == 0:
                raise BuildError(f"VNC server refused connection: {self._read_reason()}")
            if sec_type != 1:
                raise BuildError(f"VNC server requires unsupported security type {sec_type}")
        else:
            (count,) = struct.unpack("!B", self._recv_exact(1))
            if count == 0:
                raise BuildError(f"VNC server refused connection: {self._read_reason()}")
            types = self._recv_exact(count)
            if 1 not in types:
                raise BuildError("VNC server requires authentication, which is not supported")
            self._send(b"\x01")
            if minor == 8:
                (result,) = struct.unpack("!I", self._recv_exact(4))
                if result != 0:
                    raise BuildError(f"VNC security handshake failed: {self._read_reason()}")

        self._send(b"\x01")  # ClientInit, shared session
        header = self._recv_exact(24)
        (name_len,) = struct.unpack("!I", header[20:24])
        self.server_name = self._recv_exact(name_len).decode("utf-8", errors="replace")
        log("DEBUG", f"Connected to VNC desktop '{self.server_name}'")

    def _read_reason(self) -> str:
        (length,) = struct.unpack("!I", self._recv_exact(4))
        return self._recv_exact(length).decode("utf-8", errors="replace")

    def _recv_exact(self, size: int) -> bytes:
        assert self._sock is not None
        data = b""
        while len(data) < size:
            chunk = self._sock.recv(size - len(data))
            if not chunk:
                raise BuildError("VNC connection closed by server")
            data += chunk
        return data

    def _send(self, payload: bytes) -> None:
        if self._sock is None:
            raise BuildError("VNC client is not connected")
        try:
            self._sock.sendall(payload)
        except OSError as exc:
            raise BuildError(f"Error sending to VNC server: {exc}") from exc

    def key_event(self, keysym: int, down: bool) -> None:
        self._send(struct.pack("!BBxxI", 4, 1 if down else 0, keysym))

    def press(self, key: KeyPress) -> None:
        if key.shift:
            self.key_event(XK_SHIFT_L, True)
        self.key_event(key.keysym, True)
        self.key_event(key.keysym, False)
        if key.shift:
            self.key_event(XK_SHIFT_L, False)

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None
