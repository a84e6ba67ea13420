"""Transient HTTP file server used to hand answer files to the installer."""

from __future__ import annotations

import functools
import random
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional

from vmbuilder.exceptions import BuildError
from vmbuilder.utils import log, port_candidates


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        log("DEBUG", f"http: {self.address_string()} {format % args}")


class FileServer:
    """Serve one directory on the first free port of a range, in a background thread."""

    def __init__(
        self,
        directory: Path,
        port_min: int,
        port_max: int,
        rng: Optional[random.Random] = None,
        host: str = "0.0.0.0",
    ) -> None:
        self.directory = Path(directory)
        self.port_min = port_min
        self.port_max = port_max
        self.rng = rng or random.Random()
        self.host = host
        self.port: Optional[int] = None
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> int:
        if not self.directory.is_dir():
            raise BuildError(f"HTTP directory does not exist: {self.directory}")
        handler = functools.partial(_QuietHandler, directory=str(self.directory))
        for port in port_candidates(self.port_min, self.port_max, self.rng):
            try:
                server = ThreadingHTTPServer((self.host, port), handler)
            except OSError:
                log("DEBUG", f"http: port {port} unavailable")
                continue
            server.daemon_threads = True
            self._server = server
            self.port = port
            self._thread = threading.Thread(
                target=server.serve_forever,
                name=f"http-{port}",
                daemon=True,
            )
            self._thread.start()
            return port
        raise BuildError(f"No free port for the HTTP server in range {self.port_min}-{self.port_max}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None

    @property
    def running(self) -> bool:
        return self._server is not None
