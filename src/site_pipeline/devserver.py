"""Static dev server with browser live reload."""

from __future__ import annotations

import asyncio
import socket
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from livereload import Server
from livereload.handlers import LiveReloadHandler
from loguru import logger
from tornado.ioloop import IOLoop

DEFAULT_PORT = 7979

_RELOAD_PATHS = {"css": "*.css", "js": "*", "all": "*"}


class ReloadTransport(Protocol):
    def reload(self, scope: str = "all") -> None: ...

    def stop(self) -> None: ...


class NullReloadTransport:
    """Used outside serve mode: reload requests go nowhere."""

    def reload(self, scope: str = "all") -> None:
        return None

    def stop(self) -> None:
        return None


def find_available_port(start: int = DEFAULT_PORT, attempts: int = 50, host: str = "0.0.0.0") -> int:
    for port in range(start, start + attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise OSError(f"No free port between {start} and {start + attempts - 1}")


def lan_address() -> Optional[str]:
    # UDP connect only selects a route; nothing is sent.
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("10.255.255.255", 1))
            address = sock.getsockname()[0]
        except OSError:
            return None
    return None if address.startswith("127.") else address


def local_addresses(port: int) -> Dict[str, str]:
    urls = {"local": f"http://localhost:{port}"}
    address = lan_address()
    if address:
        urls["external"] = f"http://{address}:{port}"
    return urls


class LiveReloadServer:
    """Serves the output directory and pushes reloads to connected browsers.

    ``livereload`` drives a tornado IOLoop, so it gets a thread and an
    asyncio loop of its own. Reload requests cross over with
    ``IOLoop.add_callback``, which is safe to call from any thread.
    """

    def __init__(self, root: Path, port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> None:
        self.root = root
        self.port = port
        self.host = host
        self._server = Server()
        self._ioloop: Optional[IOLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 5.0) -> None:
        self._thread = threading.Thread(target=self._serve, name="livereload", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout):
            raise RuntimeError("Dev server did not start in time")
        logger.debug("Dev server serving {} on port {}", self.root, self.port)

    def _serve(self) -> None:
        asyncio.set_event_loop(asyncio.new_event_loop())
        self._ioloop = IOLoop.current()
        self._ready.set()
        self._server.serve(
            port=self.port,
            host=self.host,
            root=str(self.root),
            open_url_delay=None,
        )

    def reload(self, scope: str = "all") -> None:
        if self._ioloop is None:
            return
        path = _RELOAD_PATHS.get(scope, "*")
        self._ioloop.add_callback(LiveReloadHandler.reload_waiters, path)

    def stop(self) -> None:
        if self._ioloop is None:
            return
        ioloop, self._ioloop = self._ioloop, None
        ioloop.add_callback(ioloop.stop)
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.debug("Dev server stopped")


__all__ = [
    "DEFAULT_PORT",
    "LiveReloadServer",
    "NullReloadTransport",
    "ReloadTransport",
    "find_available_port",
    "local_addresses",
]
