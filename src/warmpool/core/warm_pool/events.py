"""
Event Sources

Awaitable wrappers for the pool event loop: accepted client connections
and termination signals.
"""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

from ..exceptions import ListenerError

logger = logging.getLogger(__name__)

Connection = Tuple[asyncio.StreamReader, asyncio.StreamWriter]

SHUTDOWN_SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM)


class UnixListener:
    """
    Unix domain socket listener exposing ``accept()`` as a coroutine.

    Connections accepted by the server are queued in accept order until
    the event loop asks for them.
    """

    def __init__(self, sock_path: Union[str, Path]):
        self.sock_path = Path(sock_path)
        self._server: Optional[asyncio.AbstractServer] = None
        self._bound = False
        self._pending: "asyncio.Queue[Connection]" = asyncio.Queue()

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    def ensure_path_free(self) -> None:
        """
        Raises:
            ListenerError: If something already exists at the socket path
        """
        if self.sock_path.exists():
            raise ListenerError(
                f"Socket path already exists: {self.sock_path}",
                sock_path=str(self.sock_path),
            )

    async def start(self) -> None:
        """
        Bind the socket and start accepting.

        Raises:
            ListenerError: If the path already exists or binding fails
        """
        self.ensure_path_free()

        try:
            self._server = await asyncio.start_unix_server(
                self._on_connect, path=str(self.sock_path)
            )
        except OSError as e:
            raise ListenerError(
                f"Could not bind socket {self.sock_path}: {e}",
                sock_path=str(self.sock_path),
            ) from e

        self._bound = True
        logger.debug(f"Listening for clients at {self.sock_path}")

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._pending.put_nowait((reader, writer))

    async def accept(self) -> Connection:
        """Wait for the next client connection"""
        return await self._pending.get()

    async def close(self) -> None:
        """Stop accepting and close connections nobody picked up"""
        if self._server is not None:
            self._server.close()
            self._server = None

        while not self._pending.empty():
            _, writer = self._pending.get_nowait()
            writer.close()

    def remove_socket_file(self) -> None:
        """Remove the socket special file if this listener created it"""
        if not self._bound:
            return
        self._bound = False
        try:
            os.unlink(self.sock_path)
        except FileNotFoundError:
            pass


class SignalWatcher:
    """
    Turns termination signals into a single awaitable event.

    All watched signals mean the same thing: begin shutdown.
    """

    def __init__(self, signals: Iterable[signal.Signals] = SHUTDOWN_SIGNALS):
        self.signals = tuple(signals)
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._installed = False

    def install(self) -> None:
        """Register handlers on the running event loop"""
        loop = asyncio.get_running_loop()
        for sig in self.signals:
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)
        self._installed = True

    def remove(self) -> None:
        if not self._installed:
            return
        loop = asyncio.get_running_loop()
        for sig in self.signals:
            loop.remove_signal_handler(sig)
        self._installed = False

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        # First request wins
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def triggered(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> str:
        """Wait for a termination request and return what triggered it"""
        await self._event.wait()
        return self._reason
