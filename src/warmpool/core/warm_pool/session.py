"""
Connection Session

Hands one worker to one client and stops the worker when the client leaves.
"""

import asyncio
import logging

from .. import metrics
from .worker import Worker

logger = logging.getLogger(__name__)


class ConnectionSession:
    """
    Per-client session.

    Sends ``<worker id>\\n`` as the only message, then reads and discards
    everything until the client disconnects. The worker is shut down
    exactly once when the session ends.
    """

    def __init__(
        self,
        worker: Worker,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        read_buffer_size: int = 1024,
        shutdown_grace_period: float = 2.0,
    ):
        self.worker = worker
        self.reader = reader
        self.writer = writer
        self.read_buffer_size = read_buffer_size
        self.shutdown_grace_period = shutdown_grace_period

    async def run(self) -> None:
        worker_id = self.worker.id
        logger.info(f"Providing worker: {worker_id}")
        metrics.ASSIGNED_WORKERS.inc()

        try:
            if await self._send_worker_id():
                await self._wait_for_disconnect()
        finally:
            metrics.ASSIGNED_WORKERS.dec()

        logger.info(f"Stopping worker: {worker_id}")
        await self.worker.shutdown(self.shutdown_grace_period)
        self._close()

    async def _send_worker_id(self) -> bool:
        try:
            self.writer.write(f"{self.worker.id}\n".encode("utf-8"))
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.error(f"Failed to write worker id to client socket: {e}")
            return False
        return True

    async def _wait_for_disconnect(self) -> None:
        while True:
            try:
                data = await self.reader.read(self.read_buffer_size)
            except (ConnectionError, OSError) as e:
                logger.error(
                    f"Failed to read from client socket (worker {self.worker.id}): {e}"
                )
                return

            if not data:
                logger.info(f"Client connected to worker {self.worker.id} has exited")
                return

    def _close(self) -> None:
        try:
            self.writer.close()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing client socket: {e}")
