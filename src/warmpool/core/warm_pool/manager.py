"""
Warm Pool Manager

Keeps a target number of ready workers and hands them out to clients.
"""

import asyncio
import logging
from typing import List, Optional, Set

from .. import metrics
from ..config import POOL_READY_MESSAGE, Settings
from ..models import PoolStatus
from ..posthog_client import capture_exception
from .events import Connection, SignalWatcher, UnixListener
from .session import ConnectionSession
from .worker import Worker, WorkerState, generate_worker_id

logger = logging.getLogger(__name__)


class PoolManager:
    """
    Manages a pool of pre-warmed worker processes.

    Features:
    - Concurrent warm-up of the initial pool before accepting clients
    - Single event loop racing new connections, warm-ups and signals
    - Replenishment with at most one warm-up in flight
    - LIFO hand-out: the most recently ready worker is served first
    - Concurrent drain of idle workers on shutdown

    Example:
        manager = PoolManager(settings, UnixListener(path), SignalWatcher())
        await manager.run()
    """

    def __init__(
        self,
        settings: Settings,
        listener: UnixListener,
        signals: SignalWatcher,
    ):
        """
        Initialize pool manager.

        Args:
            settings: Daemon settings (pool size, worker binary, timings)
            listener: Source of client connections
            signals: Source of termination requests
        """
        self.settings = settings
        self.pool_size = settings.pool_size
        self.listener = listener
        self.signals = signals

        # Ready workers, top of the stack is the end of the list
        self._pool: List[Worker] = []

        # The single in-flight replenishment warm-up
        self._warmup_task: Optional[asyncio.Task] = None

        # Session tasks, kept referenced until they finish
        self._sessions: Set[asyncio.Task] = set()

        # Ids of workers that have not terminated yet
        self._live_ids: Set[str] = set()

    @property
    def pool(self) -> List[Worker]:
        return list(self._pool)

    @property
    def sessions(self) -> Set[asyncio.Task]:
        return set(self._sessions)

    @property
    def live_ids(self) -> Set[str]:
        return set(self._live_ids)

    async def run(self) -> None:
        """Warm the pool, serve clients until a signal arrives, then drain"""
        try:
            await self.start()
            if not self.signals.triggered:
                await self.serve()
        finally:
            await self.drain()

    async def start(self) -> None:
        """
        Warm up the initial pool and start listening.

        Workers enter the pool in the order they become ready. If any
        warm-up fails the remaining ones are cancelled and the error is
        raised. A termination signal during warm-up cancels the remaining
        warm-ups and returns without listening.

        Raises:
            ListenerError: If the socket path is taken, checked before any
                worker is spawned
        """
        self.listener.ensure_path_free()

        logger.info(f"Preparing initial workers ({self.pool_size})..")

        pending = {asyncio.create_task(self.prepare_worker()) for _ in range(self.pool_size)}
        signal_task = asyncio.create_task(self.signals.wait())
        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending | {signal_task}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done - {signal_task}:
                    pending.discard(task)
                    self._push(task.result())

                if signal_task in done:
                    logger.info(f"Received {signal_task.result()} during warm-up, shutting down..")
                    await self._cancel_warmups(pending)
                    return
        except BaseException:
            await self._cancel_warmups(pending)
            raise
        finally:
            if not signal_task.done():
                signal_task.cancel()

        await self.listener.start()
        logger.info(POOL_READY_MESSAGE)

    async def serve(self) -> None:
        """
        Main event loop.

        Waits for whichever happens first: a client connects, the pending
        warm-up finishes, or a termination signal arrives.
        """
        logger.info("Running main pool loop..")

        signal_task = asyncio.create_task(self.signals.wait())
        accept_task: Optional[asyncio.Task] = None

        try:
            while True:
                if accept_task is None:
                    accept_task = asyncio.create_task(self.listener.accept())
                if self._warmup_task is None and self.get_status().missing > 0:
                    self._warmup_task = asyncio.create_task(self.prepare_worker())

                waiting = {signal_task, accept_task}
                if self._warmup_task is not None:
                    waiting.add(self._warmup_task)

                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if accept_task in done:
                    reader, writer = accept_task.result()
                    accept_task = None
                    self._hand_out(reader, writer)

                if self._warmup_task is not None and self._warmup_task in done:
                    task, self._warmup_task = self._warmup_task, None
                    self._push(task.result())

                if signal_task in done:
                    logger.info(f"Received {signal_task.result()}, shutting down..")
                    break
        finally:
            for task in (signal_task, accept_task):
                if task is not None and not task.done():
                    task.cancel()

    async def drain(self) -> None:
        """
        Stop all idle workers.

        Workers already handed to a client keep running until that client
        disconnects.
        """
        logger.info("Shutting down..")

        if self._warmup_task is not None:
            task, self._warmup_task = self._warmup_task, None
            task.cancel()
            try:
                # A warm-up that finished before the cancel still needs draining
                self._pool.append(await task)
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Pending warm-up failed during shutdown: {e}")

        await self.listener.close()

        workers, self._pool = self._pool, []
        metrics.READY_WORKERS.set(0)

        results = await asyncio.gather(
            *(worker.shutdown(self.settings.shutdown_grace_period) for worker in workers),
            return_exceptions=True,
        )
        for worker, result in zip(workers, results):
            self._live_ids.discard(worker.id)
            if isinstance(result, BaseException):
                logger.error(f"Failed to stop worker {worker.id}: {result}")

        logger.info(f"Stopped {len(workers)} idle workers")

    async def prepare_worker(self) -> Worker:
        """
        Spawn a worker and wait until it is ready.

        A worker still starting when this coroutine is cancelled is shut
        down before the cancellation propagates. Ids are unique among
        workers that have not terminated.
        """
        worker_id = generate_worker_id(self.settings.worker_id_prefix, self._live_ids)
        self._live_ids.add(worker_id)

        try:
            worker = await Worker.spawn(
                self.settings.worker_path,
                worker_id,
                self.settings.worker_args(worker_id),
            )
        except BaseException:
            self._live_ids.discard(worker_id)
            raise
        try:
            await worker.await_ready(
                self.settings.ready_marker,
                settle_delay=self.settings.settle_delay,
                timeout=self.settings.ready_timeout,
                grace_period=self.settings.shutdown_grace_period,
            )
        except asyncio.CancelledError:
            if worker.state in (WorkerState.STARTING, WorkerState.READY):
                logger.debug(f"Warm-up of {worker_id} cancelled, stopping it")
                await worker.shutdown(self.settings.shutdown_grace_period)
            self._live_ids.discard(worker_id)
            raise
        except Exception:
            # Failed warm-ups have already stopped their worker
            self._live_ids.discard(worker_id)
            raise

        return worker

    def get_status(self) -> PoolStatus:
        """Snapshot of the pool"""
        return PoolStatus(
            target=self.pool_size,
            ready=len(self._pool),
            assigned=len(self._sessions),
            warming=self._warmup_task is not None,
            ready_ids=[worker.id for worker in self._pool],
        )

    def _push(self, worker: Worker) -> None:
        self._pool.append(worker)
        metrics.READY_WORKERS.set(len(self._pool))
        logger.debug(f"Pool status: {self.get_status().to_dict()}")

    def _pop(self) -> Optional[Worker]:
        if not self._pool:
            return None
        worker = self._pool.pop()
        metrics.READY_WORKERS.set(len(self._pool))
        worker.mark_assigned()
        logger.debug(f"Handing out worker: {worker.to_dict()}")
        return worker

    def _hand_out(self, reader, writer) -> None:
        logger.info("Got new client connection.")
        metrics.CONNECTIONS.inc()

        task = asyncio.create_task(self._serve_client((reader, writer), self._pop()))
        self._sessions.add(task)
        task.add_done_callback(self._sessions.discard)

    async def _serve_client(self, connection: Connection, worker: Optional[Worker]) -> None:
        reader, writer = connection

        if worker is None:
            logger.info("No workers were prepared, spawning immediately..")
            try:
                worker = await self.prepare_worker()
            except Exception as e:
                logger.error(f"Could not prepare worker for client: {e}", exc_info=True)
                capture_exception(e)
                writer.close()
                return
            worker.mark_assigned()

        session = ConnectionSession(
            worker,
            reader,
            writer,
            read_buffer_size=self.settings.read_buffer_size,
            shutdown_grace_period=self.settings.shutdown_grace_period,
        )
        try:
            await session.run()
        finally:
            self._live_ids.discard(worker.id)

    async def _cancel_warmups(self, tasks: Set[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        # Workers that became ready meanwhile still need to be drained
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Worker):
                self._push(result)
