"""
Warm Worker

A pooled worker process: spawn, readiness detection and shutdown.
"""

import asyncio
import logging
import random
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Container, List, Optional

from .. import metrics
from ..exceptions import (
    WorkerExitedError,
    WorkerReadyTimeoutError,
    WorkerSpawnError,
    WorkerStateError,
)

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    """Worker lifecycle state"""

    STARTING = "starting"  # Spawned, readiness marker not seen yet
    READY = "ready"  # Waiting in the pool
    ASSIGNED = "assigned"  # Handed out to a client connection
    SHUTTING_DOWN = "shutting_down"  # Being terminated
    TERMINATED = "terminated"  # Exited and reaped


def generate_worker_id(prefix: str = "pool-", taken: Optional[Container[str]] = None) -> str:
    """
    Generate a worker id from a random 32-bit value.

    Args:
        prefix: Id prefix
        taken: Ids that must not be returned

    Returns:
        New worker id
    """
    while True:
        worker_id = f"{prefix}{random.getrandbits(32)}"
        if taken is None or worker_id not in taken:
            return worker_id


@dataclass
class Worker:
    """
    One running instance of the pooled worker binary.

    The worker owns its process and the line reader over the process's
    stderr. Shutdown is allowed exactly once.
    """

    worker_id: str
    process: asyncio.subprocess.Process
    diagnostics: asyncio.StreamReader

    state: WorkerState = WorkerState.STARTING

    # Timestamps
    created_at: float = field(default_factory=time.time)
    ready_at: Optional[float] = None
    assigned_at: Optional[float] = None

    returncode: Optional[int] = None

    _diagnostics_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    async def spawn(cls, binary_path: str, worker_id: str, args: List[str]) -> "Worker":
        """
        Launch a worker process with its stderr captured.

        Args:
            binary_path: Worker executable
            worker_id: Id the worker is started with
            args: Command line arguments (already carrying the id)

        Returns:
            Worker in STARTING state

        Raises:
            WorkerSpawnError: If the executable cannot be started
        """
        logger.debug(f"Spawning worker {worker_id}: {binary_path} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                binary_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                # All daemon output is sent on stderr
                stderr=asyncio.subprocess.PIPE,
                # Keep terminal signals aimed at the pool away from workers
                start_new_session=True,
            )
        except OSError as e:
            raise WorkerSpawnError(worker_id, binary_path, e) from e

        metrics.WORKERS_SPAWNED.inc()
        logger.debug(f"Spawned worker {worker_id} (pid {process.pid})")
        return cls(worker_id=worker_id, process=process, diagnostics=process.stderr)

    @property
    def id(self) -> str:
        return self.worker_id

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def startup_seconds(self) -> Optional[float]:
        """Time from spawn to readiness"""
        if self.ready_at is None:
            return None
        return self.ready_at - self.created_at

    async def await_ready(
        self,
        marker: str,
        settle_delay: float = 0.5,
        timeout: Optional[float] = None,
        grace_period: float = 2.0,
    ) -> None:
        """
        Wait until the worker reports readiness on its diagnostic stream.

        Reads stderr lines until one contains ``marker``, then waits
        ``settle_delay`` seconds before marking the worker READY.

        Args:
            marker: Substring signalling readiness
            settle_delay: Extra wait after the marker line
            timeout: Give up after this many seconds (None waits forever)
            grace_period: Shutdown grace period for a worker that failed to start

        Raises:
            WorkerExitedError: If the stream ends before the marker appears
            WorkerReadyTimeoutError: If ``timeout`` expires first
        """
        if self.state != WorkerState.STARTING:
            raise WorkerStateError(self.worker_id, self.state.value, "await readiness of")

        try:
            if timeout is None:
                found = await self._read_until(marker)
            else:
                found = await asyncio.wait_for(self._read_until(marker), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Worker {self.worker_id} not ready after {timeout}s, stopping it")
            await self.shutdown(grace_period)
            raise WorkerReadyTimeoutError(self.worker_id, timeout) from None

        if not found:
            logger.error(f"Worker {self.worker_id} closed stderr before becoming ready")
            # The worker is normally already exiting, give it the chance
            try:
                await asyncio.wait_for(self.process.wait(), timeout=grace_period)
            except asyncio.TimeoutError:
                pass
            await self.shutdown(grace_period)
            raise WorkerExitedError(self.worker_id, self.returncode)

        # Even after the marker line, the worker's own socket file takes a
        # little time to appear.
        await asyncio.sleep(settle_delay)

        self._diagnostics_task = asyncio.create_task(self._forward_diagnostics())
        self.mark_ready()
        logger.info(f"New worker started: {self.worker_id}")

    async def _read_until(self, marker: str) -> bool:
        while True:
            try:
                line = await self.diagnostics.readline()
            except ValueError:
                # Line longer than the stream limit, the buffer was discarded
                logger.debug(f"({self.worker_id}) Skipped overlong diagnostic line")
                continue

            if not line:
                return False

            text = line.decode(errors="replace").rstrip("\n")
            logger.debug(f"({self.worker_id}) Read line: {text}")

            if marker in text:
                return True

    async def _forward_diagnostics(self) -> None:
        """Keep draining stderr so the worker never blocks on a full pipe"""
        while True:
            try:
                line = await self.diagnostics.readline()
            except ValueError:
                continue
            if not line:
                return
            logger.debug(f"({self.worker_id}) {line.decode(errors='replace').rstrip()}")

    async def shutdown(self, grace_period: float = 2.0) -> None:
        """
        Terminate and reap the worker process.

        Sends SIGTERM and escalates to SIGKILL if the process is still alive
        after ``grace_period`` seconds. A grace period of 0 kills immediately.
        Signal and reap failures are logged, never raised.

        Raises:
            WorkerStateError: If shutdown was already called
        """
        if self.state in (WorkerState.SHUTTING_DOWN, WorkerState.TERMINATED):
            raise WorkerStateError(self.worker_id, self.state.value, "shut down")

        self.mark_shutting_down()

        # Reaping waits for stderr to close, so keep it drained
        if self._diagnostics_task is None:
            self._diagnostics_task = asyncio.create_task(self._forward_diagnostics())

        if self.process.returncode is None:
            if grace_period > 0:
                self._send_signal(signal.SIGTERM)
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=grace_period)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Worker {self.worker_id} still running after {grace_period}s, killing"
                    )
                    self._send_signal(signal.SIGKILL)
            else:
                self._send_signal(signal.SIGKILL)

        # Need to wait for exit to avoid defunct processes
        try:
            self.returncode = await self.process.wait()
            logger.debug(f"Worker {self.worker_id} exited with status {self.returncode}")
        except Exception as e:
            logger.error(f"Error reaping worker {self.worker_id}: {e}")

        await self._stop_diagnostics()

        self.mark_terminated()
        metrics.WORKERS_SHUTDOWN.inc()

    def _send_signal(self, sig: signal.Signals) -> None:
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            logger.debug(f"Worker {self.worker_id} already exited before {sig.name}")
        except OSError as e:
            logger.error(f"Failed to send {sig.name} to worker {self.worker_id}: {e}")

    async def _stop_diagnostics(self) -> None:
        task = self._diagnostics_task
        if task is None:
            return

        self._diagnostics_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Diagnostic reader for {self.worker_id} failed: {e}")

    def mark_ready(self) -> None:
        """Mark worker as ready (waiting in the pool)"""
        self.state = WorkerState.READY
        self.ready_at = time.time()

    def mark_assigned(self) -> None:
        """Mark worker as handed out to a connection"""
        if self.state != WorkerState.READY:
            raise WorkerStateError(self.worker_id, self.state.value, "assign")
        self.state = WorkerState.ASSIGNED
        self.assigned_at = time.time()

    def mark_shutting_down(self) -> None:
        self.state = WorkerState.SHUTTING_DOWN

    def mark_terminated(self) -> None:
        self.state = WorkerState.TERMINATED

    def to_dict(self) -> dict:
        """Convert to dictionary for debugging/logging"""
        return {
            "worker_id": self.worker_id,
            "pid": self.pid,
            "state": self.state.value,
            "created_at": datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat(),
            "startup_seconds": (
                round(self.startup_seconds, 3) if self.startup_seconds is not None else None
            ),
            "returncode": self.returncode,
        }
