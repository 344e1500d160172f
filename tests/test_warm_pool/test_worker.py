"""
Tests for Worker.
"""

import asyncio
import os
import signal
import time

import pytest
from unittest.mock import patch

from warmpool.core.exceptions import (
    WorkerExitedError,
    WorkerReadyTimeoutError,
    WorkerSpawnError,
    WorkerStateError,
)
from warmpool.core.warm_pool.worker import Worker, WorkerState, generate_worker_id

MARKER = "Starting Emacs daemon."


def assert_reaped(pid: int) -> None:
    """The pid is no longer a child of this process (exited and waited for)."""
    with pytest.raises(ChildProcessError):
        os.waitpid(pid, os.WNOHANG)


async def spawn(binary, worker_id="pool-1") -> Worker:
    return await Worker.spawn(str(binary), worker_id, [f"--fg-daemon={worker_id}"])


class TestWorkerState:
    """Test WorkerState enum."""

    def test_state_values(self):
        """Test state enum values."""
        assert WorkerState.STARTING.value == "starting"
        assert WorkerState.READY.value == "ready"
        assert WorkerState.ASSIGNED.value == "assigned"
        assert WorkerState.SHUTTING_DOWN.value == "shutting_down"
        assert WorkerState.TERMINATED.value == "terminated"


class TestGenerateWorkerId:
    """Test worker id generation."""

    def test_prefix_and_number(self):
        worker_id = generate_worker_id("pool-")

        assert worker_id.startswith("pool-")
        assert worker_id[len("pool-"):].isdigit()

    def test_skips_taken_ids(self):
        with patch("warmpool.core.warm_pool.worker.random.getrandbits", side_effect=[7, 7, 8]):
            assert generate_worker_id("pool-", taken={"pool-7"}) == "pool-8"

    def test_value_fits_in_32_bits(self):
        with patch("warmpool.core.warm_pool.worker.random.getrandbits", return_value=2**32 - 1) as bits:
            assert generate_worker_id("w") == f"w{2**32 - 1}"
        bits.assert_called_with(32)


class TestWorkerLifecycle:
    """Test spawn, readiness and shutdown against fake worker binaries."""

    @pytest.mark.asyncio
    async def test_spawn(self, worker_binary):
        """Test spawning leaves the worker starting."""
        worker = await spawn(worker_binary)

        assert worker.id == "pool-1"
        assert worker.state == WorkerState.STARTING
        assert worker.pid > 0

        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_spawn_missing_binary(self, tmp_path):
        """Test spawning a missing binary fails loudly."""
        with pytest.raises(WorkerSpawnError) as exc_info:
            await spawn(tmp_path / "no-such-worker")

        assert exc_info.value.worker_id == "pool-1"
        assert isinstance(exc_info.value.error, FileNotFoundError)

    @pytest.mark.asyncio
    async def test_await_ready(self, worker_binary, args_log):
        """Test readiness after the marker line."""
        worker = await spawn(worker_binary, "pool-42")

        await worker.await_ready(MARKER, settle_delay=0)

        assert worker.state == WorkerState.READY
        assert worker.startup_seconds is not None
        assert args_log.read_text().strip() == "--fg-daemon=pool-42"

        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_await_ready_settle_delay(self, worker_binary):
        """Test the settle delay runs after the marker."""
        worker = await spawn(worker_binary)

        started = time.monotonic()
        await worker.await_ready(MARKER, settle_delay=0.3)

        assert time.monotonic() - started >= 0.3
        assert worker.state == WorkerState.READY

        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_await_ready_stream_closed(self, dying_worker_binary):
        """Test a worker exiting before the marker is reported and reaped."""
        worker = await spawn(dying_worker_binary)

        with pytest.raises(WorkerExitedError) as exc_info:
            await worker.await_ready(MARKER, settle_delay=0)

        assert exc_info.value.worker_id == "pool-1"
        assert exc_info.value.returncode == 3
        assert worker.state == WorkerState.TERMINATED
        assert_reaped(worker.pid)

    @pytest.mark.asyncio
    async def test_await_ready_timeout(self, silent_worker_binary):
        """Test the optional readiness timeout stops the worker."""
        worker = await spawn(silent_worker_binary)

        with pytest.raises(WorkerReadyTimeoutError) as exc_info:
            await worker.await_ready(MARKER, settle_delay=0, timeout=0.2)

        assert exc_info.value.timeout == 0.2
        assert worker.state == WorkerState.TERMINATED
        assert_reaped(worker.pid)

    @pytest.mark.asyncio
    async def test_await_ready_twice(self, worker_binary):
        """Test readiness can only be awaited while starting."""
        worker = await spawn(worker_binary)
        await worker.await_ready(MARKER, settle_delay=0)

        with pytest.raises(WorkerStateError):
            await worker.await_ready(MARKER, settle_delay=0)

        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_terminates_and_reaps(self, worker_binary):
        """Test graceful shutdown with SIGTERM."""
        worker = await spawn(worker_binary)
        await worker.await_ready(MARKER, settle_delay=0)

        await worker.shutdown(grace_period=2.0)

        assert worker.state == WorkerState.TERMINATED
        assert worker.returncode == -signal.SIGTERM
        assert_reaped(worker.pid)

    @pytest.mark.asyncio
    async def test_shutdown_immediate_kill(self, worker_binary):
        """Test a zero grace period kills right away."""
        worker = await spawn(worker_binary)
        await worker.await_ready(MARKER, settle_delay=0)

        await worker.shutdown(grace_period=0)

        assert worker.returncode == -signal.SIGKILL
        assert_reaped(worker.pid)

    @pytest.mark.asyncio
    async def test_shutdown_escalates_to_kill(self, stubborn_worker_binary):
        """Test a worker ignoring SIGTERM is killed after the grace period."""
        worker = await spawn(stubborn_worker_binary)
        await worker.await_ready(MARKER, settle_delay=0)

        await worker.shutdown(grace_period=0.3)

        assert worker.state == WorkerState.TERMINATED
        assert worker.returncode == -signal.SIGKILL
        assert_reaped(worker.pid)

    @pytest.mark.asyncio
    async def test_shutdown_already_exited(self, worker_binary):
        """Test shutting down a worker that died on its own."""
        worker = await spawn(worker_binary)
        await worker.await_ready(MARKER, settle_delay=0)

        os.kill(worker.pid, signal.SIGKILL)
        await worker.process.wait()

        await worker.shutdown()

        assert worker.state == WorkerState.TERMINATED
        assert worker.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_shutdown_twice(self, worker_binary):
        """Test a second shutdown is a contract violation."""
        worker = await spawn(worker_binary)
        await worker.await_ready(MARKER, settle_delay=0)
        await worker.shutdown()

        with pytest.raises(WorkerStateError) as exc_info:
            await worker.shutdown()

        assert exc_info.value.worker_id == "pool-1"
        assert exc_info.value.state == "terminated"

    @pytest.mark.asyncio
    async def test_shutdown_while_starting(self, silent_worker_binary):
        """Test a starting worker can be shut down."""
        worker = await spawn(silent_worker_binary)

        await worker.shutdown()

        assert worker.state == WorkerState.TERMINATED
        assert_reaped(worker.pid)

    @pytest.mark.asyncio
    async def test_mark_assigned(self, worker_binary):
        """Test only ready workers can be assigned."""
        worker = await spawn(worker_binary)

        with pytest.raises(WorkerStateError):
            worker.mark_assigned()

        await worker.await_ready(MARKER, settle_delay=0)
        worker.mark_assigned()

        assert worker.state == WorkerState.ASSIGNED
        assert worker.assigned_at is not None

        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_to_dict(self, worker_binary):
        """Test converting to dictionary."""
        worker = await spawn(worker_binary)
        await worker.await_ready(MARKER, settle_delay=0)

        d = worker.to_dict()

        assert d["worker_id"] == "pool-1"
        assert d["pid"] == worker.pid
        assert d["state"] == "ready"
        assert "created_at" in d
        assert d["returncode"] is None

        await worker.shutdown()
