"""
Pytest configuration and fixtures for warm pool tests
"""

import os
import shutil
import stat
import sys
import tempfile
from pathlib import Path
from typing import Callable

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

READY_MARKER = "Starting Emacs daemon."


def _write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def make_worker_binary(tmp_path) -> Callable[[str, str], Path]:
    """Factory for fake worker executables written as shell scripts."""

    def factory(body: str, name: str = "fake-worker") -> Path:
        return _write_script(tmp_path / name, body)

    return factory


@pytest.fixture
def args_log(tmp_path) -> Path:
    """File the fake workers append their first argument to."""
    return tmp_path / "args.log"


@pytest.fixture
def worker_binary(make_worker_binary, args_log) -> Path:
    """Worker that logs a line, reports readiness, then idles until killed."""
    return make_worker_binary(
        f'echo "$1" >> "{args_log}"\n'
        'echo "Loading init file" >&2\n'
        f'echo "{READY_MARKER}" >&2\n'
        "exec sleep 60\n"
    )


@pytest.fixture
def dying_worker_binary(make_worker_binary) -> Path:
    """Worker that exits without ever reporting readiness."""
    return make_worker_binary('echo "Cannot open display" >&2\nexit 3\n', name="dying-worker")


@pytest.fixture
def silent_worker_binary(make_worker_binary) -> Path:
    """Worker that stays alive but never reports readiness."""
    return make_worker_binary("exec sleep 60\n", name="silent-worker")


@pytest.fixture
def stubborn_worker_binary(make_worker_binary) -> Path:
    """Worker that ignores SIGTERM after reporting readiness."""
    return make_worker_binary(
        "trap '' TERM\n"
        f'echo "{READY_MARKER}" >&2\n'
        "while true; do sleep 0.1 2>/dev/null; done\n",
        name="stubborn-worker",
    )


@pytest.fixture
def sock_path():
    """Short socket path (AF_UNIX paths are limited to ~100 bytes)."""
    directory = tempfile.mkdtemp(prefix="wp-", dir="/tmp")
    yield Path(directory) / "pool.sock"
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def settings(worker_binary, sock_path):
    """Settings pointing at the fake worker with test-friendly timings."""
    from warmpool.core.config import Settings

    return Settings(
        sock_path=sock_path,
        worker_path=str(worker_binary),
        pool_size=2,
        ready_marker=READY_MARKER,
        settle_delay=0,
        shutdown_grace_period=1.0,
        _env_file=None,
    )

