"""
Warm Pool Management

Pool of pre-warmed worker processes handed out over a Unix socket.
Each worker serves exactly one client and is stopped when it disconnects.
"""

from .worker import Worker, WorkerState, generate_worker_id
from .events import SignalWatcher, UnixListener
from .session import ConnectionSession
from .manager import PoolManager

__all__ = [
    "Worker",
    "WorkerState",
    "generate_worker_id",
    "SignalWatcher",
    "UnixListener",
    "ConnectionSession",
    "PoolManager",
]
