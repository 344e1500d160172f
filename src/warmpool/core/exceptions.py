"""
Warm Pool Exceptions

Custom exceptions for pool, listener and worker operations.
"""

from typing import Optional


class WarmPoolError(Exception):
    """Base exception for warm pool errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(WarmPoolError):
    """Raised when settings cannot be resolved into a usable configuration"""


class ListenerError(WarmPoolError):
    """Raised when the client socket cannot be bound"""

    def __init__(self, message: str, sock_path: Optional[str] = None):
        self.sock_path = sock_path
        super().__init__(message)


class WorkerError(WarmPoolError):
    """Base exception for worker process errors"""

    def __init__(self, message: str, worker_id: Optional[str] = None):
        self.worker_id = worker_id
        super().__init__(message)


class WorkerSpawnError(WorkerError):
    """Raised when the worker binary cannot be executed"""

    def __init__(self, worker_id: str, binary_path: str, error: Optional[Exception] = None):
        self.binary_path = binary_path
        self.error = error
        message = f"Could not spawn worker {worker_id} from {binary_path}"
        if error:
            message += f": {error}"
        super().__init__(message, worker_id=worker_id)


class WorkerExitedError(WorkerError):
    """Raised when a worker's diagnostic stream ends before it became ready"""

    def __init__(self, worker_id: str, returncode: Optional[int] = None):
        self.returncode = returncode
        super().__init__(
            f"Worker {worker_id} closed its diagnostic stream before becoming ready",
            worker_id=worker_id,
        )


class WorkerReadyTimeoutError(WorkerError):
    """Raised when a worker does not report readiness within ready_timeout"""

    def __init__(self, worker_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Worker {worker_id} not ready after {timeout}s",
            worker_id=worker_id,
        )


class WorkerStateError(RuntimeError):
    """
    Raised on a worker lifecycle contract violation.

    Shutting down a worker twice is a programming error. It is deliberately
    not a WarmPoolError so generic handlers never swallow it.
    """

    def __init__(self, worker_id: str, state: str, operation: str):
        self.worker_id = worker_id
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} worker {worker_id} in state {state}")
