"""
Prometheus metrics for the warm pool daemon.
"""

import logging

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

READY_WORKERS = Gauge(
    "warmpool_ready_workers",
    "Ready workers waiting in the pool",
)
ASSIGNED_WORKERS = Gauge(
    "warmpool_assigned_workers",
    "Workers currently handed out to a client connection",
)
WORKERS_SPAWNED = Counter(
    "warmpool_workers_spawned_total",
    "Worker processes spawned",
)
WORKERS_SHUTDOWN = Counter(
    "warmpool_workers_shutdown_total",
    "Worker processes shut down and reaped",
)
CONNECTIONS = Counter(
    "warmpool_connections_total",
    "Client connections accepted",
)


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP on the given port"""
    start_http_server(port)
    logger.info(f"Metrics available on port {port}")
