"""
Warm pool daemon configuration
"""
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

from .exceptions import ConfigurationError

DEFAULT_SOCK_FILENAME = ".warmpool.sock"
DEFAULT_POOL_SIZE = 3

# Logged once the initial pool is warm and the socket accepts clients
POOL_READY_MESSAGE = "Pool is ready."


class Settings(BaseSettings):
    """Warm pool settings"""

    # Application
    app_name: str = "warmpool"
    app_version: str = "0.1.0"
    debug: bool = False

    # Socket (None -> $HOME/DEFAULT_SOCK_FILENAME)
    sock_path: Optional[Path] = None

    # Worker process
    worker_path: str = "emacs"
    worker_arg_template: str = "--fg-daemon={id}"
    worker_id_prefix: str = "pool-"
    ready_marker: str = "Starting Emacs daemon."
    settle_delay: float = 0.5  # seconds after the marker before the worker is usable
    ready_timeout: Optional[float] = None  # None waits forever
    shutdown_grace_period: float = 2.0  # SIGTERM -> SIGKILL delay, 0 kills immediately

    # Pool
    pool_size: int = DEFAULT_POOL_SIZE

    # Client sessions
    read_buffer_size: int = 1024

    # Client launcher
    client_path: str = "emacsclient"
    client_keepalive_arg: str = "."

    # Monitoring
    enable_metrics: bool = False
    metrics_port: int = 9464

    # PostHog Error Tracking
    posthog_api_key: Optional[str] = None
    posthog_host: str = "https://us.i.posthog.com"

    model_config = SettingsConfigDict(
        env_prefix="WARMPOOL_",
        env_file=".env",
        case_sensitive=False,
    )

    def resolve_sock_path(self) -> Path:
        """
        Return the configured socket path, or the default under $HOME.

        Raises:
            ConfigurationError: If no path is set and the home directory
                cannot be determined
        """
        if self.sock_path is not None:
            return Path(self.sock_path)

        try:
            home = Path.home()
        except (KeyError, RuntimeError) as e:
            raise ConfigurationError(f"Could not read home directory: {e}") from e

        return home / DEFAULT_SOCK_FILENAME

    def worker_args(self, worker_id: str) -> list[str]:
        """Command line arguments for a worker with the given id"""
        return [self.worker_arg_template.format(id=worker_id)]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
