"""
Warm pool daemon - keeps pre-started workers ready for socket clients
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from warmpool.core.config import DEFAULT_POOL_SIZE, DEFAULT_SOCK_FILENAME, Settings, get_settings
from warmpool.core.exceptions import WarmPoolError
from warmpool.core.metrics import start_metrics_server
from warmpool.core.posthog_client import PostHogClient, capture_exception
from warmpool.core.warm_pool import PoolManager, SignalWatcher, UnixListener

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(debug: bool = False) -> None:
    """Configure root logging for the entry points"""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )


def pool_size(value: str) -> int:
    try:
        size = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Pool size is not a valid number: {value}")
    if size < 0:
        raise argparse.ArgumentTypeError(f"Pool size must not be negative: {value}")
    return size


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="warmpool-daemon",
        description="Keep a pool of pre-started workers ready for socket clients.",
    )
    parser.add_argument(
        "-s",
        "--sock",
        metavar="PATH",
        help=f"Sets the socket path (Default: $HOME/{DEFAULT_SOCK_FILENAME})",
    )
    parser.add_argument(
        "-e",
        "--emacs-path",
        metavar="FILE",
        help="Sets the worker binary location",
    )
    parser.add_argument(
        "-p",
        "--pool-size",
        metavar="NUMBER",
        type=pool_size,
        help=f"Sets the pool size (Default: {DEFAULT_POOL_SIZE})",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def load_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Apply command line overrides on top of environment settings"""
    settings = base or get_settings()
    overrides = {}
    if args.sock:
        overrides["sock_path"] = Path(args.sock)
    if args.emacs_path:
        overrides["worker_path"] = args.emacs_path
    if args.pool_size is not None:
        overrides["pool_size"] = args.pool_size
    if args.debug:
        overrides["debug"] = True
    return settings.model_copy(update=overrides)


async def run_daemon(settings: Settings, sock_path: Path) -> None:
    """Run the pool until a termination signal, then clean up the socket"""
    listener = UnixListener(sock_path)
    signals = SignalWatcher()
    signals.install()

    manager = PoolManager(settings, listener, signals)
    try:
        await manager.run()
    finally:
        signals.remove()
        listener.remove_socket_file()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    settings = load_settings(args)

    configure_logging(settings.debug)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    PostHogClient.initialize(settings.posthog_api_key, settings.posthog_host)

    try:
        sock_path = settings.resolve_sock_path()

        if settings.enable_metrics:
            start_metrics_server(settings.metrics_port)

        asyncio.run(run_daemon(settings, sock_path))
    except WarmPoolError as e:
        logger.error(f"Fatal: {e}", exc_info=True)
        capture_exception(e)
        return 1
    finally:
        PostHogClient.shutdown()

    logger.info("Shutdown complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
