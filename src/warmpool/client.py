"""
Warm pool client - takes a worker from the pool and runs the front end on it
"""
import argparse
import logging
import socket
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from warmpool.core.config import DEFAULT_SOCK_FILENAME, POOL_READY_MESSAGE, Settings, get_settings
from warmpool.core.exceptions import WarmPoolError
from warmpool.main import configure_logging

logger = logging.getLogger(__name__)

DAEMON_COMMAND = [sys.executable, "-m", "warmpool.main"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="warmpool-client",
        description="Open files in a pre-started worker from the pool.",
    )
    parser.add_argument(
        "-s",
        "--sock",
        metavar="PATH",
        help=f"Sets the socket path (Default: $HOME/{DEFAULT_SOCK_FILENAME})",
    )
    parser.add_argument(
        "-c",
        "--emacsclient-path",
        metavar="FILE",
        help="Sets the front-end binary location",
    )
    parser.add_argument(
        "--no-start",
        action="store_true",
        help="Fail instead of starting the daemon when the socket is missing",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("files", nargs="*", help="Files passed through to the front end")
    return parser


def read_worker_id(conn: socket.socket) -> str:
    """
    Read the single handshake line sent by the daemon.

    Raises:
        WarmPoolError: If the daemon closes the connection before a full line
    """
    data = b""
    while b"\n" not in data:
        chunk = conn.recv(1024)
        if not chunk:
            raise WarmPoolError("Pool socket closed before a worker id was received")
        data += chunk
    return data.split(b"\n", 1)[0].decode("utf-8")


def front_end_command(client_path: str, worker_id: str, files: List[str], keepalive_arg: str) -> List[str]:
    # The trailing argument keeps the front end open when no files are given
    return [client_path, "-s", worker_id, "--", *files, keepalive_arg]


def start_daemon(sock_path: Path, debug: bool = False) -> subprocess.Popen:
    """
    Start the pool daemon in the background and wait until it accepts clients.

    The daemon gets its own session so it outlives this client. Its log
    output is followed only until the pool reports ready.

    Raises:
        WarmPoolError: If the daemon exits before the pool is ready
    """
    command = [*DAEMON_COMMAND, "--sock", str(sock_path)]
    if debug:
        command.append("--debug")

    logger.info("Server socket not found, starting in background, please wait..")
    process = subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        # Daemon logging goes to stderr
        stderr=subprocess.PIPE,
        start_new_session=True,
    )

    with process.stderr:
        for line in process.stderr:
            text = line.decode("utf-8", errors="replace").rstrip()
            logger.debug(f"[Server] {text}")
            if POOL_READY_MESSAGE in text:
                logger.debug("Pool server is ready, connecting.")
                return process

    returncode = process.wait()
    raise WarmPoolError(f"Pool daemon exited with status {returncode} before the pool was ready")


def run_client(settings: Settings, sock_path: Path, files: List[str], autostart: bool = True) -> int:
    """
    Connect, take a worker and run the front end until it exits.

    Starts the daemon first when ``autostart`` is set and nothing listens
    at ``sock_path`` yet.
    """
    if autostart and not sock_path.exists():
        start_daemon(sock_path, debug=settings.debug)

    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
        conn.connect(str(sock_path))

        worker_id = read_worker_id(conn)
        logger.debug(f"Received worker: {worker_id}")

        command = front_end_command(
            settings.client_path, worker_id, files, settings.client_keepalive_arg
        )
        completed = subprocess.run(command)
        logger.debug(f"Front end exited with status: {completed.returncode}")

    # Closing the socket tells the daemon to stop the worker
    return completed.returncode


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    settings = get_settings()
    overrides = {}
    if args.sock:
        overrides["sock_path"] = Path(args.sock)
    if args.emacsclient_path:
        overrides["client_path"] = args.emacsclient_path
    if args.debug:
        overrides["debug"] = True
    settings = settings.model_copy(update=overrides)

    configure_logging(settings.debug)

    try:
        return run_client(
            settings, settings.resolve_sock_path(), args.files, autostart=not args.no_start
        )
    except (WarmPoolError, OSError) as e:
        logger.error(f"{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
