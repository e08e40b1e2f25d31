#!/usr/bin/env python3
"""
Wrapper main entry point.

Allows the wrapper to be run as a module: python3 -m mcpwrap --cwd /path/to/debug-mcp

stdout carries the worker's protocol bytes only; all logging goes to stderr
(and optionally a log file).
"""

import logging
import logging.handlers
import signal
import sys
import threading
from typing import Optional, Sequence

from mcpwrap.config import WrapperConfig, load_config
from mcpwrap.proxy.errors import SpawnError
from mcpwrap.proxy.supervisor import Supervisor

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

logger = logging.getLogger("mcpwrap")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure logging on stderr, plus a rotation-tolerant file if requested.

    Args:
        level: Log level name
        log_file: Optional path to a log file. WatchedFileHandler reopens the
                  file if an external tool rotates it.
    """
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.handlers.WatchedFileHandler(log_file, mode="a", encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def install_signal_handlers(cancel_event: threading.Event) -> None:
    """Set cancel_event on SIGINT (Ctrl+C) or SIGTERM (kill command)."""

    def _handle(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        cancel_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def log_banner(config: WrapperConfig) -> None:
    logger.info("Starting debug-mcp-wrapper")
    logger.info(f"Working directory: {config.working_dir}")
    logger.info(f"Worker command: {config.executable} {' '.join(config.worker_args)}")
    logger.info(f"Restart interval: {config.restart_interval_sec}s")
    logger.info(f"Buffer size: {config.buffer_size} messages")


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = load_config(argv)
    except (ValueError, OSError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(config.log_level, config.log_file)
    log_banner(config)

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    supervisor = Supervisor.from_config(config)
    try:
        supervisor.run(cancel_event)
    except SpawnError as e:
        logger.error(f"Supervisor error: {e}")
        return EXIT_FATAL

    logger.info("Shutdown complete")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
