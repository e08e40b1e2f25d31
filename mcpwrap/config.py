"""
Configuration management for the debug-mcp wrapper.

Reads configuration from command-line flags, environment variables and an
optional .env file, with sensible defaults. Precedence, highest first:
flag, process environment, .env file, default.
"""

import argparse
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from dotenv import dotenv_values

from mcpwrap.proxy.backoff import BackoffStrategy, backoff_from_schedule, parse_backoff_schedule
from mcpwrap.proxy.worker import DEFAULT_STOP_GRACE_SEC, DEFAULT_WORKER_ARGS


# Default .env file location (relative to the directory the wrapper is started from)
DEFAULT_ENV_FILE = Path(".env")

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

logger = logging.getLogger(__name__)


def _read_environment(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Merge the process environment with the .env file.

    Variables already present in the environment are never overridden by
    the file. WRAPPER_ENV_FILE selects the file (default: ./.env).
    """
    env = dict(os.environ if environ is None else environ)
    env_path = Path(env.get("WRAPPER_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.is_file():
        for key, value in dotenv_values(env_path).items():
            if value is not None:
                env.setdefault(key, value)
        logger.debug(f"Loaded environment defaults from {env_path}")
    return env


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw} (must be an integer)")


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw} (must be a number)")


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").lower() in ("1", "true", "yes", "on")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="debug-mcp-wrapper",
        description="Keep a debug-mcp stdio server alive by restarting it periodically",
    )
    parser.add_argument(
        "--cwd",
        dest="working_dir",
        help="Working directory (where debug-mcp is installed); env: DEBUG_MCP_DIR",
    )
    parser.add_argument(
        "--php",
        dest="executable",
        help="Worker executable (default: php); env: PHP_BINARY",
    )
    parser.add_argument(
        "--restart-interval",
        dest="restart_interval_sec",
        type=float,
        help="Seconds between worker restarts, 0 disables (default: 60)",
    )
    parser.add_argument(
        "--buffer-size",
        dest="buffer_size",
        type=int,
        help="Input chunks buffered during a restart (default: 100)",
    )
    parser.add_argument(
        "--exit-on-eof",
        dest="exit_on_input_eof",
        action="store_true",
        default=None,
        help="Shut down when stdin is closed by the client",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        help="Log level (default: INFO); env: WRAPPER_LOG_LEVEL",
    )
    parser.add_argument(
        "--log-file",
        dest="log_file",
        help="Also write logs to this file; env: WRAPPER_LOG_FILE",
    )
    return parser


@dataclass
class WrapperConfig:
    """Wrapper configuration loaded from flags, environment and .env file."""

    working_dir: str = ""

    # Worker process
    executable: str = "php"
    worker_args: List[str] = field(default_factory=lambda: list(DEFAULT_WORKER_ARGS))
    stop_grace_sec: float = DEFAULT_STOP_GRACE_SEC

    # Restart / buffering
    restart_interval_sec: float = 60.0
    buffer_size: int = 100
    respawn_backoff_ms: List[int] = field(default_factory=lambda: [1000])

    # Forwarding
    read_chunk_size: int = 4096
    exit_on_input_eof: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def load_config(
        cls,
        argv: Optional[Sequence[str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "WrapperConfig":
        """
        Load configuration from command-line flags and environment variables.

        Args:
            argv: Command-line arguments (default: sys.argv[1:])
            environ: Environment mapping (default: os.environ)

        Returns:
            WrapperConfig instance with loaded and validated values

        Raises:
            ValueError: If configuration is invalid
            FileNotFoundError: If the working directory does not exist
            NotADirectoryError: If the working directory is not a directory
        """
        args = build_arg_parser().parse_args(argv)
        env = _read_environment(environ)

        working_dir = args.working_dir or env.get("DEBUG_MCP_DIR", "")
        executable = args.executable or env.get("PHP_BINARY") or "php"

        worker_args_str = env.get("WRAPPER_WORKER_ARGS")
        if worker_args_str:
            worker_args = shlex.split(worker_args_str)
        else:
            worker_args = list(DEFAULT_WORKER_ARGS)

        restart_interval_sec = args.restart_interval_sec
        if restart_interval_sec is None:
            restart_interval_sec = _parse_float(env, "WRAPPER_RESTART_INTERVAL_SEC", 60.0)

        buffer_size = args.buffer_size
        if buffer_size is None:
            buffer_size = _parse_int(env, "WRAPPER_BUFFER_SIZE", 100)

        stop_grace_sec = _parse_float(env, "WRAPPER_STOP_GRACE_SEC", DEFAULT_STOP_GRACE_SEC)

        backoff_str = env.get("WRAPPER_RESPAWN_BACKOFF_MS", "1000")
        try:
            respawn_backoff_ms = [round(d * 1000) for d in parse_backoff_schedule(backoff_str)]
        except ValueError as e:
            raise ValueError(f"Invalid WRAPPER_RESPAWN_BACKOFF_MS: {e}")

        read_chunk_size = _parse_int(env, "WRAPPER_READ_CHUNK_SIZE", 4096)

        exit_on_input_eof = args.exit_on_input_eof
        if exit_on_input_eof is None:
            exit_on_input_eof = _parse_bool(env.get("WRAPPER_EXIT_ON_EOF"))

        log_level = (args.log_level or env.get("WRAPPER_LOG_LEVEL") or "INFO").upper()
        log_file = args.log_file or env.get("WRAPPER_LOG_FILE") or None

        config = cls(
            working_dir=working_dir,
            executable=executable,
            worker_args=worker_args,
            stop_grace_sec=stop_grace_sec,
            restart_interval_sec=restart_interval_sec,
            buffer_size=buffer_size,
            respawn_backoff_ms=respawn_backoff_ms,
            read_chunk_size=read_chunk_size,
            exit_on_input_eof=exit_on_input_eof,
            log_level=log_level,
            log_file=log_file,
        )

        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
            FileNotFoundError: If the working directory does not exist
            NotADirectoryError: If the working directory is not a directory
        """
        if not self.working_dir:
            raise ValueError(
                "working directory not specified (use --cwd flag or DEBUG_MCP_DIR environment variable)"
            )

        working_path = Path(self.working_dir)
        if not working_path.exists():
            raise FileNotFoundError(f"working directory does not exist: {self.working_dir}")
        if not working_path.is_dir():
            raise NotADirectoryError(f"working directory is not a directory: {self.working_dir}")

        if not self.executable:
            raise ValueError("Worker executable cannot be empty")

        if self.restart_interval_sec < 0:
            raise ValueError(
                f"Invalid restart interval: {self.restart_interval_sec} (must be >= 0, 0 disables)"
            )

        if self.buffer_size <= 0:
            raise ValueError(f"Invalid buffer size: {self.buffer_size} (must be > 0)")

        if self.stop_grace_sec < 0:
            raise ValueError(f"Invalid stop grace period: {self.stop_grace_sec} (must be >= 0)")

        if not self.respawn_backoff_ms:
            raise ValueError("Respawn backoff schedule cannot be empty")
        if any(d < 0 for d in self.respawn_backoff_ms):
            raise ValueError("All respawn backoff delays must be >= 0")

        if self.read_chunk_size <= 0:
            raise ValueError(f"Invalid read chunk size: {self.read_chunk_size} (must be > 0)")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )

    def build_backoff(self) -> BackoffStrategy:
        """Respawn backoff strategy for the crash monitor."""
        return backoff_from_schedule([d / 1000.0 for d in self.respawn_backoff_ms])


def load_config(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> WrapperConfig:
    """
    Load and validate wrapper configuration.

    Returns:
        WrapperConfig instance with loaded and validated values

    Raises:
        ValueError, FileNotFoundError, NotADirectoryError: If configuration is invalid
    """
    try:
        return WrapperConfig.load_config(argv, environ)
    except (ValueError, OSError) as e:
        logger.error(f"Configuration error: {e}")
        raise
