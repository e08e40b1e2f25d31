"""
Contract tests for the wrapper entry point.

Covers: exit codes, logging setup and signal-driven cancellation.
"""

import logging
import logging.handlers
import signal
import threading
from unittest.mock import patch

import pytest

from mcpwrap import __main__ as entry
from mcpwrap.proxy.errors import SpawnError


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Process environment without wrapper settings or a .env file."""
    for name in ("DEBUG_MCP_DIR", "PHP_BINARY", "WRAPPER_LOG_FILE", "WRAPPER_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WRAPPER_ENV_FILE", str(tmp_path / "missing.env"))
    return tmp_path


@pytest.fixture
def quiet_main():
    """Patch out logging and signal setup so main() leaves global state alone."""
    with patch.object(entry, "setup_logging") as setup_logging, \
            patch.object(entry, "install_signal_handlers") as install_signal_handlers:
        yield setup_logging, install_signal_handlers


class TestMainExitCodes:
    """main() maps outcomes to process exit codes."""

    def test_config_error_returns_2(self, clean_env, quiet_main, capsys):
        assert entry.main([]) == entry.EXIT_CONFIG == 2

        assert "working directory not specified" in capsys.readouterr().err

    def test_missing_working_dir_returns_2(self, clean_env, quiet_main):
        assert entry.main(["--cwd", str(clean_env / "nope")]) == 2

    def test_first_spawn_failure_returns_1(self, clean_env, quiet_main):
        with patch.object(entry, "Supervisor") as supervisor_cls:
            supervisor_cls.from_config.return_value.run.side_effect = SpawnError("php not found")

            assert entry.main(["--cwd", str(clean_env)]) == entry.EXIT_FATAL == 1

    def test_clean_shutdown_returns_0(self, clean_env, quiet_main):
        setup_logging, install_signal_handlers = quiet_main

        with patch.object(entry, "Supervisor") as supervisor_cls:
            assert entry.main(["--cwd", str(clean_env), "--log-level", "debug"]) == 0

        config = supervisor_cls.from_config.call_args[0][0]
        assert config.working_dir == str(clean_env)
        setup_logging.assert_called_once_with("DEBUG", None)

        # run() gets the same event the signal handlers set
        cancel_event = install_signal_handlers.call_args[0][0]
        supervisor_cls.from_config.return_value.run.assert_called_once_with(cancel_event)


class TestSignalHandlers:
    """SIGINT and SIGTERM request shutdown through the cancel event."""

    @pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
    def test_signal_sets_cancel_event(self, signum):
        original_int = signal.getsignal(signal.SIGINT)
        original_term = signal.getsignal(signal.SIGTERM)
        cancel_event = threading.Event()
        try:
            entry.install_signal_handlers(cancel_event)
            handler = signal.getsignal(signum)
            handler(signum, None)
        finally:
            signal.signal(signal.SIGINT, original_int)
            signal.signal(signal.SIGTERM, original_term)

        assert cancel_event.is_set()


class TestSetupLogging:
    """Logs go to stderr, plus an optional rotation-tolerant file."""

    def test_stderr_only_by_default(self):
        with patch.object(logging, "basicConfig") as basic_config:
            entry.setup_logging("WARNING")

        kwargs = basic_config.call_args.kwargs
        assert kwargs["level"] == logging.WARNING
        assert kwargs["format"] == entry.LOG_FORMAT
        assert len(kwargs["handlers"]) == 1
        assert isinstance(kwargs["handlers"][0], logging.StreamHandler)

    def test_log_file_adds_watched_file_handler(self, tmp_path):
        log_file = tmp_path / "wrapper.log"

        with patch.object(logging, "basicConfig") as basic_config:
            entry.setup_logging("INFO", str(log_file))

        handlers = basic_config.call_args.kwargs["handlers"]
        watched = [h for h in handlers if isinstance(h, logging.handlers.WatchedFileHandler)]
        try:
            assert len(watched) == 1
            assert log_file.exists()
        finally:
            for handler in watched:
                handler.close()
