"""
Contract tests for wrapper configuration

Covers: defaults, environment variables, .env file defaults, flag
precedence, validation and Supervisor.from_config().
"""

import io

import pytest

from mcpwrap.config import WrapperConfig, load_config
from mcpwrap.proxy.backoff import FixedBackoff, NoBackoff, ScheduleBackoff
from mcpwrap.proxy.supervisor import Supervisor


@pytest.fixture
def base_env(tmp_path):
    """Environment pointing at a real working directory and no .env file."""
    return {
        "DEBUG_MCP_DIR": str(tmp_path),
        "WRAPPER_ENV_FILE": str(tmp_path / "missing.env"),
    }


class TestConfigDefaults:
    """Defaults when only the working directory is given."""

    def test_defaults(self, base_env, tmp_path):
        config = WrapperConfig.load_config([], base_env)

        assert config.working_dir == str(tmp_path)
        assert config.executable == "php"
        assert config.worker_args == ["bin/debug-mcp"]
        assert config.restart_interval_sec == 60.0
        assert config.buffer_size == 100
        assert config.stop_grace_sec == 5.0
        assert config.respawn_backoff_ms == [1000]
        assert config.read_chunk_size == 4096
        assert config.exit_on_input_eof is False
        assert config.log_level == "INFO"
        assert config.log_file is None

    def test_default_backoff_is_fixed_one_second(self, base_env):
        backoff = WrapperConfig.load_config([], base_env).build_backoff()

        assert isinstance(backoff, FixedBackoff)
        assert backoff.next_delay(1) == 1.0


class TestConfigSources:
    """Environment, .env file and flag precedence."""

    def test_environment_values(self, base_env):
        env = dict(
            base_env,
            PHP_BINARY="/usr/bin/php8.3",
            WRAPPER_WORKER_ARGS="bin/debug-mcp --verbose",
            WRAPPER_RESTART_INTERVAL_SEC="30",
            WRAPPER_BUFFER_SIZE="50",
            WRAPPER_STOP_GRACE_SEC="2.5",
            WRAPPER_RESPAWN_BACKOFF_MS="100,200,400",
            WRAPPER_READ_CHUNK_SIZE="1024",
            WRAPPER_EXIT_ON_EOF="true",
            WRAPPER_LOG_LEVEL="debug",
        )

        config = WrapperConfig.load_config([], env)

        assert config.executable == "/usr/bin/php8.3"
        assert config.worker_args == ["bin/debug-mcp", "--verbose"]
        assert config.restart_interval_sec == 30.0
        assert config.buffer_size == 50
        assert config.stop_grace_sec == 2.5
        assert config.respawn_backoff_ms == [100, 200, 400]
        assert isinstance(config.build_backoff(), ScheduleBackoff)
        assert config.read_chunk_size == 1024
        assert config.exit_on_input_eof is True
        assert config.log_level == "DEBUG"

    def test_flags_override_environment(self, base_env, tmp_path):
        other_dir = tmp_path / "checkout"
        other_dir.mkdir()
        env = dict(base_env, PHP_BINARY="php7", WRAPPER_BUFFER_SIZE="50")
        argv = [
            "--cwd", str(other_dir),
            "--php", "php8",
            "--restart-interval", "15",
            "--buffer-size", "10",
            "--exit-on-eof",
            "--log-level", "warning",
            "--log-file", str(tmp_path / "wrapper.log"),
        ]

        config = WrapperConfig.load_config(argv, env)

        assert config.working_dir == str(other_dir)
        assert config.executable == "php8"
        assert config.restart_interval_sec == 15.0
        assert config.buffer_size == 10
        assert config.exit_on_input_eof is True
        assert config.log_level == "WARNING"
        assert config.log_file == str(tmp_path / "wrapper.log")

    def test_env_file_supplies_defaults_without_overriding(self, tmp_path):
        env_file = tmp_path / "wrapper.env"
        env_file.write_text(
            f"DEBUG_MCP_DIR={tmp_path}\n"
            "WRAPPER_BUFFER_SIZE=25\n"
            "WRAPPER_RESTART_INTERVAL_SEC=90\n"
        )
        env = {
            "WRAPPER_ENV_FILE": str(env_file),
            "WRAPPER_RESTART_INTERVAL_SEC": "45",
        }

        config = WrapperConfig.load_config([], env)

        assert config.working_dir == str(tmp_path)
        assert config.buffer_size == 25
        assert config.restart_interval_sec == 45.0

    def test_zero_backoff_builds_no_backoff(self, base_env):
        env = dict(base_env, WRAPPER_RESPAWN_BACKOFF_MS="0")

        assert isinstance(WrapperConfig.load_config([], env).build_backoff(), NoBackoff)

    def test_zero_interval_is_valid(self, base_env):
        config = WrapperConfig.load_config(["--restart-interval", "0"], base_env)

        assert config.restart_interval_sec == 0.0


class TestConfigValidation:
    """Invalid configuration is rejected before anything is spawned."""

    def test_missing_working_dir(self, tmp_path):
        env = {"WRAPPER_ENV_FILE": str(tmp_path / "missing.env")}

        with pytest.raises(ValueError, match="working directory not specified"):
            WrapperConfig.load_config([], env)

    def test_nonexistent_working_dir(self, base_env, tmp_path):
        with pytest.raises(FileNotFoundError):
            WrapperConfig.load_config(["--cwd", str(tmp_path / "nope")], base_env)

    def test_working_dir_is_a_file(self, base_env, tmp_path):
        not_a_dir = tmp_path / "file.txt"
        not_a_dir.write_text("x")

        with pytest.raises(NotADirectoryError):
            WrapperConfig.load_config(["--cwd", str(not_a_dir)], base_env)

    @pytest.mark.parametrize(
        "name, value",
        [
            ("WRAPPER_BUFFER_SIZE", "0"),
            ("WRAPPER_BUFFER_SIZE", "lots"),
            ("WRAPPER_RESTART_INTERVAL_SEC", "-1"),
            ("WRAPPER_RESTART_INTERVAL_SEC", "soon"),
            ("WRAPPER_STOP_GRACE_SEC", "-0.5"),
            ("WRAPPER_RESPAWN_BACKOFF_MS", "100,x"),
            ("WRAPPER_READ_CHUNK_SIZE", "0"),
            ("WRAPPER_LOG_LEVEL", "chatty"),
        ],
    )
    def test_invalid_values_rejected(self, base_env, name, value):
        env = dict(base_env, **{name: value})

        with pytest.raises(ValueError):
            WrapperConfig.load_config([], env)

    def test_module_load_config_logs_and_reraises(self, tmp_path, caplog):
        env = {"WRAPPER_ENV_FILE": str(tmp_path / "missing.env")}

        with caplog.at_level("ERROR", logger="mcpwrap.config"):
            with pytest.raises(ValueError):
                load_config([], env)

        assert any("Configuration error" in r.getMessage() for r in caplog.records)


class TestSupervisorFromConfig:
    """Supervisor.from_config() carries every relevant setting."""

    def test_from_config(self, base_env):
        env = dict(base_env, WRAPPER_BUFFER_SIZE="7", WRAPPER_RESPAWN_BACKOFF_MS="0")
        config = WrapperConfig.load_config(["--restart-interval", "12"], env)

        supervisor = Supervisor.from_config(config, input_stream=io.BytesIO(), output_stream=io.BytesIO())

        assert supervisor.buffer.capacity == 7
        assert supervisor._restart_interval_sec == 12.0
        assert isinstance(supervisor._backoff, NoBackoff)
        assert supervisor.state.name == "STOPPED"
