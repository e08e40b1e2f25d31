"""
Shared pytest fixtures for contract tests.
"""
import sys
import threading

import pytest

from mcpwrap.proxy.backoff import NoBackoff
from mcpwrap.proxy.supervisor import Supervisor
from mcpwrap.tests.contracts._wrapper_harness import (
    ECHO_WORKER,
    InputPipe,
    OutputCollector,
    SupervisorRunner,
    wait_until,
    write_worker_script,
)


@pytest.fixture
def worker_dir(tmp_path):
    """Working directory holding bin/debug-mcp as an echo worker.

    Tests that need a different worker overwrite the script with
    write_worker_script() before spawning.
    """
    write_worker_script(tmp_path, ECHO_WORKER)
    return tmp_path


@pytest.fixture
def input_pipe():
    pipe = InputPipe()
    yield pipe
    pipe.close()


@pytest.fixture
def output():
    return OutputCollector()


@pytest.fixture
def make_supervisor(worker_dir, input_pipe, output):
    """
    Factory for a Supervisor wired to the test pipes and the echo worker.

    The timer is effectively disabled and backoff is NoBackoff unless the
    test overrides them.
    """

    def _make(**overrides) -> Supervisor:
        kwargs = dict(
            working_dir=worker_dir,
            executable=sys.executable,
            restart_interval_sec=3600.0,
            buffer_size=100,
            stop_grace_sec=1.0,
            backoff=NoBackoff(),
            input_stream=input_pipe.reader,
            output_stream=output,
        )
        kwargs.update(overrides)
        return Supervisor(**kwargs)

    return _make


@pytest.fixture
def start_supervisor(input_pipe):
    """Run a Supervisor in the background; every runner is stopped on teardown."""
    runners = []

    def _start(supervisor: Supervisor) -> SupervisorRunner:
        runner = SupervisorRunner(supervisor, input_pipe)
        runners.append(runner)
        runner.start()
        return runner

    yield _start

    for runner in runners:
        assert runner.stop(), "Supervisor run() did not return after cancellation"


@pytest.fixture(autouse=False)  # Request explicitly; the input forwarder may outlive a test
def thread_leak_guard():
    """
    Optional fixture to detect thread leaks between tests.

    Ensures supervisor shutdown actually ends the threads it started.
    Drain threads end at their pipe's EOF, so allow them a moment.
    """
    before = set(t.ident for t in threading.enumerate())
    yield

    def _leaked():
        return [t for t in threading.enumerate() if t.ident not in before and t.is_alive()]

    wait_until(lambda: not _leaked(), timeout=2.0)
    leaked_threads = _leaked()
    if leaked_threads:
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked_threads)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
