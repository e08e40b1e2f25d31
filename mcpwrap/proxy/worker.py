"""
Worker process handle.

This module provides WorkerHandle, which owns exactly one worker process
(by default `php bin/debug-mcp` run inside the debug-mcp checkout) and its
stdin/stdout/stderr pipes. A handle is created together with its process
and is never reused: a restart allocates a new handle.

Pipe ownership:
- stdin is written by the supervisor and closed by stop()
- stdout is read and closed by the supervisor's output forwarder
- stderr is read and closed by the handle's own drain thread
"""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Union

from mcpwrap.proxy.errors import SpawnError, StopError

logger = logging.getLogger(__name__)


# Argument list passed to the executable, relative to the working directory
DEFAULT_WORKER_ARGS = ("bin/debug-mcp",)

# Time a worker gets to exit after SIGTERM before it is killed
DEFAULT_STOP_GRACE_SEC = 5.0

STDERR_READ_SIZE = 4096

# After a failed stdin write, how long to wait for the exit to become visible
WRITE_FAILURE_EXIT_WAIT_SEC = 0.5


class WorkerHandle:
    """
    Handle for one worker process.

    Spawn with WorkerHandle.spawn(). The handle is alive while its process
    is running. stop() sends SIGTERM, waits up to the grace period and then
    sends SIGKILL; it is idempotent and a no-op for a process that already
    exited. Using the handle as a context manager guarantees the process is
    stopped and its pipes closed on every exit path.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        cmd: Sequence[str],
        working_dir: Union[str, Path],
        stop_grace_sec: float = DEFAULT_STOP_GRACE_SEC,
    ) -> None:
        self._process = process
        self._cmd: List[str] = list(cmd)
        self._working_dir = Path(working_dir)
        self._stop_grace_sec = stop_grace_sec

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stderr_thread: Optional[threading.Thread] = None

    @classmethod
    def spawn(
        cls,
        working_dir: Union[str, Path],
        executable: str,
        args: Sequence[str] = DEFAULT_WORKER_ARGS,
        stop_grace_sec: float = DEFAULT_STOP_GRACE_SEC,
    ) -> "WorkerHandle":
        """
        Launch a worker and return its handle.

        Args:
            working_dir: Directory the worker runs in
            executable: Program to run (e.g. "php")
            args: Arguments passed to the program
            stop_grace_sec: Grace period between SIGTERM and SIGKILL in stop()

        Returns:
            A live WorkerHandle with pipes attached and stderr drain running

        Raises:
            SpawnError: If the executable, working directory or pipes could
                not be set up. No handle is retained in that case.
        """
        cmd = [executable, *args]
        logger.debug(f"Spawning worker: {' '.join(cmd)} (cwd={working_dir})")

        try:
            # Unbuffered binary pipes: reads return whatever is available
            process = subprocess.Popen(
                cmd,
                cwd=str(working_dir),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise SpawnError(f"Failed to start worker {cmd!r} in {working_dir}: {e}") from e

        handle = cls(process, cmd, working_dir, stop_grace_sec=stop_grace_sec)
        try:
            handle._start_stderr_drain()
        except RuntimeError as e:
            process.kill()
            process.wait()
            handle._close_pipes()
            raise SpawnError(f"Failed to start stderr drain for worker (PID: {process.pid}): {e}") from e

        logger.info(f"Worker process started (PID: {process.pid})")
        return handle

    @property
    def process(self) -> subprocess.Popen:
        return self._process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def cmd(self) -> List[str]:
        return list(self._cmd)

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def stdin(self) -> Optional[BinaryIO]:
        return self._process.stdin

    @property
    def stdout(self) -> Optional[BinaryIO]:
        return self._process.stdout

    @property
    def stderr(self) -> Optional[BinaryIO]:
        return self._process.stderr

    @property
    def stderr_thread(self) -> Optional[threading.Thread]:
        return self._stderr_thread

    def is_alive(self) -> bool:
        """Check if the worker process is still running."""
        return self._process.poll() is None

    def write(self, data: bytes) -> int:
        """
        Write all of data to the worker's stdin and flush it.

        Returns:
            Number of bytes written (always len(data))

        Raises:
            OSError: If the pipe is broken (e.g. BrokenPipeError)
            ValueError: If stdin is already closed
        """
        stdin = self._process.stdin
        if stdin is None or stdin.closed:
            raise ValueError(f"Worker stdin is closed (PID: {self.pid})")

        view = memoryview(data)
        while view:
            written = stdin.write(view)
            if written is None:
                written = 0
            view = view[written:]
        stdin.flush()
        return len(data)

    def wait(self, timeout: Optional[float] = None) -> int:
        """
        Block until the worker exits and return its exit status.

        Never signals the process. Safe to call from several threads at once.

        Raises:
            subprocess.TimeoutExpired: If timeout elapses first
        """
        return self._process.wait(timeout=timeout)

    def exited_after_failure(self) -> bool:
        """
        Report whether the worker is gone, allowing a short window for the exit.

        A broken stdin pipe usually means the process is exiting, but another
        thread blocked in wait() may not have reaped it yet.
        """
        try:
            self._process.wait(timeout=WRITE_FAILURE_EXIT_WAIT_SEC)
        except subprocess.TimeoutExpired:
            return False
        return True

    def stop(self) -> None:
        """
        Stop the worker gracefully, then forcibly.

        Shutdown flow:
        1. If the process already exited, return without signalling it
        2. Send SIGTERM and wait up to the grace period
        3. If still running, send SIGKILL and wait for the exit

        stdin is closed afterwards. Calling stop() again is a no-op.

        Raises:
            StopError: If SIGKILL could not be delivered
        """
        with self._stop_lock:
            if self._stopped:
                return
            try:
                self._terminate()
            finally:
                self._stopped = True
                self._close_stdin()

    def _terminate(self) -> None:
        pid = self._process.pid

        if self._process.poll() is not None:
            logger.debug(f"Worker already exited (PID: {pid}, exit code: {self._process.returncode})")
            return

        logger.info(f"Stopping worker process (PID: {pid})")

        try:
            self._process.terminate()
        except OSError as e:
            logger.warning(f"Failed to send SIGTERM to worker (PID: {pid}): {e}")
            self._kill()
            return

        try:
            exit_code = self._process.wait(timeout=self._stop_grace_sec)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"Worker did not stop within {self._stop_grace_sec:.1f}s, sending SIGKILL (PID: {pid})"
            )
            self._kill()
            return

        if exit_code not in (0, -signal.SIGTERM):
            logger.info(f"Worker exited with code {exit_code} (PID: {pid})")
        else:
            logger.info(f"Worker stopped gracefully (PID: {pid})")

    def _kill(self) -> None:
        pid = self._process.pid
        try:
            self._process.kill()
        except OSError as e:
            raise StopError(f"Failed to kill worker (PID: {pid}): {e}") from e
        self._process.wait()
        logger.info(f"Worker killed (PID: {pid}, exit code: {self._process.returncode})")

    def close(self) -> None:
        """
        Stop the worker and close every pipe the handle still owns.

        Must not be called while another thread is reading stdout; the
        supervisor relies on its output forwarder closing stdout instead.
        """
        try:
            self.stop()
        finally:
            if self._stderr_thread is not None and self._stderr_thread.is_alive():
                self._stderr_thread.join(timeout=1.0)
            self._close_pipes()

    def close_stdout(self) -> None:
        self._close_stream(self._process.stdout, "stdout")

    def __enter__(self) -> "WorkerHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"WorkerHandle(pid={self.pid}, alive={self.is_alive()})"

    def _start_stderr_drain(self) -> None:
        if self._process.stderr is None:
            return
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            daemon=True,
            name=f"WorkerStderrDrain-{self._process.pid}",
        )
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        """
        Forward worker stderr to the log until end-of-stream.

        End-of-stream means the worker exited and the pipe closed; it is the
        normal way out of this loop and is not reported as an error.
        """
        stderr = self._process.stderr
        pid = self._process.pid
        try:
            while True:
                try:
                    data = stderr.read(STDERR_READ_SIZE)
                except (OSError, ValueError) as e:
                    logger.debug(f"Worker stderr read error (likely closed, PID: {pid}): {e}")
                    break
                if not data:
                    break
                text = data.decode(errors="replace").rstrip()
                if text:
                    logger.warning(f"[worker stderr] {text}")
        finally:
            self._close_stream(stderr, "stderr")
            logger.debug(f"Worker stderr drain thread exiting (PID: {pid})")

    def _close_stdin(self) -> None:
        self._close_stream(self._process.stdin, "stdin")

    def _close_pipes(self) -> None:
        self._close_stream(self._process.stdin, "stdin")
        self._close_stream(self._process.stdout, "stdout")
        self._close_stream(self._process.stderr, "stderr")

    def _close_stream(self, stream: Optional[BinaryIO], name: str) -> None:
        if stream is None or stream.closed:
            return
        try:
            stream.close()
        except OSError as e:
            # Closing a pipe whose reader is gone can raise BrokenPipeError
            logger.debug(f"Error closing worker {name} (PID: {self._process.pid}): {e}")
