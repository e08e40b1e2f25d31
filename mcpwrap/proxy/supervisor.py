"""
Restart-coordinating supervisor for the debug-mcp worker.

This module provides Supervisor, which fronts a short-lived, leak-prone
worker process with one uninterrupted byte stream on its own stdin/stdout.
The worker is replaced on a fixed timer and immediately respawned when it
dies on its own. Client input that arrives while a replacement is under way
is parked in a ReplayBuffer and drained into the new worker.

Threads:
- RestartTimer: fires restart() every restart interval
- CrashMonitor: waits on the current worker and recovers unexpected exits
- InputForward: client input -> worker stdin (or the replay buffer)
- WorkerStdoutForward-<pid>: worker stdout -> client output, one per worker

Coordination:
The current worker, the restart-in-progress flag and the supervisor state
are guarded by one condition. A new worker is swapped in under the lock
with the flag still set, so client input keeps going to the buffer while
the buffer is replayed outside the lock. The flag is cleared under the
lock only once the buffer is observed empty, so input is never written to
a new worker ahead of older buffered input, and shutdown can always take
the lock to stop a worker that will not read.

In-flight input:
A chunk already written to the old worker's stdin when it is stopped is
lost if the old worker never read it. A chunk whose write fails because
the worker exited or was replaced is routed again, to the buffer or to the
new worker.
"""

from __future__ import annotations

import enum
import logging
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Callable, List, Optional, Sequence, Union

from mcpwrap.proxy.backoff import BackoffStrategy, FixedBackoff
from mcpwrap.proxy.errors import ForwardError, ReplayError, SpawnError, StopError
from mcpwrap.proxy.replay_buffer import ReplayBuffer
from mcpwrap.proxy.worker import DEFAULT_STOP_GRACE_SEC, DEFAULT_WORKER_ARGS, WorkerHandle

if TYPE_CHECKING:
    from mcpwrap.config import WrapperConfig

logger = logging.getLogger(__name__)


class SupervisorState(enum.Enum):
    """Supervisor lifecycle states."""
    STOPPED = 1
    STARTING = 2
    RUNNING = 3
    RESTARTING = 4  # Timed replacement: stop old worker, spawn, replay
    RECOVERING = 5  # Unexpected exit: spawn, replay (no stop step)
    SHUTTING_DOWN = 6


DEFAULT_EXECUTABLE = "php"
DEFAULT_RESTART_INTERVAL_SEC = 60.0
DEFAULT_BUFFER_SIZE = 100
DEFAULT_READ_CHUNK_SIZE = 4096

# How often run() re-checks the cancel event
CANCEL_POLL_SEC = 0.5

THREAD_JOIN_TIMEOUT_SEC = 2.0


class Supervisor:
    """
    Long-lived supervisor that periodically replaces its worker.

    Lifecycle: STOPPED -> STARTING -> RUNNING <-> RESTARTING/RECOVERING
    -> SHUTTING_DOWN -> STOPPED. A Supervisor runs once.

    Attributes:
        buffer: ReplayBuffer holding client input during replacements
    """

    def __init__(
        self,
        working_dir: Union[str, Path],
        executable: str = DEFAULT_EXECUTABLE,
        worker_args: Sequence[str] = DEFAULT_WORKER_ARGS,
        restart_interval_sec: float = DEFAULT_RESTART_INTERVAL_SEC,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        stop_grace_sec: float = DEFAULT_STOP_GRACE_SEC,
        backoff: Optional[BackoffStrategy] = None,
        input_stream: Optional[BinaryIO] = None,
        output_stream: Optional[BinaryIO] = None,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
        exit_on_input_eof: bool = False,
        on_state_change: Optional[Callable[[SupervisorState], None]] = None,
    ) -> None:
        """
        Initialize supervisor.

        Args:
            working_dir: Directory the worker runs in
            executable: Worker program (default: "php")
            worker_args: Arguments for the worker program (default: bin/debug-mcp)
            restart_interval_sec: Period of timed restarts; <= 0 disables the timer
            buffer_size: ReplayBuffer capacity in chunks
            stop_grace_sec: Grace period between SIGTERM and SIGKILL
            backoff: Delay policy between failed respawns (default: FixedBackoff(1.0))
            input_stream: Client input (default: sys.stdin.buffer)
            output_stream: Client output (default: sys.stdout.buffer)
            read_chunk_size: Maximum bytes per read on either direction
            exit_on_input_eof: Shut down when client input reaches end-of-stream
            on_state_change: Optional callback, invoked outside the lock
        """
        if read_chunk_size <= 0:
            raise ValueError(f"read_chunk_size must be > 0, got {read_chunk_size}")

        self._working_dir = Path(working_dir)
        self._executable = executable
        self._worker_args = list(worker_args)
        self._restart_interval_sec = restart_interval_sec
        self._stop_grace_sec = stop_grace_sec
        self._backoff = backoff if backoff is not None else FixedBackoff()
        self._input = input_stream if input_stream is not None else sys.stdin.buffer
        self._output = output_stream if output_stream is not None else sys.stdout.buffer
        self._read_chunk_size = read_chunk_size
        self._exit_on_input_eof = exit_on_input_eof
        self._on_state_change = on_state_change

        self.buffer = ReplayBuffer(buffer_size)

        # Guards _worker, _restarting and _state
        self._cond = threading.Condition(threading.Lock())
        self._worker: Optional[WorkerHandle] = None
        self._restarting = False
        self._state = SupervisorState.STOPPED
        self._started = False

        self._shutdown_event = threading.Event()
        self._cancel_event: Optional[threading.Event] = None

        # Serializes writes to client output across old and new workers
        self._output_lock = threading.Lock()

        self._timer_thread: Optional[threading.Thread] = None
        self._monitor_thread: Optional[threading.Thread] = None
        self._input_thread: Optional[threading.Thread] = None
        self._output_threads: List[threading.Thread] = []

        self._restart_count = 0
        self._crash_count = 0
        self._respawn_count = 0

    @classmethod
    def from_config(cls, config: "WrapperConfig", **overrides) -> "Supervisor":
        """Build a Supervisor from a WrapperConfig; keyword overrides win."""
        kwargs = dict(
            working_dir=config.working_dir,
            executable=config.executable,
            worker_args=config.worker_args,
            restart_interval_sec=config.restart_interval_sec,
            buffer_size=config.buffer_size,
            stop_grace_sec=config.stop_grace_sec,
            backoff=config.build_backoff(),
            read_chunk_size=config.read_chunk_size,
            exit_on_input_eof=config.exit_on_input_eof,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ── Observation ────────────────────────────────────────────────

    @property
    def state(self) -> SupervisorState:
        with self._cond:
            return self._state

    @property
    def restarting(self) -> bool:
        """Whether client input is currently routed to the replay buffer."""
        with self._cond:
            return self._restarting

    @property
    def current_worker(self) -> Optional[WorkerHandle]:
        with self._cond:
            return self._worker

    @property
    def restart_count(self) -> int:
        """Completed restart cycles (timer or explicit)."""
        return self._restart_count

    @property
    def crash_count(self) -> int:
        """Unexpected worker exits observed by the crash monitor."""
        return self._crash_count

    @property
    def respawn_count(self) -> int:
        """Replacements installed by the crash monitor."""
        return self._respawn_count

    # ── Lifecycle ──────────────────────────────────────────────────

    def run(self, cancel_event: threading.Event) -> None:
        """
        Run until cancel_event is set.

        Spawns the first worker, starts the background activities and blocks.
        On cancellation, stops the current worker and joins the threads.

        Args:
            cancel_event: Caller-owned cancellation signal

        Raises:
            SpawnError: If the first worker cannot be started
            RuntimeError: If the supervisor has already been run
        """
        with self._cond:
            if self._started:
                raise RuntimeError(f"Cannot run supervisor in state: {self._state.name}")
            self._started = True
            changed = self._set_state_locked(SupervisorState.STARTING)
        self._notify_state(changed)

        self._cancel_event = cancel_event

        logger.info("Starting worker process")
        try:
            worker = self._spawn_worker()
        except SpawnError:
            with self._cond:
                changed = self._set_state_locked(SupervisorState.STOPPED)
            self._notify_state(changed)
            raise

        with self._cond:
            self._worker = worker
            self._start_output_forwarder(worker)
            changed = self._set_state_locked(SupervisorState.RUNNING)
        self._notify_state(changed)

        try:
            if self._restart_interval_sec > 0:
                self._timer_thread = self._start_thread(self._restart_timer_loop, "RestartTimer")
            else:
                logger.info("Restart timer disabled")
            self._monitor_thread = self._start_thread(self._crash_monitor_loop, "CrashMonitor")
            self._input_thread = self._start_thread(self._input_forward_loop, "InputForward")

            while not cancel_event.wait(CANCEL_POLL_SEC):
                continue
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        logger.info("Shutting down supervisor")

        self._shutdown_event.set()
        with self._cond:
            changed = self._set_state_locked(SupervisorState.SHUTTING_DOWN)
            worker = self._worker
            self._cond.notify_all()
        self._notify_state(changed)

        if worker is not None:
            self._stop_worker(worker)

        # A restart or recovery that was mid-flight discards its new worker
        # once it sees the shutdown event; wait for it to do so.
        for thread in (self._timer_thread, self._monitor_thread):
            if thread is not None and thread.is_alive():
                thread.join(timeout=self._stop_grace_sec + THREAD_JOIN_TIMEOUT_SEC)
                if thread.is_alive():
                    logger.warning(f"{thread.name} thread did not terminate within timeout")

        with self._cond:
            worker = self._worker
        if worker is not None:
            self._stop_worker(worker)

        for thread in list(self._output_threads):
            thread.join(timeout=THREAD_JOIN_TIMEOUT_SEC)
            if thread.is_alive():
                logger.warning(f"{thread.name} thread did not terminate within timeout")

        # The input forwarder may be parked in a blocking read of client input
        # that nothing can interrupt; it is a daemon thread and is left behind.
        if self._input_thread is not None and self._input_thread.is_alive():
            self._input_thread.join(timeout=0.1)
            if self._input_thread.is_alive():
                logger.debug("Input forwarder still blocked on client input, leaving it to exit with the process")

        dropped = self.buffer.clear()
        if dropped:
            logger.warning(f"Discarded {dropped} buffered input chunk(s) at shutdown")

        with self._cond:
            changed = self._set_state_locked(SupervisorState.STOPPED)
        self._notify_state(changed)
        logger.info("Supervisor stopped")

    # ── Restart cycle ──────────────────────────────────────────────

    def restart(self, reason: str = "timer") -> bool:
        """
        Replace the current worker: stop old, spawn new, replay buffer.

        Client input is buffered from the moment the flag is set until the
        replay into the new worker completes or is abandoned. The flag is
        always cleared when this returns or raises.

        Args:
            reason: Short label for the log

        Returns:
            True if a new worker was installed, False if the cycle was skipped
            (another restart or recovery in progress, or shutting down)

        Raises:
            SpawnError: If the replacement could not be started
            ReplayError: If replaying buffered input into the new worker failed
        """
        with self._cond:
            if self._shutdown_event.is_set() or self._state != SupervisorState.RUNNING:
                logger.info(f"Restart ({reason}) skipped in state {self._state.name}")
                return False
            if self._restarting:
                logger.info(f"Restart ({reason}) skipped: another restart is already in progress")
                return False
            self._restarting = True
            changed = self._set_state_locked(SupervisorState.RESTARTING)
            old_worker = self._worker
        self._notify_state(changed)

        logger.info(f"Restarting worker ({reason}), buffering client input")
        try:
            if old_worker is not None:
                self._stop_worker(old_worker)

            new_worker = self._spawn_worker()
            if not self._install_worker(new_worker):
                return False
            self._restart_count += 1
            logger.info(f"Worker restart complete (restart #{self._restart_count}, PID: {new_worker.pid})")
            return True
        finally:
            self._finish_restart()

    def _install_worker(self, worker: WorkerHandle) -> bool:
        """
        Swap in worker, replay buffered input into it and clear the flag.

        The swap happens under the lock; the replay does not. Client input
        keeps going to the buffer while the flag is set, so the flag is only
        cleared once a replay pass ends with the buffer observed empty. A
        shutdown that starts meanwhile can still take the lock and stop the
        new worker, which breaks a replay blocked on a worker that does not
        read its stdin.

        Returns:
            False if the supervisor is shutting down and worker was discarded

        Raises:
            ReplayError: If the replay failed. The worker is installed anyway
                and the unsent chunks stay buffered.
        """
        with self._cond:
            discard = self._shutdown_event.is_set()
            if not discard:
                self._worker = worker
                # Drain stdout before replaying so a chatty worker cannot stall the replay
                self._start_output_forwarder(worker)

        if discard:
            logger.info(f"Shutdown in progress, discarding new worker (PID: {worker.pid})")
            self._stop_worker(worker)
            return False

        pending = self.buffer.length()
        if pending:
            logger.info(f"Replaying {pending} buffered input chunk(s)")

        try:
            while True:
                self.buffer.replay(worker)
                with self._cond:
                    if self.buffer.is_empty() or self._shutdown_event.is_set():
                        changed = self._clear_restart_locked()
                        break
        except ReplayError:
            with self._cond:
                changed = self._clear_restart_locked()
            self._notify_state(changed)
            raise

        self._notify_state(changed)
        return True

    def _clear_restart_locked(self) -> Optional[SupervisorState]:
        """Clear the flag and wake waiters; caller holds the lock."""
        self._restarting = False
        changed = None
        if not self._shutdown_event.is_set():
            changed = self._set_state_locked(SupervisorState.RUNNING)
        self._cond.notify_all()
        return changed

    def _finish_restart(self) -> None:
        """Clear the restart flag if a failed cycle left it set."""
        with self._cond:
            if not self._restarting:
                return
            changed = self._clear_restart_locked()
        self._notify_state(changed)

    def _spawn_worker(self) -> WorkerHandle:
        return WorkerHandle.spawn(
            self._working_dir,
            self._executable,
            self._worker_args,
            stop_grace_sec=self._stop_grace_sec,
        )

    def _stop_worker(self, worker: WorkerHandle) -> None:
        try:
            worker.stop()
        except StopError as e:
            logger.error(f"Error stopping worker: {e}")

    # ── Background activities ──────────────────────────────────────

    def _restart_timer_loop(self) -> None:
        """Trigger a restart cycle every restart interval until shutdown."""
        logger.debug(f"Restart timer started (interval: {self._restart_interval_sec}s)")
        while not self._shutdown_event.wait(self._restart_interval_sec):
            logger.info("Restart timer triggered")
            try:
                self.restart(reason="timer")
            except (SpawnError, ReplayError) as e:
                logger.error(f"Failed to restart worker: {e}")
        logger.debug("Restart timer exiting")

    def _crash_monitor_loop(self) -> None:
        """
        Watch the current worker and replace it when it exits on its own.

        Exits during a restart cycle are expected and ignored. A failed
        respawn is retried forever, waiting backoff.next_delay() in between.
        """
        attempt = 0
        crashed: Optional[WorkerHandle] = None
        while not self._shutdown_event.is_set():
            with self._cond:
                worker = self._worker
            if worker is None:
                break
            if attempt and worker is not crashed:
                # A restart replaced the crashed worker between respawn attempts
                attempt = 0
                self._backoff.reset()

            exit_code = worker.wait()

            with self._cond:
                if self._shutdown_event.is_set():
                    break
                if self._restarting:
                    # Planned stop; the restart cycle owns the replacement
                    self._cond.wait_for(
                        lambda: not self._restarting or self._shutdown_event.is_set()
                    )
                    continue
                if self._worker is not worker:
                    continue
                self._restarting = True
                changed = self._set_state_locked(SupervisorState.RECOVERING)
            self._notify_state(changed)
            crashed = worker

            if attempt == 0:
                self._crash_count += 1
                logger.error(
                    f"Worker died unexpectedly (PID: {worker.pid}, exit code: {exit_code}), "
                    f"attempting immediate restart"
                )
            else:
                logger.info(f"Respawn attempt {attempt + 1}")

            try:
                new_worker = self._spawn_worker()
            except SpawnError as e:
                self._finish_restart()
                attempt += 1
                delay = self._backoff.next_delay(attempt)
                logger.error(f"Failed to respawn worker: {e} (retrying in {delay:.1f}s)")
                if self._shutdown_event.wait(delay):
                    break
                continue

            try:
                installed = self._install_worker(new_worker)
            except ReplayError as e:
                installed = True
                logger.error(f"Failed to replay buffered input after recovery: {e}")
            finally:
                self._finish_restart()

            if installed:
                attempt = 0
                self._backoff.reset()
                self._respawn_count += 1
                logger.info(f"Worker recovered (PID: {new_worker.pid})")

        logger.debug("Crash monitor exiting")

    def _input_forward_loop(self) -> None:
        """Forward client input to the current worker until end-of-stream."""
        logger.debug("Input forwarder started")
        try:
            while True:
                chunk = self._read_input()
                if not chunk:
                    logger.info("Client input closed (EOF)")
                    if self._exit_on_input_eof and self._cancel_event is not None:
                        logger.info("Exit on input EOF enabled, requesting shutdown")
                        self._cancel_event.set()
                    break
                self._forward_chunk(chunk)
        except ForwardError as e:
            logger.error(f"Input forwarding stopped: {e}")
        finally:
            logger.debug("Input forwarder exiting")

    def _read_input(self) -> bytes:
        read = getattr(self._input, "read1", None) or self._input.read
        try:
            return read(self._read_chunk_size)
        except (OSError, ValueError) as e:
            raise ForwardError(f"Failed to read client input: {e}") from e

    def _forward_chunk(self, chunk: bytes) -> None:
        """
        Route one chunk to the replay buffer or the current worker.

        The chunk is buffered while a restart is in progress, while shutting
        down, or when the current worker is already dead (the crash monitor
        will replay it into the replacement). The write itself happens
        outside the lock.

        Raises:
            ForwardError: If the write failed while the worker is still alive
                and current
        """
        data = bytes(chunk)
        while True:
            with self._cond:
                worker = self._worker
                if (
                    self._restarting
                    or self._shutdown_event.is_set()
                    or worker is None
                    or not worker.is_alive()
                ):
                    self.buffer.add(data)
                    return

            try:
                worker.write(data)
                return
            except (OSError, ValueError) as e:
                with self._cond:
                    superseded = self._restarting or self._worker is not worker
                if superseded or worker.exited_after_failure():
                    logger.warning(
                        f"Write to worker (PID: {worker.pid}) failed while it was being replaced, "
                        f"re-routing {len(data)} byte(s): {e}"
                    )
                    continue
                raise ForwardError(f"Failed to write to worker stdin (PID: {worker.pid}): {e}") from e

    def _start_output_forwarder(self, worker: WorkerHandle) -> None:
        self._output_threads = [t for t in self._output_threads if t.is_alive()]
        thread = self._start_thread(
            lambda: self._output_forward_loop(worker),
            f"WorkerStdoutForward-{worker.pid}",
        )
        self._output_threads.append(thread)

    def _output_forward_loop(self, worker: WorkerHandle) -> None:
        """Copy one worker's stdout to client output until end-of-stream."""
        stdout = worker.stdout
        pid = worker.pid
        if stdout is None:
            return
        try:
            while True:
                try:
                    data = stdout.read(self._read_chunk_size)
                except (OSError, ValueError) as e:
                    raise ForwardError(f"Failed to read worker stdout (PID: {pid}): {e}") from e
                if not data:
                    logger.debug(f"Worker stdout closed (PID: {pid})")
                    break
                with self._output_lock:
                    try:
                        self._output.write(data)
                        self._output.flush()
                    except (OSError, ValueError) as e:
                        raise ForwardError(f"Failed to write client output: {e}") from e
        except ForwardError as e:
            logger.error(f"Output forwarding stopped: {e}")
        finally:
            worker.close_stdout()

    # ── Helpers ────────────────────────────────────────────────────

    def _start_thread(self, target: Callable[[], None], name: str) -> threading.Thread:
        thread = threading.Thread(target=target, daemon=True, name=name)
        thread.start()
        return thread

    def _set_state_locked(self, new_state: SupervisorState) -> Optional[SupervisorState]:
        """Set state; caller holds the lock. Returns new_state if it changed."""
        old_state = self._state
        self._state = new_state
        if old_state == new_state:
            return None
        logger.debug(f"Supervisor state: {old_state.name} -> {new_state.name}")
        return new_state

    def _notify_state(self, state: Optional[SupervisorState]) -> None:
        # Callbacks run outside the lock to avoid deadlock
        if state is not None and self._on_state_change:
            self._on_state_change(state)
