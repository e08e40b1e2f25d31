"""
Restart-coordination core.

This package provides the components that keep one worker process behind an
uninterrupted byte stream:
- WorkerHandle: Owns one worker process and its pipes
- ReplayBuffer: Holds client input while a worker is being replaced
- Supervisor: Restart timer, crash monitor and stdio forwarding
"""

from mcpwrap.proxy.backoff import BackoffStrategy, FixedBackoff, NoBackoff, ScheduleBackoff
from mcpwrap.proxy.errors import ForwardError, ReplayError, SpawnError, StopError, WrapperError
from mcpwrap.proxy.replay_buffer import ReplayBuffer, ReplayBufferStats
from mcpwrap.proxy.supervisor import Supervisor, SupervisorState
from mcpwrap.proxy.worker import WorkerHandle

__all__ = [
    "BackoffStrategy",
    "FixedBackoff",
    "NoBackoff",
    "ScheduleBackoff",
    "ForwardError",
    "ReplayError",
    "SpawnError",
    "StopError",
    "WrapperError",
    "ReplayBuffer",
    "ReplayBufferStats",
    "Supervisor",
    "SupervisorState",
    "WorkerHandle",
]
