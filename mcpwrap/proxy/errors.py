"""
Error taxonomy for the restart-coordination core.

Each error is local to one activity. Only a first-spawn SpawnError is fatal
to the supervisor; everything else is logged or recovered by the caller.
"""


class WrapperError(Exception):
    """Base class for all wrapper errors."""
    pass


class SpawnError(WrapperError):
    """Worker executable or pipe setup failed."""
    pass


class StopError(WrapperError):
    """Terminate or kill signal could not be delivered to the worker."""
    pass


class ReplayError(WrapperError):
    """
    A write failed while draining the replay buffer into a worker.

    Attributes:
        written: Number of chunks written (and removed) before the failure
        remaining: Number of chunks still buffered after the failure
    """

    def __init__(self, message: str, written: int = 0, remaining: int = 0) -> None:
        super().__init__(message)
        self.written = written
        self.remaining = remaining


class ForwardError(WrapperError):
    """A read or write failed in a forwarding activity."""
    pass
