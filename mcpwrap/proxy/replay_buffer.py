"""
Thread-safe replay buffer for client input.

This module provides ReplayBuffer, a bounded FIFO of opaque byte chunks.
While a worker is being replaced, the supervisor parks client input here
and drains it into the new worker once it is up. Chunks are stored whole:
when the buffer is full the oldest chunk is dropped, never a partial one.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import BinaryIO, Tuple

from mcpwrap.proxy.errors import ReplayError

logger = logging.getLogger(__name__)


@dataclass
class ReplayBufferStats:
    """
    Statistics for ReplayBuffer.

    Attributes:
        capacity: Maximum number of chunks the buffer can hold
        count: Current number of chunks in the buffer
        total_added: Chunks accepted by add() since creation
        total_dropped: Chunks evicted because the buffer was full
        total_replayed: Chunks successfully written by replay()
    """
    capacity: int
    count: int
    total_added: int
    total_dropped: int
    total_replayed: int


class ReplayBuffer:
    """
    Bounded, ordered, thread-safe store of pending input chunks.

    Insertion order is arrival order and is preserved through eviction and
    replay. When full, add() evicts the single oldest chunk before appending
    the new one. One lock guards the chunk queue; it is never held across a
    write to a sink, so add(), length() and clear() return promptly even
    while a replay is blocked on a slow reader. Replays are serialized by a
    second lock.

    Attributes:
        capacity: Maximum number of chunks the buffer can hold
    """

    def __init__(self, capacity: int) -> None:
        """
        Initialize replay buffer.

        Args:
            capacity: Maximum number of chunks (must be > 0)

        Raises:
            ValueError: If capacity <= 0
        """
        if capacity <= 0:
            raise ValueError(f"ReplayBuffer capacity must be > 0, got {capacity}")

        self._capacity = capacity
        # (sequence number, chunk); maxlen makes append() drop the oldest entry when full
        self._chunks: deque[Tuple[int, bytes]] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._replay_lock = threading.Lock()
        self._next_seq = 0

        self._total_added = 0
        self._total_dropped = 0
        self._total_replayed = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, chunk: bytes) -> None:
        """
        Append a copy of chunk, evicting the oldest chunk if full.

        The chunk is copied before it is stored, so callers may reuse or
        overwrite their read buffer as soon as this returns.

        Args:
            chunk: Bytes-like input chunk (must not be empty)

        Raises:
            ValueError: If chunk is None or empty
        """
        if not chunk:
            raise ValueError("Cannot buffer None or empty chunk")

        data = bytes(chunk)

        with self._lock:
            was_full = len(self._chunks) >= self._capacity
            self._chunks.append((self._next_seq, data))
            self._next_seq += 1
            self._total_added += 1
            if was_full:
                self._total_dropped += 1

        if was_full:
            logger.warning(
                f"Replay buffer full ({self._capacity} chunks), dropped oldest chunk"
            )

    def replay(self, sink: BinaryIO) -> int:
        """
        Write buffered chunks to sink in arrival order until none are left.

        Each chunk is written in full, looping over short writes, and leaves
        the buffer only after its write succeeded. Chunks added while the
        replay runs are replayed too. On the first failed write, the unsent
        part of the failing chunk and all later chunks stay buffered and
        ReplayError is raised, so no byte is ever replayed twice.

        Args:
            sink: Writable binary stream (a worker stdin pipe or WorkerHandle)

        Returns:
            Number of chunks written

        Raises:
            ReplayError: If a write or flush fails
        """
        written = 0
        with self._replay_lock:
            while True:
                with self._lock:
                    if not self._chunks:
                        return written
                    seq, chunk = self._chunks[0]

                view = memoryview(chunk)
                try:
                    while view:
                        count = sink.write(view)
                        # Writers that report no count took the whole chunk
                        view = view[len(view) if count is None else count:]
                    flush = getattr(sink, "flush", None)
                    if flush is not None:
                        flush()
                except (OSError, ValueError) as e:
                    with self._lock:
                        if 0 < len(view) < len(chunk) and self._is_head(seq):
                            self._chunks[0] = (seq, bytes(view))
                        remaining = len(self._chunks)
                    raise ReplayError(
                        f"Replay failed after {written} chunk(s), {remaining} still buffered: {e}",
                        written=written,
                        remaining=remaining,
                    ) from e

                with self._lock:
                    # Eviction or clear() may have removed the chunk meanwhile
                    if self._is_head(seq):
                        self._chunks.popleft()
                    self._total_replayed += 1
                written += 1

    def _is_head(self, seq: int) -> bool:
        """Caller holds the lock."""
        return bool(self._chunks) and self._chunks[0][0] == seq

    def length(self) -> int:
        """Return the current number of buffered chunks."""
        with self._lock:
            return len(self._chunks)

    def __len__(self) -> int:
        return self.length()

    def clear(self) -> int:
        """
        Drop all buffered chunks.

        Returns:
            Number of chunks dropped
        """
        with self._lock:
            dropped = len(self._chunks)
            self._chunks.clear()
        return dropped

    def is_empty(self) -> bool:
        with self._lock:
            return not self._chunks

    def is_full(self) -> bool:
        with self._lock:
            return len(self._chunks) >= self._capacity

    def snapshot(self) -> list[bytes]:
        """Return a copy of the buffered chunks, oldest first."""
        with self._lock:
            return [chunk for _, chunk in self._chunks]

    def stats(self) -> ReplayBufferStats:
        with self._lock:
            return ReplayBufferStats(
                capacity=self._capacity,
                count=len(self._chunks),
                total_added=self._total_added,
                total_dropped=self._total_dropped,
                total_replayed=self._total_replayed,
            )
