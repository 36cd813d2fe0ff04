from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

MIN_BUFFER_CAPACITY = 4096


@dataclass(slots=True)
class PoolStats:
    acquired: int = 0
    released: int = 0
    allocated: int = 0
    reused: int = 0

    @property
    def outstanding(self) -> int:
        return self.acquired - self.released

    def to_dict(self) -> dict[str, int]:
        return {
            "acquired": self.acquired,
            "released": self.released,
            "outstanding": self.outstanding,
            "allocated": self.allocated,
            "reused": self.reused,
        }


class BufferPool:
    """Thread-safe pool of reusable byte buffers.

    Capacities are rounded up to a power of two so that chunks of similar size
    share storage. Every buffer handed out by ``acquire`` must come back through
    ``release`` exactly once; releasing a buffer twice, or one the pool never
    leased, raises ``ValueError``.
    """

    def __init__(self, max_idle_buffers: int = 16) -> None:
        self._lock = threading.Lock()
        self._idle: dict[int, list[bytearray]] = {}
        self._idle_count = 0
        self._leased: dict[int, bytearray] = {}
        self._max_idle = max(0, max_idle_buffers)
        self.stats = PoolStats()

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self.stats.outstanding

    def acquire(self, size: int) -> bytearray:
        if size < 0:
            raise ValueError(f"Cannot acquire a buffer of negative size {size}")
        capacity = _bucket_capacity(size)
        with self._lock:
            bucket = self._idle.get(capacity)
            if bucket:
                buffer = bucket.pop()
                self._idle_count -= 1
                self.stats.reused += 1
            else:
                buffer = bytearray(capacity)
                self.stats.allocated += 1
            self._leased[id(buffer)] = buffer
            self.stats.acquired += 1
        return buffer

    def release(self, buffer: bytearray | bytes) -> None:
        with self._lock:
            if self._leased.pop(id(buffer), None) is None:
                raise ValueError("Buffer is not leased from this pool (double or foreign release)")
            self.stats.released += 1
            if self._idle_count < self._max_idle and isinstance(buffer, bytearray):
                self._idle.setdefault(len(buffer), []).append(buffer)
                self._idle_count += 1

    @contextmanager
    def lease(self, size: int) -> Iterator[bytearray]:
        buffer = self.acquire(size)
        try:
            yield buffer
        finally:
            self.release(buffer)

    def clear(self) -> None:
        """Drop idle buffers; leased buffers are unaffected."""

        with self._lock:
            self._idle.clear()
            self._idle_count = 0


def _bucket_capacity(size: int) -> int:
    capacity = MIN_BUFFER_CAPACITY
    while capacity < size:
        capacity <<= 1
    return capacity
