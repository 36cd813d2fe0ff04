from __future__ import annotations

from collections.abc import Iterator

from media_transcoder.errors import InvalidConfigurationError
from media_transcoder.models import ChunkRange, PipelineConfig

MIB = 1024 * 1024
MIN_CHUNK_BYTES = 1 * MIB
MAX_CHUNK_BYTES = 64 * MIB

# share of the memory budget left for chunk buffers; the rest covers runtime overhead
MEMORY_BUDGET_USABLE_PERCENT = 70


def choose_chunk_size(file_size_bytes: int, config: PipelineConfig) -> int:
    """Derive the chunk length for a file from parallelism and the memory budget.

    An explicit ``fixed_chunk_bytes`` is returned unchanged. Otherwise the file
    is split into roughly two chunks per worker, capped so that one buffer per
    worker fits into the usable share of the memory budget, and clamped to
    [1 MiB, 64 MiB].
    """

    if config.fixed_chunk_bytes > 0:
        return int(config.fixed_chunk_bytes)

    workers = max(1, config.max_parallelism)
    available = max(0, config.memory_budget_bytes) * MEMORY_BUDGET_USABLE_PERCENT // 100

    base_size = max(0, file_size_bytes) // max(1, workers * 2)
    memory_cap = available // workers
    candidate = min(base_size, memory_cap)

    return max(MIN_CHUNK_BYTES, min(candidate, MAX_CHUNK_BYTES))


class ChunkPlan:
    """Ordered ranges tiling ``[0, file_size_bytes)``.

    Iterating is lazy and restartable: each pass yields the ranges again from
    offset zero. An empty file has an empty plan.
    """

    def __init__(self, file_size_bytes: int, chunk_size: int) -> None:
        if file_size_bytes < 0:
            raise InvalidConfigurationError(f"File size must not be negative, got {file_size_bytes}")
        if chunk_size < 1:
            raise InvalidConfigurationError(f"Chunk size must be at least 1 byte, got {chunk_size}")
        self.file_size_bytes = file_size_bytes
        self.chunk_size = chunk_size

    def __len__(self) -> int:
        return -(-self.file_size_bytes // self.chunk_size)

    def __iter__(self) -> Iterator[ChunkRange]:
        offset = 0
        while offset < self.file_size_bytes:
            length = min(self.chunk_size, self.file_size_bytes - offset)
            yield ChunkRange(
                offset=offset,
                length=length,
                is_last=offset + length == self.file_size_bytes,
            )
            offset += length

    def __repr__(self) -> str:
        return f"ChunkPlan(file_size_bytes={self.file_size_bytes}, chunk_size={self.chunk_size}, chunks={len(self)})"


def plan_chunks(file_size_bytes: int, config: PipelineConfig) -> ChunkPlan:
    return ChunkPlan(file_size_bytes, choose_chunk_size(file_size_bytes, config))
