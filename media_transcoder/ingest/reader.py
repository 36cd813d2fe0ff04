from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from media_transcoder.errors import ChunkReadError
from media_transcoder.ingest.source import MediaSource
from media_transcoder.models import Chunk, ChunkRange
from media_transcoder.pipeline.buffer_pool import BufferPool

logger = logging.getLogger(__name__)


class FileChunkReader:
    """Reads byte ranges of a source file into buffers leased from a pool."""

    def __init__(self, pool: BufferPool | None = None) -> None:
        self.pool = pool or BufferPool()

    async def read_chunk(self, source: MediaSource, chunk_range: ChunkRange) -> Chunk:
        buffer = self.pool.acquire(chunk_range.length)
        loop = asyncio.get_running_loop()
        try:
            read = await loop.run_in_executor(None, _read_range, source.path, chunk_range, buffer)
        except BaseException as exc:
            self.pool.release(buffer)
            if isinstance(exc, OSError):
                raise ChunkReadError(f"Failed to read {source.path.name}: {exc}", chunk_range) from exc
            raise

        if read != chunk_range.length:
            self.pool.release(buffer)
            raise ChunkReadError(
                f"Short read from {source.path.name}: expected {chunk_range.length} bytes, got {read}",
                chunk_range,
            )

        logger.debug("Read %d bytes at offset %d", read, chunk_range.offset)
        return Chunk(range=chunk_range, payload=buffer, size=read, pool=self.pool)


def _read_range(path: Path, chunk_range: ChunkRange, buffer: bytearray) -> int:
    view = memoryview(buffer)[: chunk_range.length]
    total = 0
    with path.open("rb") as handle:
        handle.seek(chunk_range.offset)
        while total < chunk_range.length:
            count = handle.readinto(view[total:])
            if not count:
                break
            total += count
    return total
