from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import BinaryIO, Protocol

from media_transcoder.errors import InvalidConfigurationError, WriteError
from media_transcoder.models import Chunk, MediaDescriptor, TranscodeOptions

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


class ChunkWriter(Protocol):
    async def initialize(self, output_path: Path, options: TranscodeOptions, source: MediaDescriptor) -> None: ...

    async def write_chunk(self, chunk: Chunk) -> None: ...

    async def finalize(self) -> Path: ...

    async def abort(self) -> None: ...


class FileChunkWriter:
    """Appends processed chunks to ``<output>.part`` and renames it on finalize.

    The writer expects chunks in ascending source-offset order with no gaps and
    refuses anything else; putting concurrent completions back in order is the
    caller's job. Until ``finalize`` succeeds the target path is never touched.
    """

    def __init__(self) -> None:
        self.output_path: Path | None = None
        self.bytes_written = 0
        self.chunks_written = 0
        self._handle: BinaryIO | None = None
        self._next_offset = 0
        self._finished = False

    @property
    def partial_path(self) -> Path:
        if self.output_path is None:
            raise WriteError("Writer has not been initialized")
        return self.output_path.with_name(self.output_path.name + PARTIAL_SUFFIX)

    async def initialize(self, output_path: Path, options: TranscodeOptions, source: MediaDescriptor) -> None:
        if not str(output_path).strip():
            raise InvalidConfigurationError("Output path cannot be empty")
        if self._handle is not None:
            raise WriteError("Writer is already initialized")

        self.output_path = Path(output_path).expanduser().resolve()
        self.bytes_written = 0
        self.chunks_written = 0
        self._next_offset = 0
        self._finished = False

        loop = asyncio.get_running_loop()
        try:
            self._handle = await loop.run_in_executor(None, _open_partial, self.partial_path)
        except OSError as exc:
            raise WriteError(f"Cannot open output {self.partial_path}: {exc}") from exc

        logger.debug(
            "Writer ready for %s (%s -> %s/%s)",
            self.output_path.name,
            source.container or "unknown",
            options.container,
            options.video_codec,
        )

    async def write_chunk(self, chunk: Chunk) -> None:
        if self._handle is None:
            raise WriteError("Writer is not open", chunk.range)
        if chunk.offset != self._next_offset:
            raise WriteError(
                f"Chunk committed out of order: expected source offset {self._next_offset}, got {chunk.offset}",
                chunk.range,
            )

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._handle.write, chunk.view)
        except OSError as exc:
            raise WriteError(f"Failed to write to {self.partial_path.name}: {exc}", chunk.range) from exc

        self._next_offset = chunk.range.end
        self.bytes_written += chunk.size
        self.chunks_written += 1

    async def finalize(self) -> Path:
        if self._handle is None or self.output_path is None:
            raise WriteError("Writer is not open")

        handle, self._handle = self._handle, None
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _commit_partial, handle, self.partial_path, self.output_path)
        except OSError as exc:
            raise WriteError(f"Failed to finalize {self.output_path}: {exc}") from exc

        self._finished = True
        logger.debug("Finalized %s after %d chunks", self.output_path.name, self.chunks_written)
        return self.output_path

    async def abort(self) -> None:
        """Close and delete the partial output; a no-op once finalized."""

        if self._finished or self.output_path is None:
            return

        handle, self._handle = self._handle, None
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _discard_partial, handle, self.partial_path)
        logger.debug("Discarded partial output %s", self.partial_path)


def _open_partial(path: Path) -> BinaryIO:
    path.parent.mkdir(parents=True, exist_ok=True)
    return path.open("wb")


def _commit_partial(handle: BinaryIO, partial_path: Path, output_path: Path) -> None:
    try:
        handle.flush()
        os.fsync(handle.fileno())
    finally:
        handle.close()
    os.replace(partial_path, output_path)


def _discard_partial(handle: BinaryIO | None, partial_path: Path) -> None:
    if handle is not None:
        handle.close()
    partial_path.unlink(missing_ok=True)
