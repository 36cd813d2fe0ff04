"""
Chunked parallel transcoding.

A run splits the source into byte ranges (``ChunkPlan``), then pushes each
range through read -> transform -> commit. Admission follows offset order
and is bounded by a semaphore of ``worker_count`` permits; a permit is held
from the read until the chunk task finishes, so at most
``worker_count`` chunk buffers are alive at any time. Chunks may finish
transforming in any order; ``CommitSequencer`` makes each one wait for its
predecessor so the writer sees strictly ascending offsets.

The first failure (or a cancel request) stops admission, wakes chunks waiting
for their turn, and is re-raised once every in-flight task has unwound and
released its buffers. A cancel request also interrupts chunks still being read
or transformed. The writer is aborted instead of finalized in either case.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from pathlib import Path
from time import perf_counter

from media_transcoder.errors import (
    ChunkReadError,
    InvalidConfigurationError,
    TranscodeCancelled,
    TranscodeError,
    TransformError,
    WriteError,
)
from media_transcoder.ingest.reader import FileChunkReader
from media_transcoder.ingest.source import MediaSource
from media_transcoder.logging_config import format_byte_size
from media_transcoder.models import (
    Chunk,
    ChunkRange,
    MediaDescriptor,
    PipelineConfig,
    ProgressSnapshot,
    TranscodeOptions,
    TranscodeResult,
)
from media_transcoder.output.writer import ChunkWriter
from media_transcoder.pipeline.chunking import ChunkPlan, plan_chunks
from media_transcoder.transform.processor import ChunkTransformer, estimate_output_size

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressSnapshot], None]


class CommitSequencer:
    """Serializes writer calls and releases chunks in source-offset order."""

    def __init__(self, writer: ChunkWriter) -> None:
        self._writer = writer
        self._condition = asyncio.Condition()
        self._next_offset = 0
        self._stopped = False

    @property
    def next_offset(self) -> int:
        return self._next_offset

    async def commit(self, chunk: Chunk, on_commit: Callable[[Chunk], None] | None = None) -> bool:
        """Wait for the chunk's turn and write it; False if the run stopped first."""

        async with self._condition:
            await self._condition.wait_for(lambda: self._stopped or self._next_offset == chunk.offset)
            if self._stopped:
                return False

            try:
                await self._writer.write_chunk(chunk)
            except TranscodeError:
                raise
            except Exception as exc:
                raise WriteError(f"Writer rejected chunk: {exc}", chunk.range) from exc

            self._next_offset = chunk.range.end
            if on_commit is not None:
                on_commit(chunk)
            self._condition.notify_all()
            return True

    async def stop(self) -> None:
        async with self._condition:
            self._stopped = True
            self._condition.notify_all()


class _RunState:
    def __init__(self, total_chunks: int, sequencer: CommitSequencer, progress: ProgressSink | None) -> None:
        self.total_chunks = total_chunks
        self.sequencer = sequencer
        self.progress = progress
        self.completed = 0
        self.error: BaseException | None = None
        self.tasks: set[asyncio.Task[None]] = set()

    @property
    def stopped(self) -> bool:
        return self.error is not None

    async def stop(self, exc: BaseException) -> None:
        if self.error is None:
            self.error = exc
            if isinstance(exc, TranscodeCancelled):
                logger.info("Cancellation requested; interrupting %d in-flight chunks", len(self.tasks))
                for task in self.tasks:
                    task.cancel()
            else:
                logger.error("Chunk pipeline failed: %s", exc)
        else:
            logger.debug("Suppressed follow-up failure: %s", exc)
        await self.sequencer.stop()

    def on_commit(self, chunk: Chunk) -> None:
        self.completed += 1
        if self.progress is None:
            return
        snapshot = ProgressSnapshot(
            fraction_complete=self.completed / self.total_chunks,
            chunks_completed=self.completed,
            total_chunks=self.total_chunks,
        )
        try:
            self.progress(snapshot)
        except Exception:
            logger.warning("Progress sink raised; ignoring", exc_info=True)


class Transcoder:
    """Runs one source through the chunked read/transform/write pipeline."""

    def __init__(
        self,
        transformer: ChunkTransformer,
        writer: ChunkWriter,
        config: PipelineConfig,
        reader: FileChunkReader | None = None,
    ) -> None:
        if transformer is None or writer is None or config is None:
            raise InvalidConfigurationError("Transcoder needs a transformer, a writer and a pipeline config")
        self.transformer = transformer
        self.writer = writer
        self.config = config
        self.reader = reader or FileChunkReader()

    async def run(
        self,
        source: MediaSource,
        output_path: str | Path,
        options: TranscodeOptions,
        *,
        progress: ProgressSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TranscodeResult:
        if source is None:
            raise InvalidConfigurationError("Source cannot be empty")
        if output_path is None or not str(output_path).strip():
            raise InvalidConfigurationError("Output path cannot be empty")
        if options is None:
            raise InvalidConfigurationError("Transcode options cannot be empty")
        self.config.validate()

        started_at = perf_counter()
        if not source.is_analyzed:
            await source.analyze()
        descriptor = source.descriptor
        effective = options.resolve_against(descriptor)

        target = Path(output_path)
        logger.info("Starting transcoding of %s to %s", source.path.name, target.name)

        try:
            await self.writer.initialize(target, effective, descriptor)
        except TranscodeError:
            raise
        except Exception as exc:
            raise WriteError(f"Failed to initialize writer for {target}: {exc}") from exc

        plan = plan_chunks(source.size_bytes, self.config)
        chunk_size = plan.chunk_size
        logger.debug(
            "Using chunk size: %s, total chunks: %d, workers: %d, estimated output: %s",
            format_byte_size(chunk_size),
            len(plan),
            self.config.worker_count,
            # requested options: an inherited bitrate would pin the estimate at 1:1
            format_byte_size(estimate_output_size(source.size_bytes, descriptor, options)),
        )

        state = _RunState(len(plan), CommitSequencer(self.writer), progress)
        try:
            await self._dispatch(state, plan, source, descriptor, effective, cancel_event)
            if state.error is None and cancel_event is not None and cancel_event.is_set():
                state.error = TranscodeCancelled("Transcode cancelled")
            if state.error is not None:
                raise state.error
        except BaseException:
            await self._abort_writer()
            raise

        # finalization is not interruptible by the cancel event
        try:
            final_path = await self.writer.finalize()
        except TranscodeError:
            raise
        except Exception as exc:
            raise WriteError(f"Failed to finalize {target}: {exc}") from exc

        result = TranscodeResult(
            input_path=source.path,
            output_path=Path(final_path),
            input_size_bytes=source.size_bytes,
            output_size_bytes=Path(final_path).stat().st_size,
            chunks_processed=state.completed,
            elapsed_ms=(perf_counter() - started_at) * 1000.0,
        )
        logger.info(
            "Transcoding completed in %.2f seconds. Output size: %s",
            result.elapsed_ms / 1000.0,
            format_byte_size(result.output_size_bytes),
        )
        return result

    async def _dispatch(
        self,
        state: _RunState,
        plan: ChunkPlan,
        source: MediaSource,
        descriptor: MediaDescriptor,
        options: TranscodeOptions,
        cancel_event: asyncio.Event | None,
    ) -> None:
        slots = asyncio.Semaphore(self.config.worker_count)
        tasks = state.tasks
        watcher = asyncio.create_task(_watch_cancel(state, cancel_event)) if cancel_event is not None else None

        try:
            for chunk_range in plan:
                await slots.acquire()
                if cancel_event is not None and cancel_event.is_set() and not state.stopped:
                    await state.stop(TranscodeCancelled("Transcode cancelled"))
                if state.stopped:
                    slots.release()
                    break
                task = asyncio.create_task(self._process_chunk(state, source, chunk_range, descriptor, options))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
                # a task cancelled before its first step never enters its finally block
                task.add_done_callback(lambda _: slots.release())

            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher

    async def _process_chunk(
        self,
        state: _RunState,
        source: MediaSource,
        chunk_range: ChunkRange,
        descriptor: MediaDescriptor,
        options: TranscodeOptions,
    ) -> None:
        raw: Chunk | None = None
        processed: Chunk | None = None
        try:
            if state.stopped:
                return
            raw = await self._read(source, chunk_range)
            if state.stopped:
                return
            processed = await self._transform(raw, descriptor, options)
            raw.release()
            raw = None
            if state.stopped:
                return
            await state.sequencer.commit(processed, state.on_commit)
        except Exception as exc:
            await state.stop(exc)
        finally:
            if raw is not None:
                raw.release()
            if processed is not None:
                processed.release()

    async def _read(self, source: MediaSource, chunk_range: ChunkRange) -> Chunk:
        try:
            return await self.reader.read_chunk(source, chunk_range)
        except TranscodeError:
            raise
        except Exception as exc:
            raise ChunkReadError(f"Failed to read chunk: {exc}", chunk_range) from exc

    async def _transform(self, chunk: Chunk, descriptor: MediaDescriptor, options: TranscodeOptions) -> Chunk:
        try:
            payload = await self.transformer.transform(chunk, descriptor, options)
        except TranscodeError:
            raise
        except Exception as exc:
            raise TransformError(f"Chunk transform failed: {exc}", chunk.range) from exc

        if isinstance(payload, memoryview):
            payload = payload.tobytes()
        if not isinstance(payload, (bytes, bytearray)):
            raise TransformError(
                f"Transformer returned {type(payload).__name__}, expected bytes",
                chunk.range,
            )
        return chunk.with_processed_data(payload)

    async def _abort_writer(self) -> None:
        try:
            await self.writer.abort()
        except Exception:
            logger.warning("Failed to discard partial output", exc_info=True)


async def _watch_cancel(state: _RunState, cancel_event: asyncio.Event) -> None:
    await cancel_event.wait()
    await state.stop(TranscodeCancelled("Transcode cancelled"))
