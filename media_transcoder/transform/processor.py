from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import numpy as np

from media_transcoder.models import Chunk, MediaDescriptor, TranscodeOptions

logger = logging.getLogger(__name__)

CODEC_EFFICIENCY: dict[str, float] = {
    "H.264": 1.2,
    "H.265": 1.5,
    "VP9": 1.4,
    "AV1": 1.8,
}


class ChunkTransformer(Protocol):
    async def transform(
        self,
        chunk: Chunk,
        source: MediaDescriptor,
        options: TranscodeOptions,
    ) -> bytes: ...


def estimate_compression_ratio(source: MediaDescriptor, options: TranscodeOptions) -> float:
    """Estimate input/output size ratio for a source/target pair.

    Codec changes apply a rough efficiency factor, downscaling multiplies the
    ratio by the pixel-count reduction, and an explicit target bitrate replaces
    the estimate with ``source.bitrate / video_bitrate``.
    """

    ratio = 1.0

    if source.video_codec != options.video_codec:
        ratio = CODEC_EFFICIENCY.get(options.video_codec, 1.0)

    if options.width > 0 and options.height > 0 and source.width > 0 and source.height > 0:
        source_pixels = source.width * source.height
        target_pixels = options.width * options.height
        if target_pixels < source_pixels:
            ratio *= source_pixels / target_pixels

    if options.video_bitrate > 0 and source.bitrate > 0:
        ratio = source.bitrate / options.video_bitrate

    return ratio


def estimate_output_size(input_size: int, source: MediaDescriptor, options: TranscodeOptions) -> int:
    ratio = estimate_compression_ratio(source, options)
    if ratio <= 0:
        return input_size
    return int(input_size / ratio)


class DefaultChunkTransformer:
    """Stand-in codec: simulated encode latency followed by a byte inversion."""

    def __init__(self, simulated_bytes_per_ms: int = 10 * 1024, min_delay_ms: float = 10.0) -> None:
        self.simulated_bytes_per_ms = simulated_bytes_per_ms
        self.min_delay_ms = min_delay_ms

    async def transform(
        self,
        chunk: Chunk,
        source: MediaDescriptor,
        options: TranscodeOptions,
    ) -> bytes:
        logger.debug("Processing chunk at offset %d, size %d bytes", chunk.offset, chunk.size)

        delay_ms = self._simulated_delay_ms(chunk.size)
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, invert_bytes, bytes(chunk.view))

    def _simulated_delay_ms(self, size: int) -> float:
        if self.simulated_bytes_per_ms <= 0:
            return max(0.0, self.min_delay_ms)
        return max(self.min_delay_ms, size / self.simulated_bytes_per_ms)


class IdentityChunkTransformer:
    """Passthrough transform; output bytes equal input bytes."""

    async def transform(
        self,
        chunk: Chunk,
        source: MediaDescriptor,
        options: TranscodeOptions,
    ) -> bytes:
        return bytes(chunk.view)


def invert_bytes(data: bytes) -> bytes:
    return np.bitwise_not(np.frombuffer(data, dtype=np.uint8)).tobytes()


def build_transformer(
    name: str,
    *,
    simulated_bytes_per_ms: int = 10 * 1024,
    min_delay_ms: float = 10.0,
) -> ChunkTransformer:
    key = name.strip().lower()
    if key == "default":
        return DefaultChunkTransformer(
            simulated_bytes_per_ms=simulated_bytes_per_ms,
            min_delay_ms=min_delay_ms,
        )
    if key in {"identity", "passthrough"}:
        return IdentityChunkTransformer()
    raise ValueError(f"Unknown transformer '{name}'. Expected 'default' or 'identity'.")
