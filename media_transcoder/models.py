from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from media_transcoder.errors import InvalidConfigurationError

if TYPE_CHECKING:
    from media_transcoder.pipeline.buffer_pool import BufferPool

DEFAULT_MEMORY_BUDGET_BYTES = 1024 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class MediaDescriptor:
    """Container/codec/geometry metadata for one source file."""

    container: str = ""
    video_codec: str = ""
    audio_codec: str = ""
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0
    bit_depth: int = 8
    duration_seconds: float = 0.0
    bitrate: int = 0

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    def describe(self) -> str:
        return (
            f"{self.container} | Video: {self.video_codec} "
            f"({self.resolution}@{self.frame_rate:.2f}fps) | Audio: {self.audio_codec}"
        )

    def __str__(self) -> str:
        return self.describe()

    def to_dict(self) -> dict[str, Any]:
        return {
            "container": self.container,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "width": self.width,
            "height": self.height,
            "resolution": self.resolution,
            "frame_rate": self.frame_rate,
            "bit_depth": self.bit_depth,
            "duration_seconds": self.duration_seconds,
            "bitrate": self.bitrate,
        }


@dataclass(frozen=True, slots=True)
class TranscodeOptions:
    """Target format. Zero numeric fields keep the source value."""

    container: str = "MP4"
    video_codec: str = "H.264"
    audio_codec: str = "AAC"
    width: int = 0
    height: int = 0
    frame_rate: float = 0.0
    video_bitrate: int = 0
    audio_bitrate: int = 0
    video_quality: int = 80
    maintain_aspect_ratio: bool = True
    encoding_passes: int = 1
    encoder_preset: str = "medium"
    additional_parameters: str | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.video_quality <= 100:
            raise InvalidConfigurationError(f"video_quality must be within 0-100, got {self.video_quality}")
        if self.encoding_passes not in (1, 2):
            raise InvalidConfigurationError(f"encoding_passes must be 1 or 2, got {self.encoding_passes}")
        for name in ("width", "height", "frame_rate", "video_bitrate", "audio_bitrate"):
            if getattr(self, name) < 0:
                raise InvalidConfigurationError(f"{name} must not be negative")

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> TranscodeOptions:
        """Build options from a named preset (hd, 4k, web) with optional field overrides."""

        key = name.strip().lower()
        if key not in PRESETS:
            known = ", ".join(sorted(PRESETS))
            raise InvalidConfigurationError(f"Unknown preset '{name}'. Known presets: {known}")
        return replace(PRESETS[key], **overrides)

    def resolve_against(self, source: MediaDescriptor) -> TranscodeOptions:
        """Return the effective target with zero fields inherited from the source."""

        width = self.width
        height = self.height
        if self.maintain_aspect_ratio and source.width > 0 and source.height > 0:
            if width > 0 and height == 0:
                height = _even(width * source.height / source.width)
            elif height > 0 and width == 0:
                width = _even(height * source.width / source.height)

        return replace(
            self,
            container=self.container or source.container,
            video_codec=self.video_codec or source.video_codec,
            audio_codec=self.audio_codec or source.audio_codec,
            width=width or source.width,
            height=height or source.height,
            frame_rate=self.frame_rate or source.frame_rate,
            video_bitrate=self.video_bitrate or source.bitrate,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "container": self.container,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "width": self.width,
            "height": self.height,
            "frame_rate": self.frame_rate,
            "video_bitrate": self.video_bitrate,
            "audio_bitrate": self.audio_bitrate,
            "video_quality": self.video_quality,
            "maintain_aspect_ratio": self.maintain_aspect_ratio,
            "encoding_passes": self.encoding_passes,
            "encoder_preset": self.encoder_preset,
            "additional_parameters": self.additional_parameters,
        }


PRESETS: dict[str, TranscodeOptions] = {
    "hd": TranscodeOptions(
        width=1920,
        height=1080,
        frame_rate=30,
        video_bitrate=5_000_000,
        audio_bitrate=192_000,
        video_quality=0,
        encoder_preset="medium",
    ),
    "4k": TranscodeOptions(
        video_codec="H.265",
        width=3840,
        height=2160,
        frame_rate=30,
        video_bitrate=15_000_000,
        audio_bitrate=320_000,
        video_quality=0,
        encoder_preset="slow",
    ),
    "web": TranscodeOptions(
        width=1280,
        height=720,
        frame_rate=30,
        video_bitrate=2_500_000,
        audio_bitrate=128_000,
        video_quality=0,
        encoder_preset="fast",
    ),
}


def _even(value: float) -> int:
    # most encoders reject odd frame dimensions
    rounded = int(round(value))
    return rounded - (rounded % 2)


@dataclass(frozen=True, slots=True, order=True)
class ChunkRange:
    """A byte range of the source file; ordered by offset."""

    offset: int
    length: int
    is_last: bool = False

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"Chunk offset must not be negative, got {self.offset}")
        if self.length <= 0:
            raise ValueError(f"Chunk length must be positive, got {self.length}")

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(slots=True, eq=False)
class Chunk:
    """A chunk's range plus the payload buffer currently holding its bytes.

    Raw chunks usually carry a buffer leased from a ``BufferPool``; that buffer
    may be larger than ``size`` and only the first ``size`` bytes are valid.
    Processed chunks are new values derived with ``with_processed_data``.
    """

    range: ChunkRange
    payload: bytearray | bytes
    size: int
    processed: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict)
    pool: BufferPool | None = field(default=None, repr=False)
    released: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if self.size < 0 or self.size > len(self.payload):
            raise ValueError(f"Chunk size {self.size} does not fit payload of {len(self.payload)} bytes")

    @property
    def offset(self) -> int:
        return self.range.offset

    @property
    def is_last(self) -> bool:
        return self.range.is_last

    @property
    def view(self) -> memoryview:
        if self.released:
            raise ValueError(f"Chunk {self.id} was already released")
        return memoryview(self.payload)[: self.size]

    def with_processed_data(self, payload: bytearray | bytes, size: int | None = None) -> Chunk:
        return Chunk(
            range=self.range,
            payload=payload,
            size=len(payload) if size is None else size,
            processed=True,
            id=self.id,
            metadata=dict(self.metadata),
        )

    def release(self) -> None:
        """Hand the payload back to its pool. Later calls do nothing."""

        if self.released:
            return
        self.released = True
        if self.pool is not None:
            self.pool.release(self.payload)
        self.payload = b""
        self.size = 0


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    max_parallelism: int
    fixed_chunk_bytes: int = 0
    memory_budget_bytes: int = DEFAULT_MEMORY_BUDGET_BYTES

    @property
    def worker_count(self) -> int:
        return max(1, self.max_parallelism)

    def validate(self) -> None:
        if self.fixed_chunk_bytes < 0:
            raise InvalidConfigurationError("fixed_chunk_bytes must be 0 (auto) or a positive byte count")
        if self.memory_budget_bytes < 0:
            raise InvalidConfigurationError("memory_budget_bytes must not be negative")


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    fraction_complete: float
    chunks_completed: int
    total_chunks: int

    @property
    def percent(self) -> float:
        return round(self.fraction_complete * 100.0, 2)


@dataclass(slots=True)
class TranscodeResult:
    """Outcome of a successful run; throughput and ratio are derived."""

    input_path: Path
    output_path: Path
    input_size_bytes: int
    output_size_bytes: int
    chunks_processed: int
    elapsed_ms: float
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def throughput_mb_per_s(self) -> float:
        if self.elapsed_ms <= 0:
            return 0.0
        return self.input_size_bytes / (1024.0 * 1024.0) / (self.elapsed_ms / 1000.0)

    @property
    def compression_ratio(self) -> float:
        if self.output_size_bytes <= 0:
            return 0.0
        return self.input_size_bytes / self.output_size_bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "input_path": str(self.input_path),
            "output_path": str(self.output_path),
            "input_size_bytes": self.input_size_bytes,
            "output_size_bytes": self.output_size_bytes,
            "chunks_processed": self.chunks_processed,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "throughput_mb_per_s": round(self.throughput_mb_per_s, 3),
            "compression_ratio": round(self.compression_ratio, 4),
        }
