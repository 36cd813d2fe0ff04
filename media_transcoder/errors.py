from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from media_transcoder.models import ChunkRange


class TranscodeError(RuntimeError):
    """Base class for every failure surfaced by a transcode run."""


class SourceNotFoundError(TranscodeError):
    pass


class AnalysisError(TranscodeError):
    pass


class InvalidConfigurationError(TranscodeError, ValueError):
    pass


class TranscodeCancelled(TranscodeError):
    """Raised when a run stops because the caller asked it to."""


class ChunkError(TranscodeError):
    """A failure tied to one chunk of the source file."""

    stage = "process"

    def __init__(self, message: str, chunk_range: ChunkRange | None = None) -> None:
        super().__init__(message)
        self.chunk_range = chunk_range

    def __str__(self) -> str:
        message = super().__str__()
        if self.chunk_range is None:
            return message
        return f"{message} (chunk at offset {self.chunk_range.offset}, {self.chunk_range.length} bytes)"


class ChunkReadError(ChunkError):
    stage = "read"


class TransformError(ChunkError):
    stage = "transform"


class WriteError(ChunkError):
    stage = "write"
