from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from media_transcoder.errors import AnalysisError, SourceNotFoundError, TranscodeError
from media_transcoder.ingest.probe import guess_descriptor_from_extension, probe_media_descriptor
from media_transcoder.models import MediaDescriptor

logger = logging.getLogger(__name__)

Analyzer = Callable[[Path], MediaDescriptor]

ANALYZERS: dict[str, Analyzer] = {
    "ffprobe": probe_media_descriptor,
    "extension": guess_descriptor_from_extension,
}


class MediaSource:
    """A source file on disk plus its lazily computed descriptor."""

    def __init__(self, path: str | Path, analyzer: Analyzer = probe_media_descriptor) -> None:
        resolved = Path(path).expanduser().resolve()
        if not resolved.is_file():
            raise SourceNotFoundError(f"Media file not found: {resolved}")

        self.id = uuid.uuid4().hex
        self.path = resolved
        self.size_bytes = resolved.stat().st_size
        self.created_at = datetime.now(timezone.utc)
        self._analyzer = analyzer
        self._descriptor: MediaDescriptor | None = None
        self._lock = asyncio.Lock()

    @property
    def is_analyzed(self) -> bool:
        return self._descriptor is not None

    @property
    def descriptor(self) -> MediaDescriptor:
        if self._descriptor is None:
            raise AnalysisError(f"{self.path.name} has not been analyzed yet")
        return self._descriptor

    async def analyze(self) -> MediaDescriptor:
        """Run the analyzer once; concurrent and repeated calls share the result."""

        async with self._lock:
            if self._descriptor is not None:
                return self._descriptor

            loop = asyncio.get_running_loop()
            try:
                descriptor = await loop.run_in_executor(None, self._analyzer, self.path)
            except TranscodeError:
                raise
            except Exception as exc:
                raise AnalysisError(f"Failed to analyze {self.path.name}: {exc}") from exc

            logger.debug("Analyzed %s: %s", self.path.name, descriptor)
            self._descriptor = descriptor
            return descriptor

    def __repr__(self) -> str:
        return f"MediaSource(path={str(self.path)!r}, size_bytes={self.size_bytes})"


def resolve_analyzer(name: str) -> Analyzer:
    try:
        return ANALYZERS[name]
    except KeyError:
        known = ", ".join(sorted(ANALYZERS))
        raise ValueError(f"Unknown analyzer '{name}'. Known analyzers: {known}") from None
