from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import typer

from media_transcoder.config import Settings, load_settings
from media_transcoder.errors import TranscodeCancelled, TranscodeError
from media_transcoder.ingest.probe import probe_media
from media_transcoder.ingest.reader import FileChunkReader
from media_transcoder.ingest.source import MediaSource, resolve_analyzer
from media_transcoder.logging_config import configure_logging, format_byte_size
from media_transcoder.models import PipelineConfig, ProgressSnapshot, TranscodeOptions, TranscodeResult
from media_transcoder.output.writer import FileChunkWriter
from media_transcoder.pipeline.buffer_pool import BufferPool
from media_transcoder.pipeline.chunking import plan_chunks
from media_transcoder.pipeline.orchestrator import Transcoder
from media_transcoder.transform.processor import build_transformer

app = typer.Typer(help="Chunked parallel media transcoder.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_EXIT_CODE = 130


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except BaseException:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


class ChunkProgressPrinter:
    """Progress sink that echoes whole-percent steps to stderr."""

    def __init__(self) -> None:
        self._last_percent = -1

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        percent = int(snapshot.fraction_complete * 100)
        if percent == self._last_percent and snapshot.chunks_completed != snapshot.total_chunks:
            return
        self._last_percent = percent
        typer.echo(
            f"      chunks {snapshot.chunks_completed}/{snapshot.total_chunks} ({snapshot.percent:.1f}%)",
            err=True,
        )


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _pipeline_config(
    settings: Settings,
    max_parallelism: int | None,
    chunk_size: int | None,
    memory_budget: int | None,
) -> PipelineConfig:
    overrides = {
        key: value
        for key, value in {
            "max_parallelism": max_parallelism,
            "fixed_chunk_bytes": chunk_size,
            "memory_budget_bytes": memory_budget,
        }.items()
        if value is not None
    }
    return settings.pipeline.model_copy(update=overrides).to_pipeline_config()


def _target_options(settings: Settings, preset: str | None, overrides: dict[str, Any]) -> TranscodeOptions:
    explicit = {key: value for key, value in overrides.items() if value is not None}
    if preset:
        return TranscodeOptions.from_preset(preset, **explicit)
    return settings.output.to_options(**explicit)


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="MEDIA_TRANSCODER_CONFIG",
        help="Path to YAML configuration file.",
    )
) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command()
def probe(
    input_path: str,
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="MEDIA_TRANSCODER_CONFIG",
        help="Path to YAML configuration file.",
    ),
) -> None:
    """Analyze a media file with ffprobe and print its descriptor JSON."""

    settings = _bootstrap(config_path)
    try:
        result = probe_media(vod_path=input_path, cache_dir=str(settings.pipeline.cache_dir))
    except TranscodeError as exc:
        logger.error("Probe failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    logger.info("Probe completed for %s", input_path)
    typer.echo(json.dumps(result, indent=2))


@app.command()
def plan(
    input_path: str,
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="MEDIA_TRANSCODER_CONFIG",
        help="Path to YAML configuration file.",
    ),
    max_parallelism: int | None = typer.Option(None, help="Concurrent chunk pipelines (default: CPU count)."),
    chunk_size: int | None = typer.Option(None, help="Fixed chunk size in bytes (0 = derive automatically)."),
    memory_budget: int | None = typer.Option(None, help="Memory budget in bytes for automatic chunk sizing."),
) -> None:
    """Show how a file would be split into chunks without transcoding it."""

    settings = _bootstrap(config_path)
    try:
        source_path = Path(input_path).expanduser().resolve()
        if not source_path.is_file():
            raise FileNotFoundError(f"Media file not found: {source_path}")
        pipeline_config = _pipeline_config(settings, max_parallelism, chunk_size, memory_budget)
        file_size = source_path.stat().st_size
        chunk_plan = plan_chunks(file_size, pipeline_config)
    except (TranscodeError, ValueError, FileNotFoundError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(
        json.dumps(
            {
                "source_path": str(source_path),
                "file_size_bytes": file_size,
                "max_parallelism": pipeline_config.max_parallelism,
                "memory_budget_bytes": pipeline_config.memory_budget_bytes,
                "chunk_size_bytes": chunk_plan.chunk_size,
                "chunk_size": format_byte_size(chunk_plan.chunk_size),
                "total_chunks": len(chunk_plan),
                "ranges": [
                    {"offset": item.offset, "length": item.length, "is_last": item.is_last}
                    for item in chunk_plan
                ],
            },
            indent=2,
        )
    )


@app.command()
def transcode(
    input_path: str,
    output_path: str,
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="MEDIA_TRANSCODER_CONFIG",
        help="Path to YAML configuration file.",
    ),
    preset: str | None = typer.Option(None, help="Target preset: hd, 4k or web."),
    container: str | None = typer.Option(None, help="Target container, e.g. MP4 or MKV."),
    video_codec: str | None = typer.Option(None, help="Target video codec, e.g. H.264, H.265, VP9, AV1."),
    audio_codec: str | None = typer.Option(None, help="Target audio codec, e.g. AAC."),
    width: int | None = typer.Option(None, help="Target width in pixels (0 keeps source)."),
    height: int | None = typer.Option(None, help="Target height in pixels (0 keeps source)."),
    frame_rate: float | None = typer.Option(None, help="Target frame rate (0 keeps source)."),
    video_bitrate: int | None = typer.Option(None, help="Target video bitrate in bits/s (0 = automatic)."),
    audio_bitrate: int | None = typer.Option(None, help="Target audio bitrate in bits/s (0 = automatic)."),
    quality: int | None = typer.Option(None, help="Video quality 0-100 (0 = use bitrate)."),
    passes: int | None = typer.Option(None, help="Encoding passes: 1 or 2."),
    encoder_preset: str | None = typer.Option(None, help="Encoder speed preset, e.g. fast, medium, slow."),
    max_parallelism: int | None = typer.Option(None, help="Concurrent chunk pipelines (default: CPU count)."),
    chunk_size: int | None = typer.Option(None, help="Fixed chunk size in bytes (0 = derive automatically)."),
    memory_budget: int | None = typer.Option(None, help="Memory budget in bytes for automatic chunk sizing."),
    analyzer: str = typer.Option("ffprobe", help="Source analyzer: ffprobe or extension."),
    transformer: str | None = typer.Option(None, help="Chunk transformer: default or identity."),
) -> None:
    """Transcode a media file chunk by chunk and print the result JSON."""

    settings = _bootstrap(config_path)
    total_steps = 3

    try:
        options = _target_options(
            settings,
            preset,
            {
                "container": container,
                "video_codec": video_codec,
                "audio_codec": audio_codec,
                "width": width,
                "height": height,
                "frame_rate": frame_rate,
                "video_bitrate": video_bitrate,
                "audio_bitrate": audio_bitrate,
                "video_quality": quality,
                "encoding_passes": passes,
                "encoder_preset": encoder_preset,
            },
        )
        pipeline_config = _pipeline_config(settings, max_parallelism, chunk_size, memory_budget)
        chunk_transformer = build_transformer(
            transformer or settings.transform.name,
            simulated_bytes_per_ms=settings.transform.simulated_bytes_per_ms,
            min_delay_ms=settings.transform.min_delay_ms,
        )

        source = _run_with_progress(
            1,
            total_steps,
            "Open source",
            lambda: MediaSource(input_path, analyzer=resolve_analyzer(analyzer)),
        )
        _run_with_progress(2, total_steps, "Analyze source", lambda: asyncio.run(source.analyze()))
        typer.echo(f"      {source.descriptor.describe()}", err=True)

        transcoder = Transcoder(
            transformer=chunk_transformer,
            writer=FileChunkWriter(),
            config=pipeline_config,
            reader=FileChunkReader(BufferPool(max_idle_buffers=pipeline_config.worker_count)),
        )
        result = _run_with_progress(
            3,
            total_steps,
            "Transcode chunks",
            lambda: asyncio.run(_run_transcode(transcoder, source, output_path, options)),
        )
    except TranscodeCancelled as exc:
        logger.warning("Transcode cancelled: %s", exc)
        typer.echo("Cancelled.", err=True)
        raise typer.Exit(code=CANCELLED_EXIT_CODE) from exc
    except (TranscodeError, ValueError) as exc:
        logger.error("Transcode failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(json.dumps(result.to_dict(), indent=2))


async def _run_transcode(
    transcoder: Transcoder,
    source: MediaSource,
    output_path: str,
    options: TranscodeOptions,
) -> TranscodeResult:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    try:
        return await transcoder.run(
            source,
            output_path,
            options,
            progress=ChunkProgressPrinter(),
            cancel_event=cancel_event,
        )
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.remove_signal_handler(signal.SIGINT)


if __name__ == "__main__":
    app()
