from __future__ import annotations

from pathlib import Path

import pytest

from media_transcoder.errors import InvalidConfigurationError
from media_transcoder.models import (
    Chunk,
    ChunkRange,
    MediaDescriptor,
    PipelineConfig,
    TranscodeOptions,
    TranscodeResult,
)


def test_presets_match_expected_targets() -> None:
    hd = TranscodeOptions.from_preset("hd")
    uhd = TranscodeOptions.from_preset("4K")
    web = TranscodeOptions.from_preset("web", encoder_preset="veryfast")

    assert (hd.width, hd.height, hd.video_bitrate, hd.audio_bitrate) == (1920, 1080, 5_000_000, 192_000)
    assert (uhd.video_codec, uhd.encoder_preset, uhd.video_bitrate) == ("H.265", "slow", 15_000_000)
    assert (web.width, web.height, web.encoder_preset) == (1280, 720, "veryfast")


def test_unknown_preset_is_rejected() -> None:
    with pytest.raises(InvalidConfigurationError, match="Known presets"):
        TranscodeOptions.from_preset("8k")


@pytest.mark.parametrize(
    "kwargs",
    [{"video_quality": 101}, {"video_quality": -1}, {"encoding_passes": 3}, {"width": -1}, {"frame_rate": -1.0}],
)
def test_invalid_options_are_rejected(kwargs: dict) -> None:
    with pytest.raises(InvalidConfigurationError):
        TranscodeOptions(**kwargs)


def test_resolve_against_inherits_zero_fields_from_source() -> None:
    source = MediaDescriptor(container="QuickTime", video_codec="ProRes", width=3840, height=2160, frame_rate=24.0, bitrate=900)

    resolved = TranscodeOptions(width=1280).resolve_against(source)

    assert (resolved.width, resolved.height) == (1280, 720)
    assert resolved.frame_rate == 24.0
    assert resolved.video_bitrate == 900
    assert resolved.video_codec == "H.264"


def test_resolve_against_without_aspect_ratio_keeps_source_height() -> None:
    source = MediaDescriptor(width=1920, height=1080)

    resolved = TranscodeOptions(width=1000, maintain_aspect_ratio=False).resolve_against(source)

    assert (resolved.width, resolved.height) == (1000, 1080)


def test_chunk_range_invariants() -> None:
    with pytest.raises(ValueError):
        ChunkRange(offset=-1, length=1)
    with pytest.raises(ValueError):
        ChunkRange(offset=0, length=0)

    assert sorted([ChunkRange(20, 5), ChunkRange(0, 10)]) == [ChunkRange(0, 10), ChunkRange(20, 5)]
    assert ChunkRange(10, 5).end == 15


def test_processed_chunk_is_a_new_value_with_same_range() -> None:
    raw = Chunk(range=ChunkRange(0, 4, True), payload=bytearray(b"abcdxxxx"), size=4, metadata={"k": 1})

    processed = raw.with_processed_data(b"ABCDEF")

    assert processed is not raw
    assert processed.processed is True
    assert raw.processed is False
    assert processed.range == raw.range
    assert processed.id == raw.id
    assert bytes(processed.view) == b"ABCDEF"
    assert bytes(raw.view) == b"abcd"
    assert processed.metadata == {"k": 1}


def test_chunk_size_must_fit_payload() -> None:
    with pytest.raises(ValueError):
        Chunk(range=ChunkRange(0, 4), payload=b"abc", size=4)


def test_pipeline_config_worker_count_never_below_one() -> None:
    assert PipelineConfig(max_parallelism=0).worker_count == 1
    assert PipelineConfig(max_parallelism=6).worker_count == 6


def test_result_derives_throughput_and_ratio() -> None:
    result = TranscodeResult(
        input_path=Path("in.mov"),
        output_path=Path("out.mp4"),
        input_size_bytes=20 * 1024 * 1024,
        output_size_bytes=5 * 1024 * 1024,
        chunks_processed=10,
        elapsed_ms=2000.0,
    )

    assert result.throughput_mb_per_s == pytest.approx(10.0)
    assert result.compression_ratio == pytest.approx(4.0)
    payload = result.to_dict()
    assert payload["status"] == "ok"
    assert payload["chunks_processed"] == 10


def test_result_handles_zero_denominators() -> None:
    result = TranscodeResult(Path("a"), Path("b"), 0, 0, 0, 0.0)

    assert result.throughput_mb_per_s == 0.0
    assert result.compression_ratio == 0.0
