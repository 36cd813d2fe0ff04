from __future__ import annotations

import json
import subprocess
from fractions import Fraction
from pathlib import Path
from typing import Any

from media_transcoder.errors import AnalysisError, SourceNotFoundError
from media_transcoder.models import MediaDescriptor

_EXTENSION_DESCRIPTORS: dict[str, MediaDescriptor] = {
    ".mp4": MediaDescriptor(
        container="MP4",
        video_codec="H.264",
        audio_codec="AAC",
        width=1920,
        height=1080,
        frame_rate=30.0,
    ),
    ".mov": MediaDescriptor(
        container="QuickTime",
        video_codec="ProRes",
        audio_codec="PCM",
        width=3840,
        height=2160,
        frame_rate=24.0,
    ),
}

_UNKNOWN_DESCRIPTOR = MediaDescriptor(container="Unknown", video_codec="Unknown", audio_codec="Unknown")

_CODEC_NAMES = {
    "h264": "H.264",
    "hevc": "H.265",
    "vp9": "VP9",
    "av1": "AV1",
    "prores": "ProRes",
    "aac": "AAC",
    "mp3": "MP3",
    "opus": "Opus",
    "ac3": "AC3",
    "eac3": "EAC3",
}


def probe_media(vod_path: str, cache_dir: str = "data/cache") -> dict[str, Any]:
    """Probe media metadata via ffprobe and persist ingest artifacts."""

    source_path = _resolve_source(vod_path)

    ingest_dir = Path(cache_dir).expanduser().resolve() / "ingest" / source_path.stem
    ingest_dir.mkdir(parents=True, exist_ok=True)

    raw_probe_path = ingest_dir / "ffprobe_raw.json"
    metadata_path = ingest_dir / "metadata.json"

    ffprobe_payload = _run_ffprobe(source_path)
    descriptor = descriptor_from_probe_payload(ffprobe_payload)
    metadata = {
        "status": "ok",
        "source_path": str(source_path),
        "size_bytes": source_path.stat().st_size,
        "descriptor": descriptor.to_dict(),
        "summary": descriptor.describe(),
    }

    raw_probe_path.write_text(
        json.dumps(ffprobe_payload, indent=2, sort_keys=True),
        encoding="utf-8",
    )
    metadata_path.write_text(
        json.dumps(metadata, indent=2, sort_keys=True),
        encoding="utf-8",
    )

    return {
        **metadata,
        "cache_dir": str(ingest_dir),
        "ffprobe_raw_path": str(raw_probe_path),
        "metadata_path": str(metadata_path),
    }


def probe_media_descriptor(path: str | Path) -> MediaDescriptor:
    """Analyze a file with ffprobe and return its descriptor."""

    return descriptor_from_probe_payload(_run_ffprobe(_resolve_source(path)))


def guess_descriptor_from_extension(path: str | Path) -> MediaDescriptor:
    """Cheap analyzer that infers a typical descriptor from the file extension."""

    source_path = _resolve_source(path)
    return _EXTENSION_DESCRIPTORS.get(source_path.suffix.lower(), _UNKNOWN_DESCRIPTOR)


def descriptor_from_probe_payload(payload: dict[str, Any]) -> MediaDescriptor:
    streams = payload.get("streams", [])
    format_entry = payload.get("format", {})

    video = next((stream for stream in streams if stream.get("codec_type") == "video"), {})
    audio = next((stream for stream in streams if stream.get("codec_type") == "audio"), {})

    return MediaDescriptor(
        container=_container_name(format_entry.get("format_name")),
        video_codec=_codec_name(video.get("codec_name")),
        audio_codec=_codec_name(audio.get("codec_name")),
        width=_to_int(video.get("width")) or 0,
        height=_to_int(video.get("height")) or 0,
        frame_rate=_parse_frame_rate(video.get("avg_frame_rate") or video.get("r_frame_rate")),
        bit_depth=_to_int(video.get("bits_per_raw_sample")) or 8,
        duration_seconds=_to_float(format_entry.get("duration")) or 0.0,
        bitrate=_to_int(format_entry.get("bit_rate")) or 0,
    )


def _resolve_source(path: str | Path) -> Path:
    source_path = Path(path).expanduser().resolve()
    if not source_path.is_file():
        raise SourceNotFoundError(f"Media file not found: {source_path}")
    return source_path


def _run_ffprobe(vod_path: Path) -> dict[str, Any]:
    command = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(vod_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise AnalysisError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if "error while loading shared libraries" in stderr:
            raise AnalysisError(
                "ffprobe is installed but failed to start because required shared libraries are missing."
                f" ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise AnalysisError(
            f"ffprobe failed while probing media file: {vod_path}.{details}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise AnalysisError("ffprobe returned invalid JSON output.") from exc


def _container_name(format_name: str | None) -> str:
    if not format_name:
        return "Unknown"
    # ffprobe reports demuxer aliases, e.g. "mov,mp4,m4a,3gp,3g2,mj2"
    first = format_name.split(",")[0]
    return {"mov": "MP4", "matroska": "MKV", "mpegts": "TS"}.get(first, first.upper())


def _codec_name(raw_value: str | None) -> str:
    if not raw_value:
        return ""
    return _CODEC_NAMES.get(raw_value.lower(), raw_value)


def _parse_frame_rate(raw_value: Any) -> float:
    if raw_value in (None, "N/A", "", "0/0"):
        return 0.0
    try:
        return round(float(Fraction(str(raw_value))), 3)
    except (ValueError, ZeroDivisionError):
        return 0.0


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)


def _to_int(raw_value: Any) -> int | None:
    if raw_value in (None, "N/A", ""):
        return None
    return int(raw_value)
