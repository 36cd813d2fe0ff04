from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

from media_transcoder.errors import AnalysisError, SourceNotFoundError
from media_transcoder.ingest import probe as probe_module
from media_transcoder.ingest.probe import (
    _run_ffprobe,
    descriptor_from_probe_payload,
    guess_descriptor_from_extension,
    probe_media,
    probe_media_descriptor,
)

_SAMPLE_PAYLOAD = {
    "format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "duration": "12.5", "bit_rate": "8000000"},
    "streams": [
        {
            "index": 0,
            "codec_type": "video",
            "codec_name": "h264",
            "width": 1920,
            "height": 1080,
            "avg_frame_rate": "30000/1001",
            "bits_per_raw_sample": "8",
        },
        {"index": 1, "codec_type": "audio", "codec_name": "aac", "sample_rate": "48000"},
    ],
}


def test_run_ffprobe_wraps_missing_binary_error(tmp_path: Path) -> None:
    vod_path = tmp_path / "sample.mkv"
    vod_path.write_bytes(b"data")

    def _raise_missing(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("ffprobe")

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_missing)
        with pytest.raises(AnalysisError, match="ffprobe executable was not found"):
            _run_ffprobe(vod_path)


def test_run_ffprobe_reports_shared_library_issue(tmp_path: Path) -> None:
    vod_path = tmp_path / "sample.mkv"
    vod_path.write_bytes(b"data")

    command = ["ffprobe", str(vod_path)]

    def _raise_process_error(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.CalledProcessError(
            returncode=127,
            cmd=command,
            output="",
            stderr=(
                "ffprobe: error while loading shared libraries: "
                "libSvtAv1Enc.so.4: cannot open shared object file: No such file or directory"
            ),
        )

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_process_error)
        with pytest.raises(AnalysisError, match="failed to start because required shared libraries are missing"):
            _run_ffprobe(vod_path)


def test_run_ffprobe_wraps_other_called_process_error(tmp_path: Path) -> None:
    vod_path = tmp_path / "sample.mkv"
    vod_path.write_bytes(b"data")

    command = ["ffprobe", str(vod_path)]

    def _raise_process_error(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.CalledProcessError(
            returncode=1,
            cmd=command,
            output="",
            stderr="invalid data found when processing input",
        )

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_process_error)
        with pytest.raises(AnalysisError, match="ffprobe failed while probing media file"):
            _run_ffprobe(vod_path)


def test_run_ffprobe_rejects_invalid_json(tmp_path: Path, monkeypatch) -> None:
    vod_path = tmp_path / "sample.mkv"
    vod_path.write_bytes(b"data")

    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *args, **kwargs: subprocess.CompletedProcess(args=args, returncode=0, stdout="not json", stderr=""),
    )

    with pytest.raises(AnalysisError, match="invalid JSON"):
        _run_ffprobe(vod_path)


def test_descriptor_from_probe_payload_normalizes_streams() -> None:
    descriptor = descriptor_from_probe_payload(_SAMPLE_PAYLOAD)

    assert descriptor.container == "MP4"
    assert descriptor.video_codec == "H.264"
    assert descriptor.audio_codec == "AAC"
    assert descriptor.resolution == "1920x1080"
    assert descriptor.frame_rate == pytest.approx(29.97)
    assert descriptor.duration_seconds == 12.5
    assert descriptor.bitrate == 8_000_000
    assert str(descriptor) == "MP4 | Video: H.264 (1920x1080@29.97fps) | Audio: AAC"


def test_descriptor_from_audio_only_payload() -> None:
    descriptor = descriptor_from_probe_payload(
        {"format": {"format_name": "matroska,webm", "duration": "N/A"}, "streams": [{"codec_type": "audio", "codec_name": "opus"}]}
    )

    assert descriptor.container == "MKV"
    assert descriptor.video_codec == ""
    assert descriptor.audio_codec == "Opus"
    assert descriptor.width == 0
    assert descriptor.frame_rate == 0.0
    assert descriptor.duration_seconds == 0.0


def test_probe_media_descriptor_uses_ffprobe_payload(tmp_path: Path, monkeypatch) -> None:
    vod_path = tmp_path / "sample.mp4"
    vod_path.write_bytes(b"data")
    monkeypatch.setattr(probe_module, "_run_ffprobe", lambda path: _SAMPLE_PAYLOAD)

    assert probe_media_descriptor(vod_path).video_codec == "H.264"


def test_probe_media_persists_artifacts(tmp_path: Path, monkeypatch) -> None:
    vod_path = tmp_path / "sample.mp4"
    vod_path.write_bytes(b"data")
    monkeypatch.setattr(probe_module, "_run_ffprobe", lambda path: _SAMPLE_PAYLOAD)

    result = probe_media(str(vod_path), cache_dir=str(tmp_path / "cache"))

    metadata = json.loads(Path(result["metadata_path"]).read_text(encoding="utf-8"))
    assert metadata["descriptor"]["video_codec"] == "H.264"
    assert metadata["size_bytes"] == 4
    assert Path(result["ffprobe_raw_path"]).exists()
    assert Path(result["cache_dir"]) == (tmp_path / "cache" / "ingest" / "sample").resolve()


def test_extension_analyzer_guesses_common_containers(tmp_path: Path) -> None:
    mov = tmp_path / "clip.MOV"
    other = tmp_path / "clip.xyz"
    mov.write_bytes(b"")
    other.write_bytes(b"")

    assert guess_descriptor_from_extension(mov).video_codec == "ProRes"
    assert guess_descriptor_from_extension(mov).frame_rate == 24.0
    assert guess_descriptor_from_extension(other).container == "Unknown"


def test_probe_requires_existing_file(tmp_path: Path) -> None:
    with pytest.raises(SourceNotFoundError):
        probe_media_descriptor(tmp_path / "missing.mp4")
