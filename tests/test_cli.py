from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

import media_transcoder.cli as cli
from media_transcoder.config import PipelineSettings, Settings, TransformSettings
from media_transcoder.errors import AnalysisError, TranscodeCancelled
from media_transcoder.models import ProgressSnapshot


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        pipeline=PipelineSettings(max_parallelism=2, memory_budget_bytes=64 * 1024 * 1024, cache_dir=tmp_path / "cache"),
        transform=TransformSettings(name="identity", min_delay_ms=0),
    )


def test_transcode_command_writes_output_and_prints_result(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "input.mp4"
    data = bytes(range(256)) * 40
    source.write_bytes(data)
    output = tmp_path / "out" / "result.mp4"

    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(
        cli.app,
        ["transcode", str(source), str(output), "--analyzer", "extension", "--chunk-size", "1000", "--preset", "web"],
    )

    assert result.exit_code == 0, result.output
    assert "[1/3] Open source..." in result.output
    assert "[3/3] Transcode chunks done" in result.output
    assert "chunks 11/11 (100.0%)" in result.output
    assert output.read_bytes() == data
    payload = json.loads(result.stdout[result.stdout.index("{") :])
    assert payload["status"] == "ok"
    assert payload["chunks_processed"] == 11
    assert payload["output_size_bytes"] == len(data)


def test_transcode_command_prints_clean_error_without_traceback(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "input.mkv"
    source.write_bytes(b"data")

    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    def _failing_analyzer(path: Path):
        raise AnalysisError("ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH.")

    monkeypatch.setattr(cli, "resolve_analyzer", lambda name: _failing_analyzer)

    result = CliRunner().invoke(cli.app, ["transcode", str(source), str(tmp_path / "out.mp4")])

    assert result.exit_code == 1
    assert "[2/3] Analyze source failed" in result.output
    assert "Error: ffprobe executable was not found" in result.output
    assert "Traceback" not in result.output
    assert not (tmp_path / "out.mp4").exists()


def test_transcode_command_reports_missing_source(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["transcode", str(tmp_path / "missing.mp4"), str(tmp_path / "out.mp4")])

    assert result.exit_code == 1
    assert "[1/3] Open source failed" in result.output
    assert "Error: Media file not found" in result.output


def test_transcode_command_rejects_invalid_quality(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "input.mp4"
    source.write_bytes(b"data")
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["transcode", str(source), str(tmp_path / "out.mp4"), "--quality", "150"])

    assert result.exit_code == 1
    assert "Error: video_quality must be within 0-100" in result.output


def test_transcode_command_exits_130_when_cancelled(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "input.mp4"
    source.write_bytes(b"data")
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    async def _cancelled(*args, **kwargs):
        raise TranscodeCancelled("Transcode cancelled")

    monkeypatch.setattr(cli, "_run_transcode", _cancelled)

    result = CliRunner().invoke(cli.app, ["transcode", str(source), str(tmp_path / "out.mp4"), "--analyzer", "extension"])

    assert result.exit_code == cli.CANCELLED_EXIT_CODE
    assert "Cancelled." in result.output


def test_plan_command_lists_ranges(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "input.mp4"
    source.write_bytes(b"x" * 2500)
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["plan", str(source), "--chunk-size", "1000"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["total_chunks"] == 3
    assert payload["ranges"] == [
        {"offset": 0, "length": 1000, "is_last": False},
        {"offset": 1000, "length": 1000, "is_last": False},
        {"offset": 2000, "length": 500, "is_last": True},
    ]


def test_plan_command_uses_automatic_chunk_size(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "input.mp4"
    source.write_bytes(b"x" * 10)
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["plan", str(source)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["chunk_size_bytes"] == 1024 * 1024
    assert payload["chunk_size"] == "1 MB"
    assert payload["total_chunks"] == 1


def test_config_show_prints_settings(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["config", "show"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["transform"]["name"] == "identity"


def test_probe_command_prints_clean_error(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))

    result = CliRunner().invoke(cli.app, ["probe", str(tmp_path / "missing.mp4")])

    assert result.exit_code == 1
    assert "Error: Media file not found" in result.output


def test_progress_printer_skips_repeated_percentages(capsys) -> None:
    printer = cli.ChunkProgressPrinter()

    for completed in range(1, 401):
        printer(ProgressSnapshot(completed / 400, completed, 400))

    lines = [line.strip() for line in capsys.readouterr().err.splitlines() if "chunks" in line]
    assert lines[0].startswith("chunks 1/400 ")
    assert not any(line.startswith("chunks 2/400 ") for line in lines)
    assert len(lines) <= 101
    assert lines[-1] == "chunks 400/400 (100.0%)"
