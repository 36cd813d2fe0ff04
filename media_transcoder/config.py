from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import psutil
import yaml
from pydantic import BaseModel, Field

from media_transcoder.models import PipelineConfig, TranscodeOptions

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "MEDIA_TRANSCODER_"


class PipelineSettings(BaseModel):
    max_parallelism: int | None = None
    fixed_chunk_bytes: int = Field(0, ge=0)
    memory_budget_bytes: int | None = None
    cache_dir: Path = Path("data/cache")

    def to_pipeline_config(self) -> PipelineConfig:
        """Resolve unset values against the host (CPU count, available memory)."""

        return PipelineConfig(
            max_parallelism=(os.cpu_count() or 1) if self.max_parallelism is None else self.max_parallelism,
            fixed_chunk_bytes=self.fixed_chunk_bytes,
            memory_budget_bytes=available_memory_bytes() if self.memory_budget_bytes is None else self.memory_budget_bytes,
        )


class TransformSettings(BaseModel):
    name: str = "default"
    simulated_bytes_per_ms: int = 10 * 1024
    min_delay_ms: float = 10.0


class OutputSettings(BaseModel):
    default_preset: str | None = None
    container: str = "MP4"
    video_codec: str = "H.264"
    audio_codec: str = "AAC"
    video_quality: int = 80
    encoder_preset: str = "medium"

    def to_options(self, **overrides: Any) -> TranscodeOptions:
        if self.default_preset:
            return TranscodeOptions.from_preset(self.default_preset, **overrides)
        base = {
            "container": self.container,
            "video_codec": self.video_codec,
            "audio_codec": self.audio_codec,
            "video_quality": self.video_quality,
            "encoder_preset": self.encoder_preset,
        }
        return TranscodeOptions(**{**base, **overrides})


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    transform: TransformSettings = Field(default_factory=TransformSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def available_memory_bytes() -> int:
    return int(psutil.virtual_memory().available)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config: dict[str, Any] = {}
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if existing_value is None:
        return raw_value
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
