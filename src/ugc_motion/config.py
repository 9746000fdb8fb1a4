"""Configuration for the generation pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from ugc_motion.utils.env import env_flag, env_float, env_int, fixture_mode_enabled


@dataclass(frozen=True)
class PipelineConfig:
    """Resolved pipeline settings."""

    db_path: Path
    storage_root: Path
    storage_base_url: str
    synthesis_spacing_s: float = 30.0
    synthesis_max_per_minute: int = 2
    retry_attempts: int = 3
    retry_min_backoff_s: float = 1.0
    retry_max_backoff_s: float = 10.0
    dependency_timeout_s: float = 300.0
    dependency_poll_s: float = 5.0
    composite_reuse_warn: int = 2
    use_fixture: bool = False
    ffmpeg_path: str = "ffmpeg"
    planner_api_url: Optional[str] = None
    planner_model: str = "default"
    image_api_url: Optional[str] = None
    video_api_url: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> PipelineConfig:
        data = os.environ if env is None else env
        storage_root = Path(data.get("UGC_STORAGE_ROOT") or "./artifacts/storage").expanduser().resolve()
        db_path = Path(data.get("UGC_DB_PATH") or "./artifacts/ugc_motion.db").expanduser().resolve()
        base_url = data.get("UGC_STORAGE_BASE_URL") or storage_root.as_uri()
        config = cls(
            db_path=db_path,
            storage_root=storage_root,
            storage_base_url=base_url.rstrip("/"),
            synthesis_spacing_s=env_float(data, "UGC_SYNTHESIS_SPACING_S", 30.0),
            synthesis_max_per_minute=env_int(data, "UGC_SYNTHESIS_MAX_PER_MINUTE", 2),
            retry_attempts=env_int(data, "UGC_RETRY_ATTEMPTS", 3),
            retry_min_backoff_s=env_float(data, "UGC_RETRY_MIN_BACKOFF_S", 1.0),
            retry_max_backoff_s=env_float(data, "UGC_RETRY_MAX_BACKOFF_S", 10.0),
            dependency_timeout_s=env_float(data, "UGC_DEPENDENCY_TIMEOUT_S", 300.0),
            dependency_poll_s=env_float(data, "UGC_DEPENDENCY_POLL_S", 5.0),
            composite_reuse_warn=env_int(data, "UGC_COMPOSITE_REUSE_WARN", 2),
            use_fixture=fixture_mode_enabled(data),
            ffmpeg_path=data.get("FFMPEG_PATH") or "ffmpeg",
            planner_api_url=data.get("UGC_PLANNER_API_URL") or None,
            planner_model=data.get("UGC_PLANNER_MODEL") or "default",
            image_api_url=data.get("UGC_IMAGE_API_URL") or None,
            video_api_url=data.get("UGC_VIDEO_API_URL") or None,
            api_key=data.get("UGC_API_KEY") or None,
        )
        config_file = data.get("UGC_CONFIG_FILE")
        if config_file:
            config = config.with_overrides(load_yaml_overrides(Path(config_file)))
        config.validate()
        return config

    def with_overrides(self, overrides: Mapping[str, Any]) -> PipelineConfig:
        known = {f.name: f for f in fields(self)}
        unknown = sorted(set(overrides) - set(known))
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        coerced: dict[str, Any] = {}
        for key, value in overrides.items():
            kind = getattr(known[key].type, "__name__", known[key].type)
            if key in ("db_path", "storage_root"):
                coerced[key] = Path(str(value)).expanduser().resolve()
            elif key == "storage_base_url":
                coerced[key] = str(value).rstrip("/")
            elif kind in ("float", "int"):
                cast = float if kind == "float" else int
                if isinstance(value, bool):
                    raise ValueError(f"Invalid numeric value for {key}: {value!r}")
                try:
                    coerced[key] = cast(value)
                except (TypeError, ValueError) as exc:
                    raise ValueError(f"Invalid numeric value for {key}: {value!r}") from exc
            elif kind == "bool" and isinstance(value, str):
                coerced[key] = env_flag(value)
            else:
                coerced[key] = value
        return replace(self, **coerced)

    def validate(self) -> None:
        if self.synthesis_spacing_s < 0:
            raise ValueError("synthesis_spacing_s must be >= 0")
        if self.synthesis_max_per_minute <= 0:
            raise ValueError("synthesis_max_per_minute must be greater than zero")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if not 0 <= self.retry_min_backoff_s <= self.retry_max_backoff_s:
            raise ValueError("retry backoff bounds must satisfy 0 <= min <= max")
        if self.dependency_timeout_s <= 0 or self.dependency_poll_s <= 0:
            raise ValueError("dependency wait settings must be greater than zero")


def load_yaml_overrides(path: Path) -> dict[str, Any]:
    """Read a YAML mapping of field overrides."""

    if not path.exists():
        raise FileNotFoundError(path)
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


__all__ = ["PipelineConfig", "load_yaml_overrides"]
