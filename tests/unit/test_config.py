from __future__ import annotations

from pathlib import Path

import pytest

from ugc_motion.config import PipelineConfig, load_yaml_overrides


def test_defaults(tmp_path: Path) -> None:
    config = PipelineConfig.from_env({"UGC_STORAGE_ROOT": str(tmp_path / "store"), "UGC_DB_PATH": str(tmp_path / "j.db")})
    assert config.synthesis_spacing_s == 30.0
    assert config.synthesis_max_per_minute == 2
    assert config.retry_attempts == 3
    assert config.composite_reuse_warn == 2
    assert config.use_fixture is False
    assert config.ffmpeg_path == "ffmpeg"
    assert config.storage_base_url == (tmp_path / "store").resolve().as_uri()
    assert config.video_api_url is None


def test_env_overrides(tmp_path: Path) -> None:
    config = PipelineConfig.from_env(
        {
            "UGC_DB_PATH": str(tmp_path / "jobs.db"),
            "UGC_STORAGE_ROOT": str(tmp_path),
            "UGC_STORAGE_BASE_URL": "https://media.example.com/",
            "UGC_SYNTHESIS_SPACING_S": "5",
            "UGC_RETRY_ATTEMPTS": "4",
            "UGC_USE_FIXTURE": "yes",
            "UGC_VIDEO_API_URL": "https://video.example.com",
            "FFMPEG_PATH": "/opt/ffmpeg",
        }
    )
    assert config.db_path == (tmp_path / "jobs.db").resolve()
    assert config.storage_base_url == "https://media.example.com"
    assert config.synthesis_spacing_s == 5.0
    assert config.retry_attempts == 4
    assert config.use_fixture is True
    assert config.video_api_url == "https://video.example.com"
    assert config.ffmpeg_path == "/opt/ffmpeg"


def test_yaml_overlay_wins_over_env(tmp_path: Path) -> None:
    overlay = tmp_path / "pipeline.yaml"
    overlay.write_text("synthesis_spacing_s: 12.5\ncomposite_reuse_warn: 4\n", encoding="utf-8")
    config = PipelineConfig.from_env(
        {"UGC_STORAGE_ROOT": str(tmp_path), "UGC_SYNTHESIS_SPACING_S": "5", "UGC_CONFIG_FILE": str(overlay)}
    )
    assert config.synthesis_spacing_s == 12.5
    assert config.composite_reuse_warn == 4


def test_unknown_override_keys_are_rejected(tmp_path: Path) -> None:
    config = PipelineConfig.from_env({"UGC_STORAGE_ROOT": str(tmp_path)})
    with pytest.raises(ValueError, match="Unknown config keys: bogus"):
        config.with_overrides({"bogus": 1})


def test_overlay_must_be_mapping(tmp_path: Path) -> None:
    overlay = tmp_path / "bad.yaml"
    overlay.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_overrides(overlay)
    with pytest.raises(FileNotFoundError):
        load_yaml_overrides(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    "key, value",
    [
        ("UGC_SYNTHESIS_SPACING_S", "-1"),
        ("UGC_SYNTHESIS_MAX_PER_MINUTE", "0"),
        ("UGC_RETRY_ATTEMPTS", "0"),
        ("UGC_DEPENDENCY_TIMEOUT_S", "0"),
        ("UGC_RETRY_ATTEMPTS", "three"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, key: str, value: str) -> None:
    with pytest.raises(ValueError):
        PipelineConfig.from_env({"UGC_STORAGE_ROOT": str(tmp_path), key: value})


def test_backoff_bounds_are_checked(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="backoff"):
        PipelineConfig.from_env(
            {"UGC_STORAGE_ROOT": str(tmp_path), "UGC_RETRY_MIN_BACKOFF_S": "5", "UGC_RETRY_MAX_BACKOFF_S": "1"}
        )


def test_overlay_values_are_coerced(tmp_path: Path) -> None:
    overlay = tmp_path / "pipeline.yaml"
    overlay.write_text('synthesis_spacing_s: "15"\nretry_attempts: "5"\nuse_fixture: "on"\n', encoding="utf-8")
    config = PipelineConfig.from_env({"UGC_STORAGE_ROOT": str(tmp_path), "UGC_CONFIG_FILE": str(overlay)})
    assert config.synthesis_spacing_s == 15.0
    assert config.retry_attempts == 5
    assert config.use_fixture is True


@pytest.mark.parametrize("line", ["synthesis_spacing_s: abc", "retry_attempts: [1, 2]", "dependency_poll_s: true"])
def test_non_numeric_overlay_values_raise(tmp_path: Path, line: str) -> None:
    overlay = tmp_path / "pipeline.yaml"
    overlay.write_text(line + "\n", encoding="utf-8")
    key = line.split(":")[0]
    with pytest.raises(ValueError, match=key):
        PipelineConfig.from_env({"UGC_STORAGE_ROOT": str(tmp_path), "UGC_CONFIG_FILE": str(overlay)})
