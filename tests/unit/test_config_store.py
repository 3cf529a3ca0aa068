from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from omnigen.schemas.config import AppConfig, PipelineConfig
from omnigen.services.config_store import ConfigError, load_config, save_config


def test_missing_file_gives_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "config.json")
    assert config.pipeline.job_timeout_s == 900
    assert config.pipeline.progress_poll_interval_s == 1.0
    assert config.video.max_attempts == 120


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "config.json"
    config = AppConfig()
    config.pipeline.max_scenes = 4
    config.audio.poll_interval_s = 2.5
    save_config(config, path)

    loaded = load_config(path)
    assert loaded.pipeline.max_scenes == 4
    assert loaded.audio.poll_interval_s == 2.5
    assert not path.with_name("config.json.tmp").exists()


def test_partial_file_fills_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text('{"pipeline": {"job_timeout_s": 120}}', encoding="utf-8")
    config = load_config(path)
    assert config.pipeline.job_timeout_s == 120
    assert config.storage.presign_ttl_s == 3600


@pytest.mark.parametrize("content", ["{not json", '{"pipeline": {"max_scenes": "many"}}'])
def test_invalid_file_raises(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_stale_threshold_must_exceed_job_timeout(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        PipelineConfig(job_timeout_s=1800, stale_job_after_s=1200)
    with pytest.raises(ValidationError):
        PipelineConfig(job_timeout_s=1200, stale_job_after_s=1200)
    assert PipelineConfig(job_timeout_s=1800, stale_job_after_s=2400).stale_job_after_s == 2400

    path = tmp_path / "config.json"
    path.write_text('{"pipeline": {"job_timeout_s": 3600}}', encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_defaults_inline_start_images_and_narrator_section() -> None:
    config = AppConfig()
    assert config.storage.inline_start_images is True
    assert config.narrator.model == "tts-1"
    assert config.narrator.api_key == ""
