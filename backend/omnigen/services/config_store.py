"""Read/write persisted local configuration."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from omnigen.core.settings import PATHS
from omnigen.schemas.config import AppConfig

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    pass


def load_config(path: Path = PATHS.config_path) -> AppConfig:
    if not path.exists():
        return AppConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return AppConfig.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(f"invalid config file {path}: {exc}") from exc


def save_config(config: AppConfig, path: Path = PATHS.config_path) -> AppConfig:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Write then rename so a worker never reads a half-written file.
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(
        json.dumps(config.model_dump(), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    os.replace(tmp_path, path)
    logger.info("saved config to %s", path)
    return config
