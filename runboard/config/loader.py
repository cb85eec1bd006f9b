"""Configuration loading utilities."""

import json
import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from runboard.config.schema import Config


def get_config_path() -> Path:
    """Get the configuration file path."""
    override = os.environ.get("RUNBOARD_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".runboard" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file, falling back to defaults."""
    path = config_path or get_config_path()

    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Config.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("Failed to load config from {}: {}", path, e)
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.model_dump(), indent=2), encoding="utf-8")


def get_data_dir() -> Path:
    """Get the runboard data directory, creating it if needed."""
    path = load_config().data_path
    path.mkdir(parents=True, exist_ok=True)
    return path
