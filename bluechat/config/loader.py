"""Configuration loading utilities."""

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from bluechat.config.schema import ChatConfig


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".bluechat" / "config.json"


def load_config(config_path: Path | None = None) -> ChatConfig:
    """Load configuration from file or create default.

    A missing file yields defaults. An unreadable or invalid file is logged
    and also falls back to defaults.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return ChatConfig.model_validate(data)
        except (json.JSONDecodeError, OSError, ValidationError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return ChatConfig()


def save_config(config: ChatConfig, config_path: Path | None = None) -> None:
    """Save configuration to file."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
