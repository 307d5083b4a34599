"""Configuration module for bluechat."""

from bluechat.config.loader import get_config_path, load_config, save_config
from bluechat.config.schema import ChatConfig

__all__ = ["ChatConfig", "get_config_path", "load_config", "save_config"]
