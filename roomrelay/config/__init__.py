"""Configuration module for roomrelay."""

from roomrelay.config.loader import get_config_path, load_config, save_config
from roomrelay.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
