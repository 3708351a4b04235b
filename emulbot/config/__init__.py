"""Configuration module for emulbot."""

from emulbot.config.loader import get_config_path, load_config
from emulbot.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
