"""Configuration module for rlmkit."""

from rlmkit.config.loader import get_config_path, load_config, save_config
from rlmkit.config.schema import RLMConfig

__all__ = ["RLMConfig", "load_config", "save_config", "get_config_path"]
