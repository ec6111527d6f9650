"""Configuration module for chatvault."""

from chatvault.config.loader import get_config_path, load_config
from chatvault.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
