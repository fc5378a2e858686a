"""Configuration module."""

from routinebot.core.config.loader import load_config
from routinebot.core.config.schema import Config

__all__ = ["Config", "load_config"]
