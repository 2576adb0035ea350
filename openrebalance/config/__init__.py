"""Configuration management module."""
from .manager import ConfigManager
from .schemas import Config

__all__ = [
    "ConfigManager",
    "Config",
]
