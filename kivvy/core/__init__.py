"""Kivvy Core Module - configuration and logging shared by every job component."""

from kivvy.core.config import KivvyConfig, get_config, reset_config, set_config
from kivvy.core.logging import setup_logging

__all__ = [
    "KivvyConfig",
    "get_config",
    "set_config",
    "reset_config",
    "setup_logging",
]
