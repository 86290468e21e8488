"""Helmsman - an interactive agent shell with pluggable tools and commands."""

__version__ = "0.1.0"

from helmsman.config import Config, get_config, set_config

__all__ = ["Config", "get_config", "set_config", "__version__"]
