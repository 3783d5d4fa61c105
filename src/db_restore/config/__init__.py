"""Configuration management: settings models, TOML and environment loading.

Usage:
    >>> from db_restore.config import load_restore_config, RestoreSettings
"""

from db_restore.config.loader import load_restore_config
from db_restore.config.models import ConfigurationError, RestoreSettings, ServerSettings

__all__ = [
    "load_restore_config",
    "ConfigurationError",
    "RestoreSettings",
    "ServerSettings",
]
