"""
PageWatch Configuration Package

Public API for loading and validating ThreadWatch configuration.

Example:
    from ThreadWatch.PageWatch.config import load_config

    config = load_config(
        path="threadwatch.yaml",
        cli_overrides={"watch": {"check_interval_s": 120}},
    )
    config_id = config.config_hash()
"""

from .loader import ENV_PREFIX, export_config_schema, load_config
from .models import (
    ConcurrencySettings,
    DownloadSettings,
    HttpSettings,
    ThreadWatchConfig,
    WatchSettings,
)

__all__ = [
    # Models
    "ThreadWatchConfig",
    "HttpSettings",
    "ConcurrencySettings",
    "DownloadSettings",
    "WatchSettings",
    # Loading
    "ENV_PREFIX",
    "load_config",
    "export_config_schema",
]
