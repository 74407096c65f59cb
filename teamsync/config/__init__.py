"""Configuration package for entra-grafana-sync."""

from .loader import ConfigLoader, find_config_file, load_config_from_dict, load_config_from_path
from .models import (
    EntraConfig,
    GrafanaConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    OrgRole,
    ScheduleConfig,
    StoreConfig,
    SyncConfig,
    SyncPolicyConfig,
)

__all__ = [
    "ConfigLoader",
    "find_config_file",
    "load_config_from_dict",
    "load_config_from_path",
    "EntraConfig",
    "GrafanaConfig",
    "LogFormat",
    "LoggingConfig",
    "LogLevel",
    "OrgRole",
    "ScheduleConfig",
    "StoreConfig",
    "SyncConfig",
    "SyncPolicyConfig",
]
