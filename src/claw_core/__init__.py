from __future__ import annotations

from .config import (
    GatewayConfig,
    HALF_STARTED_POLICY_CHOICES,
    HALF_STARTED_POLICY_RESTART,
    HALF_STARTED_POLICY_WAIT,
    KeeperConfig,
    StorageConfig,
    SyncConfig,
    SyncTargetConfig,
    default_keeper_config,
    load_keeper_config,
    load_keeper_config_dict,
)
from .errors import (
    ConfigError,
    MountError,
    ProcessStartError,
    ReadinessTimeoutError,
    RestoreError,
    SyncError,
    TypedKeeperError,
)
from .paths import KeeperPaths, default_keeper_data_dir, keeper_paths, resolve_keeper_data_dir

__all__ = [
    "ConfigError",
    "GatewayConfig",
    "HALF_STARTED_POLICY_CHOICES",
    "HALF_STARTED_POLICY_RESTART",
    "HALF_STARTED_POLICY_WAIT",
    "KeeperConfig",
    "KeeperPaths",
    "MountError",
    "ProcessStartError",
    "ReadinessTimeoutError",
    "RestoreError",
    "StorageConfig",
    "SyncConfig",
    "SyncError",
    "SyncTargetConfig",
    "TypedKeeperError",
    "default_keeper_config",
    "default_keeper_data_dir",
    "keeper_paths",
    "load_keeper_config",
    "load_keeper_config_dict",
    "resolve_keeper_data_dir",
]
