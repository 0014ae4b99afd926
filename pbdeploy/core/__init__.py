"""Core configuration and template components"""

from .config_loader import (
    Settings,
    PoolSettings,
    ExecutorSettings,
    DeploymentSettings,
    DiagnosticsSettings,
    load_settings,
)
from .templates import render_stub

__all__ = [
    "Settings",
    "PoolSettings",
    "ExecutorSettings",
    "DeploymentSettings",
    "DiagnosticsSettings",
    "load_settings",
    "render_stub",
]
