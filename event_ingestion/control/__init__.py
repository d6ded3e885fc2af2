from .runtime_settings import RuntimeSettings, SettingsSnapshot
from .lag_monitor import IndexerMode, LagMonitor, LagSample

__all__ = [
    "RuntimeSettings",
    "SettingsSnapshot",
    "IndexerMode",
    "LagMonitor",
    "LagSample",
]
