"""clinicsync core module.

Shared components used across the API process and the worker:
- Configuration management
- Cached settings accessor
"""

from clinicsync.core.config import (
    AuthSettings,
    BackupSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    JobSettings,
    MessagingSettings,
    Settings,
    SHASettings,
    SyncSettings,
    WorkflowGraphName,
    WorkflowSettings,
)
from clinicsync.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "AuthSettings",
    "BackupSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "JobSettings",
    "MessagingSettings",
    "SHASettings",
    "Settings",
    "SyncSettings",
    "WorkflowGraphName",
    "WorkflowSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
