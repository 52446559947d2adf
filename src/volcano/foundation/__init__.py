"""Foundation layer: typed errors and environment configuration."""

from .config import VolcanoSettings, clear_settings_cache, get_settings
from .errors import ErrorCode, WorkflowError, classify_exception

__all__ = [
    "ErrorCode", "WorkflowError", "classify_exception",
    "VolcanoSettings", "get_settings", "clear_settings_cache",
]
