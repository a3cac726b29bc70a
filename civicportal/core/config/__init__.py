from civicportal.core.config.manager import ConfigManager, get_config
from civicportal.core.config.models import DEFAULT_TIMINGS, AppConfig, SessionTimings
from civicportal.core.config.paths import ConfigFsPaths

__all__ = [
    "ConfigManager",
    "ConfigFsPaths",
    "get_config",
    "AppConfig",
    "SessionTimings",
    "DEFAULT_TIMINGS",
]
