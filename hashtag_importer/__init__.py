from __future__ import annotations

from .config import load_config
from .config_schema import AppConfig
from .errors import ConfigError, FatalError, StorageError, TransientError
from .pump import Pump, PumpResult
from .records import HashtagEntity, HashtagRecord

__all__ = [
    "AppConfig",
    "ConfigError",
    "FatalError",
    "HashtagEntity",
    "HashtagRecord",
    "Pump",
    "PumpResult",
    "StorageError",
    "TransientError",
    "load_config",
]
