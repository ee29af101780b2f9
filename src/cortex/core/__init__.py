"""Core module - configuration, engine handle, and shared models."""

from cortex.core.config import Settings, get_settings
from cortex.core.connections import EngineConfig, EngineHandle
from cortex.core.models import Result

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Engine
    "EngineConfig",
    "EngineHandle",
    # Models
    "Result",
]
