"""
Realtime Sync Core Utilities
"""
from realtime_sync.core.types import (
    RealtimeSyncError,
    UnknownTopicError,
    ValidationError,
)

__all__ = [
    "RealtimeSyncError",
    "UnknownTopicError",
    "ValidationError",
]
