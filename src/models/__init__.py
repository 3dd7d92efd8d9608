"""
Models package for EatLock.

Usage:
    from src.models import ActionLog, LogType, TimeRange
"""

from src.models.action_log import ActionLog, LogType
from src.models.base import Base
from src.models.time_range import TimeRange

__all__ = [
    "ActionLog",
    "Base",
    "LogType",
    "TimeRange",
]
