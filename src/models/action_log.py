"""
Action Log Model for EatLock.

One row per logged behavioural event (an impulse resisted, a slip, a
struggle in progress).

Data Classification:
- content_ciphertext: SENSITIVE, AES-256-GCM envelope, never plaintext
- feedback_ciphertext: SENSITIVE, AES-256-GCM envelope, absent until
  AI feedback has been generated
- category, prevented_calories, emotion_tags, timestamps, key_id: INTERNAL
  (non-sensitive metadata, stored in plaintext for querying/statistics)

Both ciphertext columns of a row are always sealed under the key named by
``key_id``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
)
from sqlalchemy.types import TypeDecorator

from src.models.base import Base

# Validation limits
MAX_CONTENT_LENGTH = 500
MAX_EMOTION_TAGS = 10
MAX_EMOTION_TAG_LENGTH = 32
SHORT_CONTENT_LENGTH = 30


class LogType(StrEnum):
    """
    Classification chosen by the user when logging.

    - success: resisted the urge (prevented overeating)
    - failure: gave in to the urge
    - struggle: still resisting / conflicted
    - other: anything else
    """

    SUCCESS = "success"
    FAILURE = "failure"
    STRUGGLE = "struggle"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def emoji(self) -> str:
        return _EMOJI[self]


_DISPLAY_NAMES = {
    LogType.SUCCESS: "Success",
    LogType.FAILURE: "Slip",
    LogType.STRUGGLE: "Struggling",
    LogType.OTHER: "Other",
}

_EMOJI = {
    LogType.SUCCESS: "✅",
    LogType.FAILURE: "❌",
    LogType.STRUGGLE: "\U0001f4aa",
    LogType.OTHER: "\U0001f4dd",
}


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime column that always round-trips as timezone-aware UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


class ActionLog(Base):
    """
    Stored action record.

    Attributes:
        id: UUID4 string, generated at creation, immutable
        created_at: Creation timestamp (UTC), immutable
        updated_at: Last mutation timestamp (UTC)
        category: LogType value
        content_ciphertext: Serialized Ciphertext envelope of the user's entry
        feedback_ciphertext: Serialized Ciphertext envelope of AI feedback (optional)
        prevented_calories: Estimated calories not eaten (optional, >= 0)
        emotion_tags: Ordered list of short labels
        key_id: Key that sealed both ciphertext columns

    Data Classification: SENSITIVE (ciphertext columns only)
    """

    __tablename__ = "action_logs"

    id = Column(String(36), primary_key=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, nullable=False)  # set explicitly on user-visible mutations

    category = Column(String(20), default=LogType.OTHER.value, nullable=False)  # success | failure | struggle | other

    # Encrypted storage
    content_ciphertext = Column(LargeBinary, nullable=False)
    feedback_ciphertext = Column(LargeBinary, nullable=True)

    # Non-sensitive metadata
    prevented_calories = Column(Integer, nullable=True)
    emotion_tags = Column(JSON, nullable=False, default=list)
    key_id = Column(String(64), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "prevented_calories IS NULL OR prevented_calories >= 0",
            name="ck_action_logs_prevented_calories",
        ),
        Index("idx_action_logs_created_at", "created_at", "id"),
        Index("idx_action_logs_key_id", "key_id"),
        Index("idx_action_logs_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<ActionLog(id={self.id}, category={self.category}, key_id={self.key_id})>"


__all__ = [
    "ActionLog",
    "LogType",
    "MAX_CONTENT_LENGTH",
    "MAX_EMOTION_TAGS",
    "MAX_EMOTION_TAG_LENGTH",
    "SHORT_CONTENT_LENGTH",
    "UTCDateTime",
    "utcnow",
]
