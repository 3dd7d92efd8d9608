"""
Services for EatLock.

Services:
    - SecureRecordStore: Ciphertext-at-rest persistence (SQLAlchemy async)
    - LogRepository: Public façade with the secure accessor contract
    - StatisticsCache: Coalescing cache of derived, non-sensitive aggregates
    - KeyMigrator: Background re-encryption after key rotation
    - KeywordFeedbackGenerator: Default on-device AI feedback rules
    - RecordChangeBus: Explicit change notifications for UI surfaces
"""

from .events import ChangeKind, RecordChange, RecordChangeBus
from .feedback_generator import (
    FeedbackGenerator,
    FeedbackResult,
    KeywordFeedbackGenerator,
    determine_log_type,
)
from .key_rotation import KeyMigrator, MaintenanceReport, MigrationStatus
from .log_repository import LogRepository, RepositoryState, RotationState
from .record_store import ActionLogSummary, SecureRecordStore, StoredRecord
from .statistics import ActionLogStats, StatisticsCache

__all__ = [
    # Events
    "ChangeKind",
    "RecordChange",
    "RecordChangeBus",
    # Feedback
    "FeedbackGenerator",
    "FeedbackResult",
    "KeywordFeedbackGenerator",
    "determine_log_type",
    # Key rotation
    "KeyMigrator",
    "MaintenanceReport",
    "MigrationStatus",
    # Repository
    "ActionLogSummary",
    "LogRepository",
    "RepositoryState",
    "RotationState",
    # Store
    "SecureRecordStore",
    "StoredRecord",
    # Statistics
    "ActionLogStats",
    "StatisticsCache",
]
