"""
Custom exception hierarchy for EatLock.

Provides structured exception types for the secure log core:
- Key management (unavailable, authentication gate, key still referenced)
- Crypto (tamper/corruption, key mismatch)
- Storage (record not found, substrate failures)

All exceptions inherit from EatLockError, enabling catch-all for
EatLock-specific errors while keeping the ability to catch specific
error types.

Exception messages never carry plaintext, ciphertext, or key bytes.
Only opaque identifiers (record id, key id) and error kinds are allowed.
Each class exposes a ``user_message`` that the UI can show verbatim.
"""

from __future__ import annotations


class EatLockError(Exception):
    """Base exception for all EatLock errors."""

    user_message = "Something went wrong. Please try again."

    #: Whether the operation may succeed if re-issued (e.g. after unlock).
    retryable = False


class ConfigurationError(EatLockError):
    """Missing environment variables, invalid config values, or startup failures."""


class ValidationError(EatLockError):
    """Input validation failures (empty content, too many tags, negative calories)."""

    user_message = "The entry is not valid."


class RepositoryClosedError(EatLockError):
    """The repository was used before start() or after teardown()."""


# =============================================================================
# Key management
# =============================================================================


class KeyManagementError(EatLockError):
    """Base class for key management failures."""

    user_message = "Content unavailable."

    def __init__(self, message: str, key_id: str | None = None) -> None:
        super().__init__(message)
        self.key_id = key_id


class KeyUnavailable(KeyManagementError):
    """The secure key store cannot be reached (e.g. device locked)."""

    user_message = "Content unavailable. Unlock your device and try again."
    retryable = True


class AuthenticationRequired(KeyManagementError):
    """The biometric/passcode gate failed or was refused."""

    user_message = "Authentication is required to view this content."
    retryable = True


class KeyInUse(KeyManagementError):
    """A key cannot be retired or destroyed while ciphertext still references it."""

    def __init__(self, message: str, key_id: str | None = None, references: int = 0) -> None:
        super().__init__(message, key_id)
        self.references = references


# =============================================================================
# Crypto
# =============================================================================


class CryptoError(EatLockError):
    """Base class for decryption failures."""

    user_message = "Content unavailable."


class AuthenticationFailure(CryptoError):
    """The integrity tag did not verify (tamper or corruption)."""


class KeyMismatch(CryptoError):
    """The ciphertext references a different key than the one supplied."""

    def __init__(self, message: str, expected_key_id: str | None = None, actual_key_id: str | None = None) -> None:
        super().__init__(message)
        self.expected_key_id = expected_key_id
        self.actual_key_id = actual_key_id


# =============================================================================
# Storage
# =============================================================================


class RecordNotFound(EatLockError):
    """No record exists with the given id (never created or deleted)."""

    user_message = "This entry no longer exists."

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id


class StorageFailure(EatLockError):
    """Persistence substrate I/O error."""

    user_message = "Could not save your entry. Please try again."


# =============================================================================
# Collaborators
# =============================================================================


class FeedbackGenerationError(EatLockError):
    """The AI feedback collaborator failed; the record exists without feedback."""

    user_message = "Feedback is not available right now."
    retryable = True


__all__ = [
    "EatLockError",
    "ConfigurationError",
    "ValidationError",
    "RepositoryClosedError",
    "KeyManagementError",
    "KeyUnavailable",
    "AuthenticationRequired",
    "KeyInUse",
    "CryptoError",
    "AuthenticationFailure",
    "KeyMismatch",
    "RecordNotFound",
    "StorageFailure",
    "FeedbackGenerationError",
]
