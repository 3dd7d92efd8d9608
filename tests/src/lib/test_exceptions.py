"""
Tests for the EatLock exception hierarchy.

Verifies:
- All exceptions are subclasses of EatLockError
- Key and crypto errors group under their bases
- Retryable flags and user messages
- Identifiers carried as attributes, never secrets
"""

from __future__ import annotations

import pytest

from src.lib.exceptions import (
    AuthenticationFailure,
    AuthenticationRequired,
    ConfigurationError,
    CryptoError,
    EatLockError,
    FeedbackGenerationError,
    KeyInUse,
    KeyManagementError,
    KeyMismatch,
    KeyUnavailable,
    RecordNotFound,
    RepositoryClosedError,
    StorageFailure,
    ValidationError,
)

# All concrete exception classes (excluding the base)
EXCEPTION_CLASSES = [
    ConfigurationError,
    ValidationError,
    RepositoryClosedError,
    KeyUnavailable,
    AuthenticationRequired,
    KeyInUse,
    AuthenticationFailure,
    KeyMismatch,
    StorageFailure,
    FeedbackGenerationError,
]


class TestExceptionHierarchy:
    """Test the exception class hierarchy."""

    def test_base_is_subclass_of_exception(self) -> None:
        assert issubclass(EatLockError, Exception)

    @pytest.mark.parametrize("exc_class", EXCEPTION_CLASSES)
    def test_all_are_subclass_of_base(self, exc_class: type[EatLockError]) -> None:
        assert issubclass(exc_class, EatLockError)

    @pytest.mark.parametrize("exc_class", EXCEPTION_CLASSES)
    def test_message_preserved(self, exc_class: type[EatLockError]) -> None:
        exc = exc_class("something happened")
        assert str(exc) == "something happened"

    def test_key_errors_group(self) -> None:
        for exc_class in (KeyUnavailable, AuthenticationRequired, KeyInUse):
            assert issubclass(exc_class, KeyManagementError)

    def test_crypto_errors_group(self) -> None:
        assert issubclass(AuthenticationFailure, CryptoError)
        assert issubclass(KeyMismatch, CryptoError)

    def test_key_mismatch_is_not_authentication_failure(self) -> None:
        assert not issubclass(KeyMismatch, AuthenticationFailure)
        assert not issubclass(AuthenticationFailure, KeyMismatch)

    def test_catch_all(self) -> None:
        with pytest.raises(EatLockError):
            raise StorageFailure("disk full")


class TestExceptionAttributes:
    """Test retryability and carried identifiers."""

    @pytest.mark.parametrize("exc_class", [KeyUnavailable, AuthenticationRequired, FeedbackGenerationError])
    def test_retryable(self, exc_class: type[EatLockError]) -> None:
        assert exc_class("x").retryable is True

    @pytest.mark.parametrize("exc_class", [AuthenticationFailure, KeyMismatch, StorageFailure, ValidationError])
    def test_not_retryable(self, exc_class: type[EatLockError]) -> None:
        assert exc_class("x").retryable is False

    def test_record_not_found_carries_id(self) -> None:
        exc = RecordNotFound("abc-123")
        assert exc.record_id == "abc-123"
        assert "abc-123" in str(exc)

    def test_key_in_use_carries_reference_count(self) -> None:
        exc = KeyInUse("still referenced", key_id="k-1", references=4)
        assert exc.key_id == "k-1"
        assert exc.references == 4

    def test_key_mismatch_carries_both_ids(self) -> None:
        exc = KeyMismatch("mismatch", expected_key_id="k-a", actual_key_id="k-b")
        assert exc.expected_key_id == "k-a"
        assert exc.actual_key_id == "k-b"

    def test_user_messages_are_generic(self) -> None:
        assert AuthenticationFailure.user_message == "Content unavailable."
        assert KeyMismatch.user_message == "Content unavailable."
        assert "Unlock" in KeyUnavailable.user_message
