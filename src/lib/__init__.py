"""
Lib package for EatLock.

Contains shared building blocks:
- encryption.py: CryptoEngine and the Ciphertext envelope (AES-256-GCM)
- key_manager.py: Key lifecycle, secure key stores, authentication gate
- exceptions.py: Error taxonomy rooted at EatLockError
- logging.py: structlog setup with sensitive-field redaction
"""

from src.lib.encryption import Ciphertext, CryptoEngine, KeyHandle
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
from src.lib.key_manager import (
    Authenticator,
    DeviceCapability,
    KeyManager,
    KeyringKeyStore,
    KeyState,
    MemoryKeyStore,
    SecureKeyStore,
)
from src.lib.logging import setup_logging

__all__ = [
    # Encryption
    "Ciphertext",
    "CryptoEngine",
    "KeyHandle",
    # Keys
    "Authenticator",
    "DeviceCapability",
    "KeyManager",
    "KeyState",
    "KeyringKeyStore",
    "MemoryKeyStore",
    "SecureKeyStore",
    # Errors
    "AuthenticationFailure",
    "AuthenticationRequired",
    "ConfigurationError",
    "CryptoError",
    "EatLockError",
    "FeedbackGenerationError",
    "KeyInUse",
    "KeyManagementError",
    "KeyMismatch",
    "KeyUnavailable",
    "RecordNotFound",
    "RepositoryClosedError",
    "StorageFailure",
    "ValidationError",
    # Logging
    "setup_logging",
]
