"""
Encryption Foundation for EatLock.

This module provides the authenticated encryption primitives used for every
piece of user-authored content and AI feedback before it is persisted.

Key Features:
- AES-256-GCM for authenticated encryption (confidentiality + integrity)
- Fresh 96-bit random nonce per encryption
- Self-describing ciphertext envelope: key id, nonce, tag and body
- Key id bound as associated data, so an envelope cannot be relabelled
- KeyMismatch (wrong key supplied) kept distinct from AuthenticationFailure
  (tamper or corruption), so callers can look up the right retired key

Dependencies:
- cryptography>=41.0.0 (for AES-256-GCM)

Usage:
    from src.lib.encryption import CryptoEngine

    engine = CryptoEngine()
    sealed = engine.encrypt(b"sensitive data", key)
    plaintext = engine.decrypt(sealed, key)

The engine is stateless: it never persists, caches or logs key material.
Keys are obtained from the KeyManager (src/lib/key_manager.py).
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.lib.exceptions import AuthenticationFailure, KeyMismatch

logger = structlog.get_logger(__name__)


# =============================================================================
# Key Handle
# =============================================================================

class KeyHandle:
    """
    Opaque handle to one symmetric key.

    Only the CryptoEngine reads the key material. The handle's repr and str
    show the key id alone, so a handle passed to a logger leaks nothing.

    Attributes:
        key_id: Stable identifier embedded in every ciphertext sealed with this key
    """

    __slots__ = ("key_id", "_material")

    def __init__(self, key_id: str, material: bytes) -> None:
        if len(material) != CryptoEngine.KEY_SIZE:
            raise ValueError(
                f"Key material must be exactly {CryptoEngine.KEY_SIZE} bytes, got {len(material)}"
            )
        if not key_id or len(key_id.encode("utf-8")) > 255:
            raise ValueError("Key id must be between 1 and 255 bytes")
        self.key_id = key_id
        self._material = material

    def __repr__(self) -> str:
        return f"<KeyHandle(key_id={self.key_id})>"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyHandle):
            return NotImplemented
        return self.key_id == other.key_id

    def __hash__(self) -> int:
        return hash(self.key_id)


# =============================================================================
# Ciphertext Envelope
# =============================================================================

@dataclass(frozen=True)
class Ciphertext:
    """
    Container for one sealed value.

    Attributes:
        key_id: Id of the key that sealed this value
        nonce: 12-byte GCM nonce
        tag: 16-byte GCM authentication tag
        body: Encrypted payload (same length as the plaintext)

    Wire format (``to_bytes``):
        b"EL" | version (1) | key_id length (1) | key_id | nonce (12) | body | tag (16)
    """

    key_id: str
    nonce: bytes = field(repr=False)
    tag: bytes = field(repr=False)
    body: bytes = field(repr=False)

    MAGIC = b"EL"
    VERSION = 1

    def to_bytes(self) -> bytes:
        """Serialize for database storage."""
        key_id_bytes = self.key_id.encode("utf-8")
        header = self.MAGIC + struct.pack("!BB", self.VERSION, len(key_id_bytes))
        return header + key_id_bytes + self.nonce + self.body + self.tag

    @classmethod
    def from_bytes(cls, data: bytes) -> Ciphertext:
        """
        Deserialize from database storage.

        Raises:
            AuthenticationFailure: If the envelope is truncated or malformed.
                A damaged envelope is indistinguishable from tampering.
        """
        nonce_size = CryptoEngine.NONCE_SIZE
        tag_size = CryptoEngine.TAG_SIZE

        if len(data) < 4 or data[:2] != cls.MAGIC:
            raise AuthenticationFailure("Ciphertext envelope is malformed")

        version, key_id_len = struct.unpack("!BB", data[2:4])
        if version != cls.VERSION:
            raise AuthenticationFailure(f"Unsupported ciphertext version: {version}")

        offset = 4 + key_id_len
        if key_id_len == 0 or len(data) < offset + nonce_size + tag_size:
            raise AuthenticationFailure("Ciphertext envelope is truncated")

        try:
            key_id = data[4:offset].decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationFailure("Ciphertext key id is corrupted") from e

        nonce = data[offset:offset + nonce_size]
        sealed = data[offset + nonce_size:]
        return cls(
            key_id=key_id,
            nonce=nonce,
            body=sealed[:-tag_size],
            tag=sealed[-tag_size:],
        )

    @staticmethod
    def key_id_of(data: bytes) -> str:
        """Read only the key id tag from a serialized envelope."""
        return Ciphertext.from_bytes(data).key_id


# =============================================================================
# Crypto Engine
# =============================================================================

class CryptoEngine:
    """
    Stateless encrypt/decrypt primitives over byte sequences.

    One authenticated-encryption scheme (AES-256-GCM) for the whole process
    lifetime: there is no negotiation and no downgrade path.

    Security Properties:
    - AES-256-GCM for authenticated encryption
    - Unique random nonce per encryption operation
    - Key id authenticated as associated data
    - Plaintext and key bytes are never logged, at any verbosity

    Example:
        >>> engine = CryptoEngine()
        >>> sealed = engine.encrypt(b"my sensitive data", key)
        >>> engine.decrypt(sealed, key)
        b'my sensitive data'
    """

    ALGORITHM = "AES-256-GCM"
    KEY_SIZE = 32  # 256 bits for AES-256
    NONCE_SIZE = 12  # 96 bits for GCM (recommended)
    TAG_SIZE = 16  # 128-bit tag

    @classmethod
    def generate_key_material(cls) -> bytes:
        """Generate fresh random key material."""
        return AESGCM.generate_key(bit_length=cls.KEY_SIZE * 8)

    def encrypt(self, plaintext: bytes, key: KeyHandle) -> Ciphertext:
        """
        Seal plaintext under the given key.

        Args:
            plaintext: Bytes to encrypt (may be empty)
            key: Handle of the key to seal with

        Returns:
            Ciphertext embedding key id, nonce, tag and body
        """
        nonce = os.urandom(self.NONCE_SIZE)
        aesgcm = AESGCM(key._material)
        sealed = aesgcm.encrypt(nonce, plaintext, self._associated_data(key.key_id))

        return Ciphertext(
            key_id=key.key_id,
            nonce=nonce,
            body=sealed[:-self.TAG_SIZE],
            tag=sealed[-self.TAG_SIZE:],
        )

    def decrypt(self, ciphertext: Ciphertext, key: KeyHandle) -> bytes:
        """
        Open a sealed value.

        Args:
            ciphertext: The envelope to open
            key: Handle of the key named by the envelope

        Returns:
            The original plaintext bytes

        Raises:
            KeyMismatch: The envelope was sealed under a different key.
            AuthenticationFailure: The tag did not verify (tamper, corruption).
        """
        if ciphertext.key_id != key.key_id:
            logger.info(
                "decrypt_key_mismatch",
                ciphertext_key_id=ciphertext.key_id,
                supplied_key_id=key.key_id,
            )
            raise KeyMismatch(
                "Ciphertext was sealed under a different key",
                expected_key_id=ciphertext.key_id,
                actual_key_id=key.key_id,
            )

        aesgcm = AESGCM(key._material)
        try:
            return aesgcm.decrypt(
                ciphertext.nonce,
                ciphertext.body + ciphertext.tag,
                self._associated_data(ciphertext.key_id),
            )
        except InvalidTag as e:
            logger.warning("decrypt_authentication_failed", key_id=key.key_id)
            raise AuthenticationFailure("Ciphertext failed authentication") from e

    def reencrypt(self, ciphertext: Ciphertext, old_key: KeyHandle, new_key: KeyHandle) -> Ciphertext:
        """Open under old_key and seal again under new_key."""
        return self.encrypt(self.decrypt(ciphertext, old_key), new_key)

    def encrypt_text(self, text: str, key: KeyHandle) -> bytes:
        """Seal a UTF-8 string and return the serialized envelope."""
        return self.encrypt(text.encode("utf-8"), key).to_bytes()

    def decrypt_text(self, data: bytes, key: KeyHandle) -> str:
        """Open a serialized envelope and decode it as UTF-8."""
        plaintext = self.decrypt(Ciphertext.from_bytes(data), key)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationFailure("Decrypted payload is not valid UTF-8") from e

    def reencrypt_bytes(self, data: bytes, old_key: KeyHandle, new_key: KeyHandle) -> bytes:
        """Re-seal a serialized envelope under new_key."""
        return self.reencrypt(Ciphertext.from_bytes(data), old_key, new_key).to_bytes()

    @staticmethod
    def _associated_data(key_id: str) -> bytes:
        return b"eatlock:" + key_id.encode("utf-8")


__all__ = ["Ciphertext", "CryptoEngine", "KeyHandle"]
