"""
Key management for EatLock.

Handles generation, storage, rotation and destruction of the device-bound
symmetric keys used by the CryptoEngine.

Key Management:
- Key material lives in a secure key store (OS keychain via ``keyring``)
- A small JSON registry (also kept in the secure store) records which key
  is ACTIVE and which are RETIRED
- Exactly one ACTIVE key; RETIRED keys stay readable until no ciphertext
  references them, then they are destroyed
- Access to key material is gated by biometrics/passcode when the device
  supports it; concurrent requests during a prompt share that one prompt

Dependencies:
- keyring>=23.0.0 (for secure key storage)

Usage:
    from src.lib.key_manager import KeyManager, KeyringKeyStore

    manager = KeyManager(KeyringKeyStore("eatlock"))
    await manager.initialize()
    key = await manager.get_active_key()
"""

from __future__ import annotations

import asyncio
import base64
import json
import math
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

import keyring
import keyring.errors
import structlog

from src.lib.encryption import CryptoEngine, KeyHandle
from src.lib.exceptions import (
    AuthenticationRequired,
    ConfigurationError,
    KeyInUse,
    KeyManagementError,
    KeyMismatch,
    KeyUnavailable,
    RepositoryClosedError,
)

logger = structlog.get_logger(__name__)

ReferenceCounter = Callable[[str], Awaitable[int]]


# =============================================================================
# Platform capability and authentication gate
# =============================================================================

class DeviceCapability(StrEnum):
    """
    Strongest local authentication the platform offers.

    Queried once from the platform and handed to the KeyManager.
    """

    BIOMETRIC = "biometric"
    PASSCODE = "passcode"
    NONE = "none"

    @property
    def requires_gate(self) -> bool:
        """Check if key access must pass an authentication prompt."""
        return self is not DeviceCapability.NONE


class Authenticator(Protocol):
    """Platform authentication prompt (biometric or passcode)."""

    async def authenticate(self, reason: str) -> bool:
        """Show the prompt. Returns True if the user authenticated."""
        ...


# =============================================================================
# Key registry
# =============================================================================

class KeyState(StrEnum):
    """Lifecycle state of a stored key."""

    ACTIVE = "active"
    RETIRED = "retired"


@dataclass
class KeyEntry:
    """Registry entry for one key (metadata only, never material)."""

    key_id: str
    state: KeyState
    created_at: str
    retired_at: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "key_id": self.key_id,
            "state": self.state.value,
            "created_at": self.created_at,
            "retired_at": self.retired_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str | None]) -> KeyEntry:
        key_id = data.get("key_id")
        state = data.get("state")
        created_at = data.get("created_at")
        if not isinstance(key_id, str) or not isinstance(state, str) or not isinstance(created_at, str):
            raise ValueError("Malformed key registry entry")
        return cls(
            key_id=key_id,
            state=KeyState(state),
            created_at=created_at,
            retired_at=data.get("retired_at"),
        )


class KeyRegistry:
    """Which keys exist and which one is active."""

    VERSION = 1

    def __init__(self, entries: list[KeyEntry] | None = None) -> None:
        self._entries: dict[str, KeyEntry] = {e.key_id: e for e in entries or []}

    @property
    def active(self) -> KeyEntry | None:
        for entry in self._entries.values():
            if entry.state is KeyState.ACTIVE:
                return entry
        return None

    @property
    def retired(self) -> list[KeyEntry]:
        return [e for e in self._entries.values() if e.state is KeyState.RETIRED]

    def get(self, key_id: str) -> KeyEntry | None:
        return self._entries.get(key_id)

    def add(self, entry: KeyEntry) -> None:
        self._entries[entry.key_id] = entry

    def remove(self, key_id: str) -> None:
        self._entries.pop(key_id, None)

    def copy(self) -> KeyRegistry:
        return KeyRegistry([KeyEntry(**vars(e)) for e in self._entries.values()])

    def to_json(self) -> str:
        return json.dumps({
            "version": self.VERSION,
            "keys": [e.to_dict() for e in self._entries.values()],
        })

    @classmethod
    def from_json(cls, raw: str) -> KeyRegistry:
        data = json.loads(raw)
        if not isinstance(data, dict) or data.get("version") != cls.VERSION:
            raise ValueError("Unsupported key registry format")
        registry = cls([KeyEntry.from_dict(e) for e in data.get("keys", [])])
        active = [e for e in registry._entries.values() if e.state is KeyState.ACTIVE]
        if len(active) > 1:
            raise ValueError("Key registry has more than one active key")
        return registry


# =============================================================================
# Secure key stores
# =============================================================================

class SecureKeyStore(Protocol):
    """
    Hardware-backed (or OS-backed) secret storage.

    fetch() raises KeyUnavailable when the store cannot be reached
    (e.g. device locked) and AuthenticationRequired when the platform
    itself refuses access pending user authentication.
    """

    async def store(self, key_bytes: bytes, key_id: str) -> None: ...

    async def fetch(self, key_id: str) -> bytes: ...

    async def delete(self, key_id: str) -> None: ...

    async def load_registry(self) -> str | None: ...

    async def save_registry(self, data: str) -> None: ...


class KeyringKeyStore:
    """
    Secure key store backed by the OS keychain through ``keyring``.

    Material is stored base64 encoded under ``key:{key_id}``; the registry
    under ``registry``. keyring calls may block on an OS prompt, so they
    run in a worker thread.
    """

    REGISTRY_ENTRY = "registry"

    def __init__(self, service_name: str = "eatlock") -> None:
        self._service = service_name

    async def store(self, key_bytes: bytes, key_id: str) -> None:
        await self._call(
            keyring.set_password, self._service, self._entry(key_id),
            base64.b64encode(key_bytes).decode("ascii"),
        )

    async def fetch(self, key_id: str) -> bytes:
        value = await self._call(keyring.get_password, self._service, self._entry(key_id))
        if value is None:
            raise KeyUnavailable("Key material missing from secure store", key_id=key_id)
        try:
            return base64.b64decode(value, validate=True)
        except ValueError as e:
            raise KeyUnavailable("Key material in secure store is unreadable", key_id=key_id) from e

    async def delete(self, key_id: str) -> None:
        try:
            await self._call(keyring.delete_password, self._service, self._entry(key_id))
        except KeyUnavailable as e:
            if isinstance(e.__cause__, keyring.errors.PasswordDeleteError):
                return  # already gone
            raise

    async def load_registry(self) -> str | None:
        return await self._call(keyring.get_password, self._service, self.REGISTRY_ENTRY)

    async def save_registry(self, data: str) -> None:
        await self._call(keyring.set_password, self._service, self.REGISTRY_ENTRY, data)

    @staticmethod
    def _entry(key_id: str) -> str:
        return f"key:{key_id}"

    @staticmethod
    async def _call(func, *args):  # type: ignore[no-untyped-def]
        try:
            return await asyncio.to_thread(func, *args)
        except keyring.errors.KeyringLocked as e:
            raise KeyUnavailable("Secure key store is locked") from e
        except keyring.errors.KeyringError as e:
            logger.warning("keyring_error", error=type(e).__name__)
            raise KeyUnavailable("Secure key store is unavailable") from e


class MemoryKeyStore:
    """
    Process-local key store for tests and development.

    Never use in production: material does not survive the process.
    ``locked`` simulates a locked device.
    """

    def __init__(self) -> None:
        self._keys: dict[str, bytes] = {}
        self._registry: str | None = None
        self.locked = False
        self.fetch_count = 0

    def _check(self) -> None:
        if self.locked:
            raise KeyUnavailable("Secure key store is locked")

    async def store(self, key_bytes: bytes, key_id: str) -> None:
        self._check()
        self._keys[key_id] = bytes(key_bytes)

    async def fetch(self, key_id: str) -> bytes:
        self._check()
        self.fetch_count += 1
        try:
            return self._keys[key_id]
        except KeyError as e:
            raise KeyUnavailable("Key material missing from secure store", key_id=key_id) from e

    async def delete(self, key_id: str) -> None:
        self._check()
        self._keys.pop(key_id, None)

    async def load_registry(self) -> str | None:
        self._check()
        return self._registry

    async def save_registry(self, data: str) -> None:
        self._check()
        self._registry = data

    def holds(self, key_id: str) -> bool:
        """Check whether material for key_id is stored."""
        return key_id in self._keys


# =============================================================================
# Key Manager
# =============================================================================

class KeyManager:
    """
    Owns every key: creation, lookup, rotation and destruction.

    Only the CryptoEngine ever sees key material (through KeyHandle).
    Key access is serialized through one lock; an authentication prompt is
    shared by every caller that arrives while it is showing.

    Args:
        store: Secure key store holding material and the registry
        capability: Local authentication the device offers
        authenticator: Prompt used when capability requires a gate
        unlock_timeout: Seconds an unlock stays valid (None = until lock())
        reference_counter: Async callable returning how many records still
            reference a key id; required by destroy_retired_key()
        clock: Monotonic clock, injectable for tests
    """

    AUTH_REASON = "Authentication is required to access your EatLock entries"

    def __init__(
        self,
        store: SecureKeyStore,
        capability: DeviceCapability = DeviceCapability.NONE,
        authenticator: Authenticator | None = None,
        unlock_timeout: float | None = 300.0,
        reference_counter: ReferenceCounter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._capability = capability
        self._authenticator = authenticator
        self._unlock_timeout = unlock_timeout
        self._reference_counter = reference_counter
        self._clock = clock

        self._registry: KeyRegistry | None = None
        self._handles: dict[str, KeyHandle] = {}
        self._unlocked_until = 0.0
        self._pending_unlock: asyncio.Future[None] | None = None
        self._lock = asyncio.Lock()
        self._closed = False

        if capability.requires_gate and authenticator is None:
            raise ConfigurationError(
                f"Device capability '{capability.value}' requires an authenticator"
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load the key registry, creating the first key on first use.

        Never creates a new key when an existing registry cannot be read:
        that would orphan every record sealed under the old key.

        Raises:
            KeyUnavailable: The secure store or its registry cannot be read
        """
        if self._closed:
            raise RepositoryClosedError("KeyManager was torn down")

        async with self._lock:
            if self._registry is not None:
                return

            raw = await self._store.load_registry()
            if raw is None:
                registry = KeyRegistry()
            else:
                try:
                    registry = KeyRegistry.from_json(raw)
                except (ValueError, TypeError) as e:
                    raise KeyUnavailable("Key registry is unreadable") from e

            if registry.active is None:
                if registry.retired:
                    raise KeyUnavailable("Key registry has retired keys but no active key")
                entry = await self._create_key(registry)
                logger.info("key_created", key_id=entry.key_id)

            self._registry = registry

    async def teardown(self) -> None:
        """Drop all in-memory material. The manager cannot be reused."""
        self.lock()
        self._registry = None
        self._closed = True

    def lock(self) -> None:
        """End the unlock session and forget cached material."""
        self._handles.clear()
        self._unlocked_until = 0.0

    # -------------------------------------------------------------------------
    # Introspection (metadata only)
    # -------------------------------------------------------------------------

    @property
    def capability(self) -> DeviceCapability:
        return self._capability

    @property
    def is_unlocked(self) -> bool:
        """Check whether key material can be accessed without a prompt."""
        if not self._capability.requires_gate:
            return True
        return self._clock() < self._unlocked_until

    @property
    def active_key_id(self) -> str:
        entry = self._require_registry().active
        if entry is None:  # pragma: no cover - guarded by initialize()
            raise KeyUnavailable("No active key")
        return entry.key_id

    @property
    def retired_key_ids(self) -> list[str]:
        return [e.key_id for e in self._require_registry().retired]

    def key_state(self, key_id: str) -> KeyState | None:
        """Return the state of a key, or None if unknown or destroyed."""
        entry = self._require_registry().get(key_id)
        return entry.state if entry else None

    # -------------------------------------------------------------------------
    # Key access
    # -------------------------------------------------------------------------

    async def get_active_key(self) -> KeyHandle:
        """
        Return a handle to the current key.

        Raises:
            KeyUnavailable: The secure store cannot be reached; retry after unlock
            AuthenticationRequired: The biometric/passcode gate failed
        """
        await self._ensure_unlocked()
        async with self._lock:
            return await self._load_handle(self.active_key_id)

    async def get_key(self, key_id: str) -> KeyHandle:
        """
        Return a handle to a specific (active or retired) key.

        Raises:
            KeyMismatch: No such key exists (unknown or destroyed)
            KeyUnavailable / AuthenticationRequired: as get_active_key()
        """
        if self._require_registry().get(key_id) is None:
            raise KeyMismatch("No key matches the ciphertext key id", expected_key_id=key_id)
        await self._ensure_unlocked()
        async with self._lock:
            if self._require_registry().get(key_id) is None:
                raise KeyMismatch("No key matches the ciphertext key id", expected_key_id=key_id)
            return await self._load_handle(key_id)

    # -------------------------------------------------------------------------
    # Rotation and destruction
    # -------------------------------------------------------------------------

    async def rotate_key(self) -> KeyHandle:
        """
        Generate a new active key and retire the previous one.

        Does not re-encrypt anything: existing ciphertext stays readable
        through the retired key until it is migrated.
        """
        await self._ensure_unlocked()
        async with self._lock:
            registry = self._require_registry()
            previous = registry.active

            updated = registry.copy()
            if previous is not None:
                retired = updated.get(previous.key_id)
                if retired is None:
                    raise KeyManagementError(
                        "Active key missing from registry copy", key_id=previous.key_id,
                    )
                retired.state = KeyState.RETIRED
                retired.retired_at = _now_iso()

            entry = await self._create_key(updated)
            self._registry = updated

            logger.info(
                "key_rotated",
                key_id=entry.key_id,
                retired_key_id=previous.key_id if previous else None,
            )
            return await self._load_handle(entry.key_id)

    async def retire_key(self, key_id: str) -> None:
        """
        Mark a key retired (read-only).

        Raises:
            KeyInUse: key_id is the active key; rotate first
        """
        async with self._lock:
            registry = self._require_registry()
            entry = registry.get(key_id)
            if entry is None:
                raise KeyManagementError("Unknown key", key_id=key_id)
            if entry.state is KeyState.ACTIVE:
                raise KeyInUse("The active key cannot be retired; rotate first", key_id=key_id)
            # Already retired: nothing to do

    async def destroy_retired_key(self, key_id: str) -> None:
        """
        Destroy a retired key's material once nothing references it.

        Raises:
            KeyInUse: Records still reference the key, or it is the active key
        """
        if self._reference_counter is None:
            raise ConfigurationError("destroy_retired_key() requires a reference counter")

        async with self._lock:
            registry = self._require_registry()
            entry = registry.get(key_id)
            if entry is None:
                raise KeyManagementError("Unknown key", key_id=key_id)
            if entry.state is KeyState.ACTIVE:
                raise KeyInUse("The active key cannot be destroyed", key_id=key_id)

            references = await self._reference_counter(key_id)
            if references > 0:
                raise KeyInUse(
                    "Key is still referenced by stored records",
                    key_id=key_id,
                    references=references,
                )

            updated = registry.copy()
            updated.remove(key_id)
            await self._store.save_registry(updated.to_json())
            self._registry = updated
            self._handles.pop(key_id, None)
            await self._store.delete(key_id)

            logger.info("key_destroyed", key_id=key_id)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require_registry(self) -> KeyRegistry:
        if self._closed:
            raise RepositoryClosedError("KeyManager was torn down")
        if self._registry is None:
            raise RepositoryClosedError("KeyManager is not initialized")
        return self._registry

    async def _create_key(self, registry: KeyRegistry) -> KeyEntry:
        """Generate and store material, then persist the registry. Caller holds the lock."""
        key_id = f"k-{uuid.uuid4().hex}"
        material = CryptoEngine.generate_key_material()
        await self._store.store(material, key_id)

        entry = KeyEntry(key_id=key_id, state=KeyState.ACTIVE, created_at=_now_iso())
        registry.add(entry)
        try:
            await self._store.save_registry(registry.to_json())
        except Exception:
            registry.remove(key_id)
            await self._store.delete(key_id)
            raise
        return entry

    async def _load_handle(self, key_id: str) -> KeyHandle:
        """Fetch material into a handle. Caller holds the lock."""
        handle = self._handles.get(key_id)
        if handle is not None:
            return handle
        material = await self._store.fetch(key_id)
        handle = KeyHandle(key_id, material)
        self._handles[key_id] = handle
        return handle

    async def _ensure_unlocked(self) -> None:
        """Run the authentication gate if needed, sharing one prompt."""
        self._require_registry()
        if self.is_unlocked:
            return

        if self._pending_unlock is None or self._pending_unlock.done():
            if self._authenticator is None:
                raise ConfigurationError("Capability requires an authenticator")
            self._pending_unlock = asyncio.ensure_future(self._prompt(self._authenticator))
        pending = self._pending_unlock
        try:
            await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending_unlock is pending:
                self._pending_unlock = None

    async def _prompt(self, authenticator: Authenticator) -> None:
        logger.info("auth_prompt_requested", capability=self._capability.value)
        try:
            authenticated = await authenticator.authenticate(self.AUTH_REASON)
        except AuthenticationRequired:
            raise
        except Exception as e:
            logger.warning("auth_prompt_failed", error=type(e).__name__)
            raise AuthenticationRequired("Authentication prompt failed") from e

        if not authenticated:
            logger.info("auth_prompt_refused")
            raise AuthenticationRequired("Authentication was refused")

        timeout = math.inf if self._unlock_timeout is None else self._unlock_timeout
        self._unlocked_until = self._clock() + timeout


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


__all__ = [
    "Authenticator",
    "DeviceCapability",
    "KeyEntry",
    "KeyManager",
    "KeyRegistry",
    "KeyState",
    "KeyringKeyStore",
    "MemoryKeyStore",
    "SecureKeyStore",
]
