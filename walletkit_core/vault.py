"""
Credential vault for the wallet seed phrase.

Layers, bottom up:

  - **VaultBackend** — namespaced key/value substrate (in-memory or SQLite).
  - **SecureStorage** — AES-256-GCM authenticated encryption, one
    PBKDF2-HMAC-SHA256 key per entry (random salt), unlocked by a password
    and auto-locked after a period of inactivity.
  - **WalletKeyStore** — per-user random encryption password (32 random
    bytes, hex), generated on first use and persisted.
  - **CredentialVault** — save / fetch / clear of the seed phrase, with an
    ordered fallback over historical password schemes.  An entry found
    under a legacy scheme is re-encrypted under the current one (one-shot
    migration).

Entry format (JSON, hex fields):

    {"version": 1, "kdf": "pbkdf2-hmac-sha256", "kdf_iterations": 600000,
     "salt": ..., "nonce": ..., "tag": ..., "ciphertext": ...}
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, NamedTuple, Protocol

from Crypto.Cipher import AES

from walletkit_core.errors import (
    DecryptionError,
    VaultLockedError,
    VaultStorageError,
)

logger = logging.getLogger("walletkit.vault")

ENTRY_VERSION = 1
DEFAULT_KDF_ITERATIONS = 600_000
KEY_STORE_NAMESPACE = "wallet_keys"


# ═══════════════════════════════════════════════════════════════════
#  Backends
# ═══════════════════════════════════════════════════════════════════

class VaultBackend(Protocol):
    """Namespaced byte store.  ``put`` must replace atomically."""

    async def get(self, namespace: str, key: str) -> bytes | None: ...

    async def put(self, namespace: str, key: str, value: bytes) -> None: ...

    async def delete(self, namespace: str, key: str) -> None: ...


class MemoryVaultBackend:
    """Process-local backend, mostly for tests and ephemeral sessions."""

    def __init__(self):
        self._data: dict[tuple[str, str], bytes] = {}

    async def get(self, namespace: str, key: str) -> bytes | None:
        return self._data.get((namespace, key))

    async def put(self, namespace: str, key: str, value: bytes) -> None:
        self._data[(namespace, key)] = bytes(value)

    async def delete(self, namespace: str, key: str) -> None:
        self._data.pop((namespace, key), None)


class SQLiteVaultBackend:
    """SQLite backend; blocking calls run in a worker thread."""

    def __init__(self, db_path: str = "data/vault.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS vault (
                namespace TEXT NOT NULL,
                key       TEXT NOT NULL,
                value     BLOB NOT NULL,
                PRIMARY KEY (namespace, key)
            )
        """)
        self._conn.commit()

    def _get(self, namespace: str, key: str) -> bytes | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM vault WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        return bytes(row[0]) if row else None

    def _put(self, namespace: str, key: str, value: bytes) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO vault (namespace, key, value) VALUES (?, ?, ?)",
                (namespace, key, value),
            )

    def _delete(self, namespace: str, key: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM vault WHERE namespace = ? AND key = ?",
                (namespace, key),
            )

    async def get(self, namespace: str, key: str) -> bytes | None:
        try:
            return await asyncio.to_thread(self._get, namespace, key)
        except sqlite3.Error as exc:
            raise VaultStorageError(f"Vault read failed: {exc}") from exc

    async def put(self, namespace: str, key: str, value: bytes) -> None:
        try:
            await asyncio.to_thread(self._put, namespace, key, value)
        except sqlite3.Error as exc:
            raise VaultStorageError(f"Vault write failed: {exc}") from exc

    async def delete(self, namespace: str, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete, namespace, key)
        except sqlite3.Error as exc:
            raise VaultStorageError(f"Vault delete failed: {exc}") from exc

    def close(self) -> None:
        self._conn.close()


# ═══════════════════════════════════════════════════════════════════
#  Encryption primitive
# ═══════════════════════════════════════════════════════════════════

def _derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def _aes_gcm_encrypt(key: bytes, data: bytes) -> tuple[bytes, bytes, bytes]:
    """Encrypt *data* with AES-256-GCM. Returns (ciphertext, nonce, tag)."""
    nonce = os.urandom(12)
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(data)
    return ciphertext, nonce, tag


def _aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
    """Decrypt and verify AES-256-GCM ciphertext. Raises ValueError on tamper."""
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    return cipher.decrypt_and_verify(ciphertext, tag)


def encrypt_entry(password: str, plaintext: str,
                  iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    salt = os.urandom(16)
    key = _derive_key(password, salt, iterations)
    ciphertext, nonce, tag = _aes_gcm_encrypt(key, plaintext.encode("utf-8"))
    return json.dumps({
        "version": ENTRY_VERSION,
        "kdf": "pbkdf2-hmac-sha256",
        "kdf_iterations": iterations,
        "salt": salt.hex(),
        "nonce": nonce.hex(),
        "tag": tag.hex(),
        "ciphertext": ciphertext.hex(),
    }).encode("utf-8")


def decrypt_entry(password: str, blob: bytes) -> str:
    """Raises :class:`DecryptionError` on a wrong password or a corrupt entry."""
    try:
        data = json.loads(blob.decode("utf-8"))
        salt = bytes.fromhex(data["salt"])
        nonce = bytes.fromhex(data["nonce"])
        tag = bytes.fromhex(data["tag"])
        ciphertext = bytes.fromhex(data["ciphertext"])
        iterations = int(data.get("kdf_iterations", DEFAULT_KDF_ITERATIONS))
    except (ValueError, KeyError, TypeError, UnicodeDecodeError) as exc:
        raise DecryptionError(f"Malformed vault entry: {exc}") from exc

    key = _derive_key(password, salt, iterations)
    try:
        plaintext = _aes_gcm_decrypt(key, nonce, ciphertext, tag)
    except ValueError as exc:
        raise DecryptionError("Wrong password or tampered entry") from exc
    return plaintext.decode("utf-8")


class SecureStorage:
    """
    Password-gated encrypted store scoped to one user namespace at a time.

    ``unlock`` only remembers the password; every ``store``/``retrieve``
    derives the entry key from it, so a wrong password surfaces as a
    :class:`DecryptionError` on read.
    """

    def __init__(self, backend: VaultBackend,
                 kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
                 lock_timeout: float = 900.0,
                 clock: Callable[[], float] = time.monotonic):
        self.backend = backend
        self.kdf_iterations = kdf_iterations
        self._lock_timeout = lock_timeout
        self._clock = clock
        self._password: str | None = None
        self._namespace: str | None = None
        self._last_activity = 0.0

    # ── lock state ───────────────────────────────────────────────

    def unlock(self, password: str, namespace: str) -> None:
        if not password:
            raise VaultLockedError("Password required to unlock storage")
        self._password = password
        self._namespace = namespace
        self._last_activity = self._clock()

    def lock(self) -> None:
        self._password = None
        self._namespace = None

    def is_unlocked(self) -> bool:
        if self._password is None:
            return False
        if self._lock_timeout > 0 and self._clock() - self._last_activity > self._lock_timeout:
            logger.info("Secure storage auto-locked after inactivity")
            self.lock()
            return False
        return True

    def reset_lock_timer(self) -> None:
        if self._password is not None:
            self._last_activity = self._clock()

    def set_lock_timeout(self, seconds: float) -> None:
        self._lock_timeout = seconds

    def get_lock_timeout(self) -> float:
        return self._lock_timeout

    def _require_unlocked(self) -> tuple[str, str]:
        if not self.is_unlocked():
            raise VaultLockedError("Secure storage is locked")
        self._last_activity = self._clock()
        return self._password, self._namespace  # type: ignore[return-value]

    # ── entries ──────────────────────────────────────────────────

    async def store(self, key: str, value: str) -> None:
        password, namespace = self._require_unlocked()
        blob = await asyncio.to_thread(encrypt_entry, password, value, self.kdf_iterations)
        await self.backend.put(namespace, key, blob)

    async def retrieve(self, key: str) -> str | None:
        password, namespace = self._require_unlocked()
        blob = await self.backend.get(namespace, key)
        if blob is None:
            return None
        return await asyncio.to_thread(decrypt_entry, password, blob)

    async def remove(self, key: str) -> None:
        _, namespace = self._require_unlocked()
        await self.backend.delete(namespace, key)


# ═══════════════════════════════════════════════════════════════════
#  Per-user random key store
# ═══════════════════════════════════════════════════════════════════

class WalletKeyStore:
    """Persistent random encryption password per user."""

    def __init__(self, backend: VaultBackend, namespace: str = KEY_STORE_NAMESPACE):
        self.backend = backend
        self.namespace = namespace

    @staticmethod
    def _key_for(user_id: str) -> str:
        return f"walletEncryptionKey_{user_id}"

    async def get_wallet_password(self, user_id: str) -> str:
        existing = await self.backend.get(self.namespace, self._key_for(user_id))
        if existing:
            return existing.decode("utf-8")
        new_key = os.urandom(32).hex()
        await self.backend.put(self.namespace, self._key_for(user_id), new_key.encode("utf-8"))
        logger.info(f"Generated new wallet encryption key for user {user_id}")
        return new_key


# ═══════════════════════════════════════════════════════════════════
#  Scheme fallback chain
# ═══════════════════════════════════════════════════════════════════

class DerivationScheme(str, Enum):
    RANDOM_KEY_V1 = "random_key_v1"            # current
    LEGACY_USER_ID_KEY = "legacy_user_id_key"  # raw user id used as password
    LEGACY_STATIC_KEY = "legacy_static_key"    # "wallet-key-<user id>"


def legacy_static_password(user_id: str) -> str:
    return f"wallet-key-{user_id}"


def mnemonic_storage_key(user_id: str) -> str:
    return f"walletMnemonic_{user_id}"


@dataclass(frozen=True)
class SchemeStrategy:
    """How to derive a candidate password, and whether a hit is migrated."""
    scheme: DerivationScheme
    derive_password: Callable[[str, str], str]   # (current password, user id)
    migrate: bool


DEFAULT_SCHEMES: tuple[SchemeStrategy, ...] = (
    SchemeStrategy(DerivationScheme.RANDOM_KEY_V1, lambda password, user_id: password, False),
    SchemeStrategy(DerivationScheme.LEGACY_USER_ID_KEY, lambda password, user_id: user_id, True),
    SchemeStrategy(
        DerivationScheme.LEGACY_STATIC_KEY,
        lambda password, user_id: legacy_static_password(user_id),
        True,
    ),
)


class FoundCredential(NamedTuple):
    secret: str
    scheme: DerivationScheme
    migrated: bool


class CredentialVault:
    """Seed-phrase persistence with transparent legacy-scheme migration."""

    def __init__(self, storage: SecureStorage,
                 schemes: tuple[SchemeStrategy, ...] = DEFAULT_SCHEMES):
        self.storage = storage
        self.schemes = schemes

    async def locate(self, storage_key: str, password: str,
                     user_id: str) -> FoundCredential | None:
        """
        Walk the scheme chain and return the first secret found.

        Decryption failures advance to the next scheme; storage failures
        propagate.  On return the storage is unlocked with *password*.
        """
        try:
            for strategy in self.schemes:
                candidate = strategy.derive_password(password, user_id)
                self.storage.unlock(candidate, user_id)
                try:
                    secret = await self.storage.retrieve(storage_key)
                except DecryptionError:
                    logger.info(f"[Migration] {strategy.scheme.value} key failed, trying next")
                    continue
                if not secret:
                    continue

                if not strategy.migrate:
                    logger.info(f"[Migration] Retrieved wallet with {strategy.scheme.value} key")
                    return FoundCredential(secret, strategy.scheme, False)

                logger.info(
                    f"[Migration] Found wallet under {strategy.scheme.value} "
                    f"- migrating to {self.schemes[0].scheme.value}"
                )
                # One put: either the new ciphertext lands or the old one stays.
                self.storage.unlock(password, user_id)
                await self.storage.store(storage_key, secret)
                logger.info("[Migration] Successfully migrated wallet to current key")
                return FoundCredential(secret, strategy.scheme, True)

            logger.info("[Migration] No wallet found under any key scheme")
            return None
        finally:
            self.storage.unlock(password, user_id)

    async def unlock_and_fetch(self, storage_key: str, password: str,
                               user_id: str) -> str | None:
        found = await self.locate(storage_key, password, user_id)
        return found.secret if found else None

    async def save_mnemonic(self, mnemonic: str, password: str, user_id: str) -> None:
        self.storage.unlock(password, user_id)
        await self.storage.store(mnemonic_storage_key(user_id), mnemonic)

    async def get_saved_mnemonic(self, password: str, user_id: str) -> str | None:
        return await self.unlock_and_fetch(mnemonic_storage_key(user_id), password, user_id)

    async def clear_mnemonic(self, password: str, user_id: str) -> None:
        self.storage.unlock(password, user_id)
        await self.storage.remove(mnemonic_storage_key(user_id))

    def lock(self) -> None:
        self.storage.lock()
