"""
Tests for walletkit_core.vault — encrypted seed-phrase storage.

Covers:
  - Entry encryption: wrong password, tampering, malformed blobs
  - SecureStorage lock state and auto-lock timer
  - Memory and SQLite backends (namespacing, persistence, error mapping)
  - WalletKeyStore random password generation
  - CredentialVault scheme fallback and one-shot migration
"""

from __future__ import annotations

import json

import pytest

from conftest import TEST_KDF_ITERATIONS, VALID_MNEMONIC
from walletkit_core.errors import DecryptionError, VaultLockedError, VaultStorageError
from walletkit_core.vault import (
    CredentialVault,
    DerivationScheme,
    MemoryVaultBackend,
    SecureStorage,
    SQLiteVaultBackend,
    WalletKeyStore,
    decrypt_entry,
    encrypt_entry,
    legacy_static_password,
    mnemonic_storage_key,
)


class _FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _BrokenBackend(MemoryVaultBackend):
    async def get(self, namespace, key):
        raise VaultStorageError("disk unavailable")


class _ReadOnlyBackend(MemoryVaultBackend):
    """Writes fail while ``read_only`` is set."""

    read_only = False

    async def put(self, namespace, key, value):
        if self.read_only:
            raise VaultStorageError("disk full")
        await super().put(namespace, key, value)


async def _store_under(storage: SecureStorage, password: str, user_id: str, secret: str) -> None:
    storage.unlock(password, user_id)
    await storage.store(mnemonic_storage_key(user_id), secret)
    storage.lock()


# ═══════════════════════════════════════════════════════════════════
#  Entry encryption
# ═══════════════════════════════════════════════════════════════════

class TestEntryEncryption:
    def test_decrypt_with_right_password(self):
        blob = encrypt_entry("pw", "secret words", TEST_KDF_ITERATIONS)
        assert decrypt_entry("pw", blob) == "secret words"

    def test_entry_format(self):
        blob = encrypt_entry("pw", "secret", TEST_KDF_ITERATIONS)
        data = json.loads(blob)
        assert data["version"] == 1
        assert data["kdf"] == "pbkdf2-hmac-sha256"
        assert data["kdf_iterations"] == TEST_KDF_ITERATIONS
        assert len(bytes.fromhex(data["salt"])) == 16
        assert len(bytes.fromhex(data["nonce"])) == 12
        assert "secret" not in blob.decode()

    def test_salts_differ_per_entry(self):
        a = json.loads(encrypt_entry("pw", "same", TEST_KDF_ITERATIONS))
        b = json.loads(encrypt_entry("pw", "same", TEST_KDF_ITERATIONS))
        assert a["salt"] != b["salt"]
        assert a["ciphertext"] != b["ciphertext"]

    def test_wrong_password(self):
        blob = encrypt_entry("pw", "secret", TEST_KDF_ITERATIONS)
        with pytest.raises(DecryptionError):
            decrypt_entry("other", blob)

    def test_tampered_ciphertext(self):
        data = json.loads(encrypt_entry("pw", "secret", TEST_KDF_ITERATIONS))
        flipped = bytearray(bytes.fromhex(data["ciphertext"]))
        flipped[0] ^= 0x01
        data["ciphertext"] = flipped.hex()
        with pytest.raises(DecryptionError):
            decrypt_entry("pw", json.dumps(data).encode())

    def test_malformed_blob(self):
        with pytest.raises(DecryptionError, match="Malformed"):
            decrypt_entry("pw", b"not json")
        with pytest.raises(DecryptionError, match="Malformed"):
            decrypt_entry("pw", b'{"salt": "00"}')


# ═══════════════════════════════════════════════════════════════════
#  SecureStorage
# ═══════════════════════════════════════════════════════════════════

class TestSecureStorage:
    @pytest.mark.asyncio
    async def test_locked_by_default(self, storage):
        assert not storage.is_unlocked()
        with pytest.raises(VaultLockedError):
            await storage.retrieve("k")
        with pytest.raises(VaultLockedError):
            await storage.store("k", "v")

    def test_empty_password_rejected(self, storage):
        with pytest.raises(VaultLockedError):
            storage.unlock("", "alice")
        assert not storage.is_unlocked()

    @pytest.mark.asyncio
    async def test_store_retrieve_remove(self, storage):
        storage.unlock("pw", "alice")
        await storage.store("k", "v")
        assert await storage.retrieve("k") == "v"
        await storage.remove("k")
        assert await storage.retrieve("k") is None

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, storage):
        storage.unlock("pw", "alice")
        await storage.store("k", "alice-value")
        storage.unlock("pw", "bob")
        assert await storage.retrieve("k") is None

    @pytest.mark.asyncio
    async def test_wrong_password_on_read(self, storage):
        storage.unlock("pw", "alice")
        await storage.store("k", "v")
        storage.unlock("nope", "alice")
        with pytest.raises(DecryptionError):
            await storage.retrieve("k")

    def test_auto_lock_after_timeout(self, backend):
        clock = _FakeClock()
        storage = SecureStorage(backend, TEST_KDF_ITERATIONS, lock_timeout=60.0, clock=clock)
        storage.unlock("pw", "alice")
        clock.now += 59
        assert storage.is_unlocked()
        clock.now += 2
        assert not storage.is_unlocked()

    def test_reset_lock_timer_extends(self, backend):
        clock = _FakeClock()
        storage = SecureStorage(backend, TEST_KDF_ITERATIONS, lock_timeout=60.0, clock=clock)
        storage.unlock("pw", "alice")
        clock.now += 50
        storage.reset_lock_timer()
        clock.now += 50
        assert storage.is_unlocked()

    def test_zero_timeout_disables_auto_lock(self, backend):
        clock = _FakeClock()
        storage = SecureStorage(backend, TEST_KDF_ITERATIONS, lock_timeout=0, clock=clock)
        storage.unlock("pw", "alice")
        clock.now += 1_000_000
        assert storage.is_unlocked()

    def test_lock_timeout_accessors(self, storage):
        storage.set_lock_timeout(120.0)
        assert storage.get_lock_timeout() == 120.0


# ═══════════════════════════════════════════════════════════════════
#  Backends
# ═══════════════════════════════════════════════════════════════════

class TestSQLiteBackend:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "nested" / "vault.db")
        first = SQLiteVaultBackend(path)
        await first.put("ns", "k", b"value")
        first.close()

        second = SQLiteVaultBackend(path)
        try:
            assert await second.get("ns", "k") == b"value"
            assert await second.get("other", "k") is None
        finally:
            second.close()

    @pytest.mark.asyncio
    async def test_put_replaces(self, tmp_path):
        backend = SQLiteVaultBackend(str(tmp_path / "vault.db"))
        try:
            await backend.put("ns", "k", b"one")
            await backend.put("ns", "k", b"two")
            assert await backend.get("ns", "k") == b"two"
            await backend.delete("ns", "k")
            assert await backend.get("ns", "k") is None
        finally:
            backend.close()

    @pytest.mark.asyncio
    async def test_sqlite_errors_mapped(self, tmp_path):
        backend = SQLiteVaultBackend(str(tmp_path / "vault.db"))
        backend.close()
        with pytest.raises(VaultStorageError):
            await backend.get("ns", "k")


class TestWalletKeyStore:
    @pytest.mark.asyncio
    async def test_generates_and_persists(self, backend):
        keys = WalletKeyStore(backend)
        first = await keys.get_wallet_password("alice")
        assert len(first) == 64
        assert int(first, 16) >= 0
        assert await keys.get_wallet_password("alice") == first
        assert await keys.get_wallet_password("bob") != first

    @pytest.mark.asyncio
    async def test_storage_error_propagates(self):
        keys = WalletKeyStore(_BrokenBackend())
        with pytest.raises(VaultStorageError):
            await keys.get_wallet_password("alice")


# ═══════════════════════════════════════════════════════════════════
#  CredentialVault
# ═══════════════════════════════════════════════════════════════════

class TestCredentialVault:
    @pytest.mark.asyncio
    async def test_save_and_fetch_current_scheme(self, vault):
        await vault.save_mnemonic(VALID_MNEMONIC, "random-key", "alice")
        found = await vault.locate(mnemonic_storage_key("alice"), "random-key", "alice")
        assert found.secret == VALID_MNEMONIC
        assert found.scheme is DerivationScheme.RANDOM_KEY_V1
        assert not found.migrated

    @pytest.mark.asyncio
    async def test_nothing_saved(self, vault):
        assert await vault.get_saved_mnemonic("random-key", "alice") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("legacy_password, scheme", [
        ("alice", DerivationScheme.LEGACY_USER_ID_KEY),
        (legacy_static_password("alice"), DerivationScheme.LEGACY_STATIC_KEY),
    ])
    async def test_legacy_entry_migrated_once(self, vault, storage, legacy_password, scheme):
        await _store_under(storage, legacy_password, "alice", VALID_MNEMONIC)
        key = mnemonic_storage_key("alice")

        found = await vault.locate(key, "random-key", "alice")
        assert found.secret == VALID_MNEMONIC
        assert found.scheme is scheme
        assert found.migrated

        again = await vault.locate(key, "random-key", "alice")
        assert again.scheme is DerivationScheme.RANDOM_KEY_V1
        assert not again.migrated

    @pytest.mark.asyncio
    async def test_migrated_entry_no_longer_opens_with_legacy_key(self, vault, storage):
        await _store_under(storage, "alice", "alice", VALID_MNEMONIC)
        await vault.get_saved_mnemonic("random-key", "alice")
        storage.unlock("alice", "alice")
        with pytest.raises(DecryptionError):
            await storage.retrieve(mnemonic_storage_key("alice"))

    @pytest.mark.asyncio
    async def test_unknown_password_finds_nothing(self, vault, storage):
        await _store_under(storage, "some-other-key", "alice", VALID_MNEMONIC)
        assert await vault.get_saved_mnemonic("random-key", "alice") is None

    @pytest.mark.asyncio
    async def test_storage_left_unlocked_with_current_password(self, vault, storage):
        await _store_under(storage, legacy_static_password("alice"), "alice", VALID_MNEMONIC)
        await vault.get_saved_mnemonic("random-key", "alice")
        assert storage.is_unlocked()
        assert await storage.retrieve(mnemonic_storage_key("alice")) == VALID_MNEMONIC

    @pytest.mark.asyncio
    async def test_storage_error_propagates(self):
        storage = SecureStorage(_BrokenBackend(), TEST_KDF_ITERATIONS)
        vault = CredentialVault(storage)
        with pytest.raises(VaultStorageError):
            await vault.get_saved_mnemonic("random-key", "alice")

    @pytest.mark.asyncio
    async def test_failed_migration_write_keeps_legacy_entry(self):
        backend = _ReadOnlyBackend()
        storage = SecureStorage(backend, TEST_KDF_ITERATIONS)
        vault = CredentialVault(storage)
        await _store_under(storage, "alice", "alice", VALID_MNEMONIC)

        backend.read_only = True
        with pytest.raises(VaultStorageError):
            await vault.get_saved_mnemonic("random-key", "alice")

        backend.read_only = False
        found = await vault.locate(mnemonic_storage_key("alice"), "random-key", "alice")
        assert found.secret == VALID_MNEMONIC
        assert found.scheme is DerivationScheme.LEGACY_USER_ID_KEY
        assert found.migrated

    @pytest.mark.asyncio
    async def test_clear_mnemonic(self, vault):
        await vault.save_mnemonic(VALID_MNEMONIC, "random-key", "alice")
        await vault.clear_mnemonic("random-key", "alice")
        assert await vault.get_saved_mnemonic("random-key", "alice") is None

    @pytest.mark.asyncio
    async def test_lock(self, vault, storage):
        await vault.save_mnemonic(VALID_MNEMONIC, "random-key", "alice")
        vault.lock()
        assert not storage.is_unlocked()
