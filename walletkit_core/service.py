"""
Application-facing wallet facade.

Ties the credential vault, the per-user key store, the unlock rate
limiter, the connection manager and the payment synchroniser together
behind the handful of operations a UI needs: save / fetch / clear the
seed phrase, unlock (fetch + connect), lock (disconnect + forget the
storage password) and the auto-lock timer.

The effective user id of every call is the explicit ``user_id``, else the
user of the live session, else ``"default"``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from walletkit_core.connection import ConnectionManager
from walletkit_core.errors import (
    NoSavedWalletError,
    UnlockRateLimitedError,
    WalletLockedError,
)
from walletkit_core.log_store import LogStore
from walletkit_core.logging_config import close_log_store, setup_logging_from_config
from walletkit_core.rate_limit import UnlockRateLimiter
from walletkit_core.seed_phrase import generate_mnemonic, validate_mnemonic
from walletkit_core.synchronizer import PaymentEventSynchronizer, PaymentNotifier
from walletkit_core.vault import (
    CredentialVault,
    SecureStorage,
    SQLiteVaultBackend,
    VaultBackend,
    WalletKeyStore,
)

if TYPE_CHECKING:
    from walletkit_core.config import WalletKitConfig
    from walletkit_core.engine import WalletEngine

logger = logging.getLogger("walletkit.service")

DEFAULT_USER_ID = "default"


class WalletService:
    """One wallet, one engine session, one vault."""

    def __init__(
        self,
        manager: ConnectionManager,
        vault: CredentialVault,
        key_store: WalletKeyStore | None = None,
        synchronizer: PaymentEventSynchronizer | None = None,
        limiter: UnlockRateLimiter | None = None,
        log_store: LogStore | None = None,
    ):
        self.manager = manager
        self.vault = vault
        self.key_store = key_store or WalletKeyStore(vault.storage.backend)
        self.synchronizer = synchronizer or PaymentEventSynchronizer(manager)
        self.limiter = limiter or UnlockRateLimiter()
        self.log_store = log_store

    @classmethod
    def from_config(
        cls,
        engine: WalletEngine,
        cfg: WalletKitConfig,
        *,
        backend: VaultBackend | None = None,
        notifier: PaymentNotifier | None = None,
        configure_logging: bool = False,
    ) -> WalletService:
        """
        Wire every component from *cfg*.

        With *configure_logging* the root logger is set up from
        ``cfg.logging``, including the diagnostic log store; the store is
        closed by :meth:`shutdown`.
        """
        log_store = setup_logging_from_config(cfg.logging) if configure_logging else None
        backend = backend or SQLiteVaultBackend(cfg.vault.path)
        storage = SecureStorage(
            backend,
            kdf_iterations=cfg.vault.kdf_iterations,
            lock_timeout=cfg.vault.lock_timeout_seconds,
        )
        manager = ConnectionManager.from_config(engine, cfg)
        return cls(
            manager,
            CredentialVault(storage),
            WalletKeyStore(backend),
            PaymentEventSynchronizer(
                manager, notifier, poll_interval=cfg.sync.poll_interval_seconds,
            ),
            UnlockRateLimiter(cfg.vault.unlock_max_attempts, cfg.vault.unlock_window_seconds),
            log_store,
        )

    @property
    def storage(self) -> SecureStorage:
        return self.vault.storage

    def effective_user_id(self, user_id: str | None = None) -> str:
        return user_id or self.manager.current_user_id or DEFAULT_USER_ID

    # ── seed phrase ──────────────────────────────────────────────

    @staticmethod
    def generate_mnemonic(words: int = 12) -> str:
        return generate_mnemonic(words)

    @staticmethod
    def validate_mnemonic(phrase: str) -> bool:
        return validate_mnemonic(phrase)

    async def get_wallet_password(self, user_id: str | None = None) -> str:
        """The per-user random storage password, created on first use."""
        return await self.key_store.get_wallet_password(self.effective_user_id(user_id))

    async def save_mnemonic(self, mnemonic: str, password: str,
                            user_id: str | None = None) -> None:
        uid = self.effective_user_id(user_id)
        await self.vault.save_mnemonic(mnemonic, password, uid)
        logger.info(f"Saved wallet for user {uid}")

    async def get_saved_mnemonic(self, password: str,
                                 user_id: str | None = None) -> str | None:
        return await self.vault.get_saved_mnemonic(password, self.effective_user_id(user_id))

    async def clear_mnemonic(self, password: str, user_id: str | None = None) -> None:
        uid = self.effective_user_id(user_id)
        await self.vault.clear_mnemonic(password, uid)
        logger.info(f"Cleared saved wallet for user {uid}")

    # ── session ──────────────────────────────────────────────────

    async def create_wallet(self, mnemonic: str, password: str,
                            user_id: str | None = None) -> None:
        """Persist *mnemonic* and bring up a session for it."""
        uid = self.effective_user_id(user_id)
        await self.manager.connect(mnemonic, uid)
        await self.save_mnemonic(mnemonic, password, uid)
        await self.synchronizer.init()

    async def unlock_wallet(self, password: str | None = None,
                            user_id: str | None = None) -> None:
        """
        Fetch the saved seed phrase and connect.

        Without *password* the key store's random password is used.  Every
        call consumes one attempt of the per-user limiter; a successful
        unlock resets it.
        """
        uid = self.effective_user_id(user_id)
        allowed, retry_after = self.limiter.check(uid)
        if not allowed:
            logger.warning(f"Unlock rate limited for user {uid} ({retry_after}s)")
            raise UnlockRateLimitedError(retry_after)

        if password is None:
            password = await self.key_store.get_wallet_password(uid)

        self.synchronizer.set_connecting()
        try:
            mnemonic = await self.vault.get_saved_mnemonic(password, uid)
            if not mnemonic:
                raise NoSavedWalletError()
            await self.manager.connect(mnemonic, uid)
        except Exception as exc:
            self.synchronizer.set_error(str(exc))
            raise

        self.limiter.reset(uid)
        logger.info(f"Wallet unlocked for user {uid}")
        await self.synchronizer.init()

    async def lock_wallet(self) -> None:
        """Disconnect and forget the storage password; the seed stays saved."""
        await self.manager.disconnect()
        self.vault.lock()
        self.synchronizer.lock()
        logger.info("Wallet locked")

    async def shutdown(self) -> None:
        await self.synchronizer.stop()
        await self.manager.disconnect()
        self.vault.lock()
        close = getattr(self.storage.backend, "close", None)
        if close is not None:
            close()
        if self.log_store is not None:
            close_log_store(self.log_store)
            self.log_store = None

    def is_wallet_locked(self) -> bool:
        return not self.storage.is_unlocked() or not self.manager.is_connected()

    def is_storage_unlocked(self) -> bool:
        return self.storage.is_unlocked()

    # ── auto-lock timer ──────────────────────────────────────────

    def reset_lock_timer(self) -> None:
        self.storage.reset_lock_timer()

    def set_lock_timeout(self, seconds: float) -> None:
        self.storage.set_lock_timeout(seconds)

    def get_lock_timeout(self) -> float:
        return self.storage.get_lock_timeout()

    # ── payments ─────────────────────────────────────────────────

    def _require_unlocked(self) -> None:
        if self.is_wallet_locked():
            raise WalletLockedError("Wallet is locked")
        self.reset_lock_timer()

    async def send_payment(self, request: dict[str, Any]) -> Any:
        self._require_unlocked()
        return await self.synchronizer.send_payment(request)

    async def receive_payment(self, request: dict[str, Any]) -> Any:
        self._require_unlocked()
        return await self.synchronizer.receive_payment(request)
