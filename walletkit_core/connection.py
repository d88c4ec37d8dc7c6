"""
Connection management for the external wallet engine.

One :class:`ConnectionManager` owns at most one live engine handle.  It

  - validates the seed phrase (BIP-39 checksum) before any network call,
  - serialises connect attempts (single flight; late callers join the
    attempt in progress instead of starting a second one),
  - retries transient failures with exponential backoff, sleeping
    ``base_delay * 2**attempt`` before *every* attempt so even the happy
    path respects upstream rate limits,
  - tracks registered event listeners so ``disconnect`` can tear every
    one of them down,
  - fronts the engine's pass-through operations, failing fast with
    :class:`EngineUnavailableError` when not connected.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import aiohttp

from walletkit_core.config import EngineConfig
from walletkit_core.errors import (
    ConfigError,
    ConnectError,
    EngineUnavailableError,
    InvalidCredentialError,
    RetryableConnectivityError,
    WalletKitError,
)
from walletkit_core.logging_config import forward_engine_log
from walletkit_core.models import Payment, PaymentType, WalletInfo
from walletkit_core.seed_phrase import require_valid_mnemonic

if TYPE_CHECKING:
    from walletkit_core.config import WalletKitConfig
    from walletkit_core.engine import EngineHandle, EventCallback, WalletEngine

logger = logging.getLogger("walletkit.connection")

MAX_RETRIES = 3
BASE_DELAY_SECONDS = 5.0

_RETRYABLE_MARKERS = ("429", "too many requests", "rate limit", "network", "fetch")


def is_retryable_error(exc: BaseException) -> bool:
    """Network and rate-limit failures are retryable; everything else is fatal."""
    if isinstance(exc, InvalidCredentialError):
        return False
    if isinstance(exc, (RetryableConnectivityError, aiohttp.ClientError,
                        ConnectionError, asyncio.TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


@dataclass
class WalletSession:
    """State of the single engine session owned by a ConnectionManager."""
    handle: EngineHandle | None = None
    current_user_id: str | None = None
    is_connecting: bool = False
    listeners: dict[str, EventCallback] = field(default_factory=dict)


class ConnectionManager:
    """Owns the one live handle to the wallet engine."""

    def __init__(
        self,
        engine: WalletEngine,
        engine_config: EngineConfig | None = None,
        *,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.engine = engine
        self.engine_config = engine_config or EngineConfig()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self.session = WalletSession()
        self._connect_lock = asyncio.Lock()
        self._engine_initialized = False

    @classmethod
    def from_config(cls, engine: WalletEngine, cfg: WalletKitConfig, **kwargs) -> ConnectionManager:
        return cls(
            engine,
            cfg.engine,
            max_retries=cfg.connection.max_retries,
            base_delay=cfg.connection.base_delay_seconds,
            **kwargs,
        )

    # ── predicates ───────────────────────────────────────────────

    def is_connected(self) -> bool:
        return self.session.handle is not None

    @property
    def is_connecting(self) -> bool:
        return self.session.is_connecting

    @property
    def current_user_id(self) -> str | None:
        return self.session.current_user_id

    # ── connect / disconnect ─────────────────────────────────────

    async def connect(self, seed_phrase: str, user_id: str | None = None) -> None:
        """
        Ensure a live session for *user_id*.

        Returns immediately when already connected for the same user.  A
        session for a different user is fully torn down first.
        """
        if self.session.is_connecting:
            logger.debug("Connect already in progress, joining it")

        async with self._connect_lock:
            if self.session.handle is not None and self.session.current_user_id == user_id:
                return

            self.session.is_connecting = True
            try:
                mnemonic = require_valid_mnemonic(seed_phrase)
                if not self.engine_config.api_key:
                    raise ConfigError("Wallet engine API key not configured")

                if self.session.handle is not None:
                    logger.info("Switching users, disconnecting current session")
                    await self._disconnect()

                await self._ensure_engine_initialized()
                await self._connect_with_retry(mnemonic)
                self.session.current_user_id = user_id
            finally:
                self.session.is_connecting = False

    async def _ensure_engine_initialized(self) -> None:
        if self._engine_initialized:
            return
        try:
            await self.engine.initialize()
        except Exception as exc:
            logger.error(f"Failed to initialize wallet engine: {exc}")
            raise ConnectError(f"Wallet engine initialization failed: {exc}") from exc
        self.engine.set_logger(forward_engine_log)
        self._engine_initialized = True
        logger.info("Wallet engine initialized")

    async def _connect_with_retry(self, mnemonic: str) -> None:
        config = self.engine_config.to_engine_config()
        total = self.max_retries + 1
        last_exc: BaseException | None = None

        for attempt in range(total):
            delay = self.base_delay * (2 ** attempt)
            logger.info(
                f"Connecting to wallet engine (attempt {attempt + 1}/{total}) "
                f"with {delay:g}s delay..."
            )
            await self._sleep(delay)

            try:
                handle = await self.engine.connect(config, mnemonic)
            except Exception as exc:
                self.session.handle = None
                logger.error(f"Connection failed (attempt {attempt + 1}/{total}): {exc}")
                if not is_retryable_error(exc):
                    if isinstance(exc, WalletKitError):
                        raise
                    raise ConnectError(f"Wallet engine connect failed: {exc}") from exc
                last_exc = exc
                if attempt + 1 < total:
                    logger.warning(
                        f"Retryable error detected, retrying connection "
                        f"({attempt + 1}/{self.max_retries})..."
                    )
                continue

            self.session.handle = handle
            logger.info("Wallet engine connected successfully")
            return

        self.session.handle = None
        if isinstance(last_exc, RetryableConnectivityError):
            raise last_exc
        raise RetryableConnectivityError(
            f"Wallet engine connect failed after {total} attempts: {last_exc}"
        ) from last_exc

    async def disconnect(self) -> None:
        """
        Tear down every listener and the engine handle.

        Waits for an in-flight ``connect`` to settle first, so a session it
        installs is torn down as well.  Each step is best-effort; the
        session always ends up cleared so a later ``connect`` can proceed.
        """
        async with self._connect_lock:
            await self._disconnect()

    async def _disconnect(self) -> None:
        handle = self.session.handle
        try:
            if handle is None:
                return
            for listener_id in list(self.session.listeners):
                try:
                    await handle.remove_event_listener(listener_id)
                except Exception as exc:
                    logger.error(f"Failed to remove listener {listener_id}: {exc}")
            self.session.listeners.clear()

            try:
                await handle.disconnect()
                logger.info("Wallet engine disconnected")
            except Exception as exc:
                logger.error(f"Failed to disconnect wallet engine: {exc}")
        finally:
            self.session.listeners.clear()
            self.session.handle = None
            self.session.current_user_id = None

    # ── event listeners ──────────────────────────────────────────

    def _require_handle(self) -> EngineHandle:
        if self.session.handle is None:
            raise EngineUnavailableError()
        return self.session.handle

    async def add_event_listener(self, callback: EventCallback) -> str:
        handle = self._require_handle()
        try:
            listener_id = await handle.add_event_listener(callback)
        except Exception as exc:
            logger.error(f"Failed to add event listener: {exc}")
            raise
        self.session.listeners[listener_id] = callback
        return listener_id

    async def remove_event_listener(self, listener_id: str) -> None:
        handle = self.session.handle
        if handle is None or not listener_id:
            return
        try:
            await handle.remove_event_listener(listener_id)
            self.session.listeners.pop(listener_id, None)
        except Exception as exc:
            logger.error(f"Failed to remove event listener {listener_id}: {exc}")

    def has_listener(self, listener_id: str | None) -> bool:
        return listener_id is not None and listener_id in self.session.listeners

    # ── queries ──────────────────────────────────────────────────

    async def get_info(self) -> WalletInfo:
        return await self._require_handle().get_info()

    async def list_payments(
        self,
        from_timestamp: int | None = None,
        to_timestamp: int | None = None,
        filters: list[PaymentType] | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[Payment]:
        """Payments, most recent first."""
        request: dict[str, Any] = {"sort_ascending": False}
        if from_timestamp is not None:
            request["from_timestamp"] = from_timestamp
        if to_timestamp is not None:
            request["to_timestamp"] = to_timestamp
        if filters:
            request["filters"] = [f.value for f in filters]
        if offset is not None:
            request["offset"] = offset
        if limit is not None:
            request["limit"] = limit
        return await self._require_handle().list_payments(request)

    # ── signing / webhooks ───────────────────────────────────────

    async def sign_message(self, message: str) -> str:
        logger.debug("Signing message")
        return await self._require_handle().sign_message(message)

    async def register_webhook(self, webhook_url: str) -> None:
        logger.info(f"Registering webhook: {webhook_url}")
        await self._require_handle().register_webhook(webhook_url)

    async def unregister_webhook(self) -> None:
        logger.info("Unregistering webhook")
        await self._require_handle().unregister_webhook()

    # ── payment pass-throughs ────────────────────────────────────

    async def parse_input(self, text: str) -> Any:
        return await self._require_handle().parse(text)

    async def prepare_send_payment(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().prepare_send_payment(request)

    async def send_payment(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().send_payment(request)

    async def prepare_receive_payment(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().prepare_receive_payment(request)

    async def receive_payment(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().receive_payment(request)

    async def fetch_lightning_limits(self) -> Any:
        return await self._require_handle().fetch_lightning_limits()

    async def fetch_onchain_limits(self) -> Any:
        return await self._require_handle().fetch_onchain_limits()

    async def fetch_fiat_rates(self) -> Any:
        return await self._require_handle().fetch_fiat_rates()

    async def recommended_fees(self) -> Any:
        return await self._require_handle().recommended_fees()

    async def prepare_pay_onchain(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().prepare_pay_onchain(request)

    async def pay_onchain(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().pay_onchain(request)

    async def prepare_lnurl_pay(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().prepare_lnurl_pay(request)

    async def lnurl_pay(self, request: dict[str, Any]) -> Any:
        return await self._require_handle().lnurl_pay(request)
