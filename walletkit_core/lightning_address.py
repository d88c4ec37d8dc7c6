"""
Lightning-address registration against the LNURL-pay service.

A registration binds ``username@domain`` to the wallet's node pubkey and a
fresh BOLT12 offer.  Every request is authenticated by a message signed
with the wallet key through the :class:`ConnectionManager`:

    register / update   "{time}-{webhook_url}-{username}-{offer}"
    recover / unregister "{time}-{webhook_url}"

A taken username is retried as ``username1``, ``username2``, ... with a
short progressive pause between attempts.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import aiohttp

from walletkit_core.errors import (
    ConfigError,
    NotFoundError,
    RegistrationError,
    UsernameConflictError,
)
from walletkit_core.models import LightningAddressRegistration

if TYPE_CHECKING:
    from walletkit_core.config import WalletKitConfig
    from walletkit_core.connection import ConnectionManager

logger = logging.getLogger("walletkit.lightning_address")

DEFAULT_SERVICE_URL = "https://breez.fun"
DEFAULT_DOMAIN = "breez.fun"
REQUEST_TIMEOUT = 30.0
MAX_ATTEMPTS = 20

_INVALID_USERNAME_CHARS = re.compile(r"[^a-z0-9_-]")


def format_username(name: str) -> str:
    """``"Red Panda!"`` -> ``"redpanda"``."""
    collapsed = re.sub(r"\s+", "", name.lower())
    return _INVALID_USERNAME_CHARS.sub("", collapsed)


def conflict_backoff(attempt: int) -> float:
    """Pause after the *attempt*-th conflict: 0.1s, 0.2s, ... capped at 0.5s."""
    return min(attempt + 1, 5) * 0.1


def _offer_destination(response: Any) -> str:
    if isinstance(response, dict):
        return response["destination"]
    return response.destination


class LightningAddressRegistrar:
    """Registers, recovers and removes the wallet's Lightning address."""

    def __init__(
        self,
        manager: ConnectionManager,
        service_url: str = DEFAULT_SERVICE_URL,
        domain: str = DEFAULT_DOMAIN,
        *,
        timeout: float = REQUEST_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        webhook_url: str = "",
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.manager = manager
        self.service_url = service_url.rstrip("/")
        self.domain = domain
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_attempts = max_attempts
        self.webhook_url = webhook_url
        self._session = session
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, manager: ConnectionManager, cfg: WalletKitConfig,
                    **kwargs) -> LightningAddressRegistrar:
        la = cfg.lightning_address
        return cls(
            manager,
            la.service_url,
            la.domain,
            timeout=la.timeout_seconds,
            max_attempts=la.max_attempts,
            webhook_url=la.webhook_url,
            **kwargs,
        )

    # ── HTTP plumbing ────────────────────────────────────────────

    async def _request(self, method: str, path: str,
                       body: dict[str, Any]) -> tuple[int, Any]:
        """Send *body* as JSON; return ``(status, parsed body or text)``."""
        url = f"{self.service_url}{path}"
        if self._session is not None:
            return await self._send(self._session, method, url, body)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            return await self._send(session, method, url, body)

    async def _send(self, session: aiohttp.ClientSession, method: str,
                    url: str, body: dict[str, Any]) -> tuple[int, Any]:
        async with session.request(method, url, json=body, timeout=self.timeout) as resp:
            if 200 <= resp.status < 300:
                try:
                    return resp.status, await resp.json(content_type=None)
                except ValueError as exc:
                    raise RegistrationError(
                        f"Malformed response from {url}: {exc}", resp.status
                    ) from exc
            return resp.status, await resp.text()

    def _webhook(self, webhook_url: str | None) -> str:
        resolved = webhook_url or self.webhook_url
        if not resolved:
            raise ConfigError("No webhook URL given and none configured")
        return resolved

    async def _pubkey(self) -> str:
        info = await self.manager.get_info()
        if not info.pubkey:
            raise RegistrationError("Failed to get wallet pubkey")
        return info.pubkey

    async def _signed(self, message_tail: str) -> tuple[int, str]:
        now = int(self._clock())
        signature = await self.manager.sign_message(f"{now}-{message_tail}")
        return now, signature

    async def generate_offer(self, username: str) -> str:
        """Create a BOLT12 offer described as ``username@domain``."""
        prepared = await self.manager.prepare_receive_payment(
            {"payment_method": "bolt12Offer"}
        )
        response = await self.manager.receive_payment({
            "prepare_response": prepared,
            "description": f"{username}@{self.domain} Lightning Address",
        })
        return _offer_destination(response)

    # ── register ─────────────────────────────────────────────────

    async def _register_once(self, username: str, webhook_url: str,
                             offer: str | None) -> dict[str, Any]:
        logger.info(f"Starting registration for username: {username}")
        pubkey = await self._pubkey()

        if not offer:
            logger.info("Generating BOLT12 offer...")
            offer = await self.generate_offer(username)

        try:
            await self.manager.unregister_webhook()
        except Exception as exc:
            logger.info(f"No existing webhook to unregister: {exc}")
        await self.manager.register_webhook(webhook_url)

        now, signature = await self._signed(f"{webhook_url}-{username}-{offer}")
        body = {
            "time": now,
            "webhook_url": webhook_url,
            "username": username,
            "offer": offer,
            "signature": signature,
        }
        try:
            status, payload = await self._request("POST", f"/lnurlpay/{pubkey}", body)
        except asyncio.TimeoutError as exc:
            raise RegistrationError(
                f"Registration request timed out after {self.timeout.total:g} seconds"
            ) from exc
        except aiohttp.ClientError as exc:
            raise RegistrationError(f"Registration request failed: {exc}") from exc

        if status == 409:
            raise UsernameConflictError()
        if not 200 <= status < 300:
            raise RegistrationError(f"Registration failed: {status} - {payload}", status)
        logger.info(f"Registration successful for {username}")
        return payload

    async def register(self, username: str, webhook_url: str | None = None,
                       offer: str | None = None) -> LightningAddressRegistration:
        """
        Register *username*, appending 1, 2, ... while the name is taken.

        Only :class:`UsernameConflictError` is retried; any other failure
        aborts the loop.  When every candidate is taken the last conflict
        is raised.
        """
        webhook_url = self._webhook(webhook_url)
        candidate = username
        for attempt in range(self.max_attempts):
            candidate = username if attempt == 0 else f"{username}{attempt}"
            logger.info(
                f"Registration attempt {attempt + 1}/{self.max_attempts} "
                f"with username: {candidate}"
            )
            try:
                payload = await self._register_once(candidate, webhook_url, offer)
            except UsernameConflictError:
                if attempt + 1 >= self.max_attempts:
                    raise
                logger.warning(f"Username conflict for: {candidate}, trying next number...")
                await self._sleep(conflict_backoff(attempt))
                continue
            except Exception as exc:
                logger.error(f"Registration failed: {exc}")
                raise
            return LightningAddressRegistration.from_response(payload, username, candidate)
        raise RegistrationError("Registration failed after retries")

    async def update(self, new_username: str,
                     webhook_url: str | None = None) -> LightningAddressRegistration:
        webhook_url = self._webhook(webhook_url)
        logger.info(f"Updating to username: {new_username}")
        offer = await self.generate_offer(new_username)
        return await self.register(new_username, webhook_url, offer)

    # ── recover / unregister ─────────────────────────────────────

    async def recover(self, webhook_url: str | None = None,
                      required: bool = False) -> LightningAddressRegistration | None:
        """
        Look up the registration bound to this wallet's pubkey.

        Returns None when there is none, or when the service cannot be
        reached (timeout or network failure).  With *required* a missing
        registration raises :class:`NotFoundError` instead.
        """
        webhook_url = self._webhook(webhook_url)
        logger.info(f"Attempting recovery with webhook: {webhook_url}")
        pubkey = await self._pubkey()
        now, signature = await self._signed(webhook_url)
        body = {"time": now, "webhook_url": webhook_url, "signature": signature}

        try:
            status, payload = await self._request("POST", f"/lnurlpay/{pubkey}/recover", body)
        except asyncio.TimeoutError:
            logger.info("Recovery request timed out, will register new address")
            return None
        except aiohttp.ClientError as exc:
            logger.info(f"Recovery request failed ({exc}), will register new address")
            return None

        if status == 404:
            logger.info("No existing registration found")
            if required:
                raise NotFoundError(f"No Lightning address registered for {pubkey}")
            return None
        if not 200 <= status < 300:
            raise RegistrationError(f"Recovery failed: {status}", status)

        address = payload.get("lightning_address") or ""
        username = address.split("@", 1)[0]
        logger.info(f"Recovery successful: {address}")
        return LightningAddressRegistration.from_response(payload, username, username)

    async def unregister(self, webhook_url: str | None = None) -> None:
        webhook_url = self._webhook(webhook_url)
        logger.info("Unregistering...")
        pubkey = await self._pubkey()
        now, signature = await self._signed(webhook_url)
        body = {"time": now, "webhook_url": webhook_url, "signature": signature}

        try:
            status, payload = await self._request("DELETE", f"/lnurlpay/{pubkey}", body)
        except asyncio.TimeoutError as exc:
            raise RegistrationError("Unregister request timed out") from exc
        except aiohttp.ClientError as exc:
            raise RegistrationError(f"Unregister request failed: {exc}") from exc

        if not 200 <= status < 300 and status != 404:
            raise RegistrationError(f"Unregister failed: {status}", status)

        await self.manager.unregister_webhook()
        logger.info("Unregistered successfully")

    # ── setup ────────────────────────────────────────────────────

    async def setup(self, username: str | None, webhook_url: str | None = None,
                    recover: bool = False) -> LightningAddressRegistration:
        """
        Recover the existing address (if asked and one exists) or register
        a new one.  Without a username the first 16 hex chars of the
        pubkey are used.
        """
        webhook_url = self._webhook(webhook_url)
        logger.info(f"Setup started (username={username!r}, recover={recover})")

        if recover:
            recovered = await self.recover(webhook_url)
            if recovered is not None and recovered.lightning_address:
                name = recovered.actual_username
                logger.info(f"Recovered existing address: {recovered.lightning_address}")
                offer = await self.generate_offer(name)
                return await self.register(name, webhook_url, offer)
            logger.info("No existing registration for this seed")

        effective = username or (await self._pubkey())[:16]
        logger.info(f"Registering new address: {effective}")
        return await self.register(effective, webhook_url)
