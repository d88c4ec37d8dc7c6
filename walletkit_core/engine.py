"""
Interfaces of the external wallet engine.

The engine is a third-party library (account connection, balances,
payments, event stream).  WalletKit only talks to it through these
protocols; request/response payloads of the pass-through operations are
opaque dicts owned by the engine.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol

from walletkit_core.models import Payment, PaymentEvent, WalletInfo

EventCallback = Callable[[PaymentEvent], None]
EngineLogCallback = Callable[[str, str], None]


class EngineHandle(Protocol):
    """A live, connected engine session."""

    async def get_info(self) -> WalletInfo: ...

    async def list_payments(self, request: dict[str, Any]) -> list[Payment]: ...

    async def add_event_listener(self, callback: EventCallback) -> str: ...

    async def remove_event_listener(self, listener_id: str) -> None: ...

    async def disconnect(self) -> None: ...

    async def sign_message(self, message: str) -> str: ...

    async def register_webhook(self, webhook_url: str) -> None: ...

    async def unregister_webhook(self) -> None: ...

    async def parse(self, text: str) -> Any: ...

    async def prepare_send_payment(self, request: dict[str, Any]) -> Any: ...

    async def send_payment(self, request: dict[str, Any]) -> Any: ...

    async def prepare_receive_payment(self, request: dict[str, Any]) -> Any: ...

    async def receive_payment(self, request: dict[str, Any]) -> Any: ...

    async def fetch_lightning_limits(self) -> Any: ...

    async def fetch_onchain_limits(self) -> Any: ...

    async def fetch_fiat_rates(self) -> Any: ...

    async def recommended_fees(self) -> Any: ...

    async def prepare_pay_onchain(self, request: dict[str, Any]) -> Any: ...

    async def pay_onchain(self, request: dict[str, Any]) -> Any: ...

    async def prepare_lnurl_pay(self, request: dict[str, Any]) -> Any: ...

    async def lnurl_pay(self, request: dict[str, Any]) -> Any: ...


class WalletEngine(Protocol):
    """Factory side of the engine: one-time init plus ``connect``."""

    async def initialize(self) -> None: ...

    def set_logger(self, callback: EngineLogCallback) -> None: ...

    async def connect(self, config: dict[str, Any], mnemonic: str) -> EngineHandle: ...
