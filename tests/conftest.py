"""
Shared pytest fixtures for the WalletKit test suite.

The wallet engine is replaced by in-memory fakes that record every call.
"""

from __future__ import annotations

import asyncio

import pytest

from walletkit_core.config import EngineConfig
from walletkit_core.connection import ConnectionManager
from walletkit_core.models import Payment, PaymentEvent, WalletInfo
from walletkit_core.vault import CredentialVault, MemoryVaultBackend, SecureStorage

# BIP-39 test vector: 11 x "abandon" + "about" has a valid checksum.
VALID_MNEMONIC = " ".join(["abandon"] * 11 + ["about"])
OTHER_MNEMONIC = " ".join(["zoo"] * 11 + ["wrong"])

# Cheap KDF for tests.
TEST_KDF_ITERATIONS = 1_000


class FakeHandle:
    """In-memory stand-in for a connected engine handle."""

    def __init__(self, info: WalletInfo | None = None,
                 payments: list[Payment] | None = None):
        self.info = info or WalletInfo(
            balance_sat=1_000, node_id="node-1",
            pubkey="02a1b2c3d4e5f60718293a4b5c6d7e8f90",
        )
        self.payments = payments or []
        self.listeners: dict[str, object] = {}
        self.removed: list[str] = []
        self.fail_remove: set[str] = set()
        self.fail_get_info: Exception | None = None
        self.fail_disconnect: Exception | None = None
        self.disconnected = False
        self.get_info_calls = 0
        self.list_requests: list[dict] = []
        self.signed: list[str] = []
        self.webhooks: list[str] = []
        self.webhook_unregistrations = 0
        self.receive_requests: list[dict] = []
        self.sent: list[dict] = []
        self._next_listener = 0

    async def get_info(self) -> WalletInfo:
        self.get_info_calls += 1
        if self.fail_get_info is not None:
            raise self.fail_get_info
        return self.info

    async def list_payments(self, request: dict) -> list[Payment]:
        self.list_requests.append(request)
        return list(self.payments)

    async def add_event_listener(self, callback) -> str:
        self._next_listener += 1
        listener_id = f"listener-{self._next_listener}"
        self.listeners[listener_id] = callback
        return listener_id

    async def remove_event_listener(self, listener_id: str) -> None:
        if listener_id in self.fail_remove:
            raise RuntimeError(f"cannot remove {listener_id}")
        self.removed.append(listener_id)
        self.listeners.pop(listener_id, None)

    async def disconnect(self) -> None:
        if self.fail_disconnect is not None:
            raise self.fail_disconnect
        self.disconnected = True

    async def sign_message(self, message: str) -> str:
        self.signed.append(message)
        return f"sig:{message}"

    async def register_webhook(self, webhook_url: str) -> None:
        self.webhooks.append(webhook_url)

    async def unregister_webhook(self) -> None:
        self.webhook_unregistrations += 1

    async def parse(self, text: str):
        return {"type": "bolt11", "input": text}

    async def prepare_send_payment(self, request: dict):
        return {"prepared": request}

    async def send_payment(self, request: dict):
        self.sent.append(request)
        return {"status": "pending"}

    async def prepare_receive_payment(self, request: dict):
        return {"prepared": request}

    async def receive_payment(self, request: dict):
        self.receive_requests.append(request)
        return {"destination": f"lno1offer{len(self.receive_requests)}"}

    async def fetch_lightning_limits(self):
        return {"min_sat": 1_000, "max_sat": 25_000_000}

    async def fetch_onchain_limits(self):
        return {"min_sat": 25_000, "max_sat": 25_000_000}

    async def fetch_fiat_rates(self):
        return [{"coin": "USD", "value": 60_000.0}]

    async def recommended_fees(self):
        return {"fastest_fee": 10}

    async def prepare_pay_onchain(self, request: dict):
        return {"prepared": request}

    async def pay_onchain(self, request: dict):
        return {"status": "pending"}

    async def prepare_lnurl_pay(self, request: dict):
        return {"prepared": request}

    async def lnurl_pay(self, request: dict):
        return {"status": "ok"}

    def emit(self, event: PaymentEvent | dict) -> None:
        for callback in list(self.listeners.values()):
            callback(event)


class FakeEngine:
    """Records ``connect`` calls; raises queued failures before succeeding."""

    def __init__(self, failures: list[Exception] | None = None):
        self.failures = list(failures or [])
        self.connect_calls: list[tuple[dict, str]] = []
        self.init_calls = 0
        self.fail_init: Exception | None = None
        self.log_callback = None
        self.handles: list[FakeHandle] = []
        self.gate: asyncio.Event | None = None

    async def initialize(self) -> None:
        self.init_calls += 1
        if self.fail_init is not None:
            raise self.fail_init

    def set_logger(self, callback) -> None:
        self.log_callback = callback

    async def connect(self, config: dict, mnemonic: str) -> FakeHandle:
        self.connect_calls.append((config, mnemonic))
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    @property
    def handle(self) -> FakeHandle:
        return self.handles[-1]


class SleepRecorder:
    """Injected ``sleep`` that records delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingNotifier:
    def __init__(self):
        self.calls: list[tuple[Payment, object]] = []

    def payment_received(self, payment, stage) -> None:
        self.calls.append((payment, stage))


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def engine_config():
    return EngineConfig(network="testnet", working_dir="/tmp/walletkit-test", api_key="test-key")


@pytest.fixture
def manager(engine, engine_config, sleeps):
    """Disconnected ConnectionManager over a FakeEngine with recorded sleeps."""
    return ConnectionManager(engine, engine_config, sleep=sleeps)


@pytest.fixture
def backend():
    return MemoryVaultBackend()


@pytest.fixture
def storage(backend):
    return SecureStorage(backend, kdf_iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def vault(storage):
    return CredentialVault(storage)


@pytest.fixture
def notifier():
    return RecordingNotifier()
