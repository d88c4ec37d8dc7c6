"""
Payment event synchronisation for a wallet session.

Consumes the engine's event stream and keeps two observables current:

  - ``state``        — :class:`WalletState` (lock flags, initial-sync flag,
                       latest :class:`WalletInfo`, last error)
  - ``transactions`` — the payment list, most recent first

Every event triggers an independent re-read of the snapshot and of the
payment list; a snapshot is only published when one of the tracked
fields changed.  Payment notifications are held back until the engine
reports its first ``synced`` event so historical payments are not
surfaced as new.  A polling loop re-reads both every ``poll_interval``
seconds while connected and visible, covering missed or coalesced events.

Lifecycle:
    1. ``await sync.init()`` once the ConnectionManager is connected.
    2. Events arrive through the registered listener.
    3. ``await sync.stop()`` on shutdown (cancels the polling task).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Protocol

from walletkit_core.models import (
    Payment,
    PaymentEvent,
    PaymentEventKind,
    PaymentType,
    WalletInfo,
    has_wallet_info_changed,
)
from walletkit_core.observable import Observable

if TYPE_CHECKING:
    from walletkit_core.connection import ConnectionManager

logger = logging.getLogger("walletkit.sync")

# Seconds between fallback refreshes.
POLL_INTERVAL = 60.0


class NotificationStage(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETE = "complete"
    FEE_ACCEPTANCE = "fee_acceptance"


class PaymentNotifier(Protocol):
    """Receives user-facing "payment received" notifications."""

    def payment_received(self, payment: Payment, stage: NotificationStage) -> None: ...


class LoggingNotifier:
    """Default notifier: log only."""

    def payment_received(self, payment: Payment, stage: NotificationStage) -> None:
        logger.info(
            f"Payment received ({stage.value}): {payment.amount_sat} sat [{payment.id}]"
        )


# Notification stage per event kind.  None = refresh only, never notify.
EVENT_NOTIFICATIONS: dict[PaymentEventKind, Optional[NotificationStage]] = {
    PaymentEventKind.PAYMENT_PENDING: NotificationStage.PENDING,
    PaymentEventKind.PAYMENT_WAITING_CONFIRMATION: NotificationStage.CONFIRMED,
    PaymentEventKind.PAYMENT_SUCCEEDED: NotificationStage.COMPLETE,
    PaymentEventKind.PAYMENT_WAITING_FEE_ACCEPTANCE: NotificationStage.FEE_ACCEPTANCE,
    PaymentEventKind.PAYMENT_FAILED: None,
    PaymentEventKind.PAYMENT_REFUNDABLE: None,
    PaymentEventKind.PAYMENT_REFUND_PENDING: None,
    PaymentEventKind.PAYMENT_REFUNDED: None,
    PaymentEventKind.SYNCED: None,
}

_unhandled = set(PaymentEventKind) - set(EVENT_NOTIFICATIONS)
if _unhandled:
    raise RuntimeError(f"No synchroniser handling for event kinds: {sorted(_unhandled)}")


@dataclass(frozen=True)
class WalletState:
    is_unlocked: bool = False
    is_initialized: bool = False
    is_connecting: bool = False
    did_complete_initial_sync: bool = False
    info: WalletInfo | None = None
    error: str | None = None

    @property
    def is_loading(self) -> bool:
        return not self.did_complete_initial_sync and self.info is None

    @property
    def balance_sat(self) -> int:
        return self.info.balance_sat if self.info else 0


class TransactionList(Observable[list[Payment]]):
    """Observable payment list."""

    def add(self, payment: Payment) -> None:
        self.set([payment, *self.get()])

    def reset(self) -> None:
        self.set([])


class PaymentEventSynchronizer:
    """Collapses the engine event stream into observable wallet state."""

    def __init__(
        self,
        manager: ConnectionManager,
        notifier: PaymentNotifier | None = None,
        *,
        poll_interval: float = POLL_INTERVAL,
        is_visible: Callable[[], bool] = lambda: True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.manager = manager
        self.notifier = notifier or LoggingNotifier()
        self.poll_interval = poll_interval
        self._is_visible = is_visible
        self._sleep = sleep

        self.state: Observable[WalletState] = Observable(WalletState())
        self.transactions = TransactionList([])

        self._listener_id: str | None = None
        self._polling_started = False
        self._poll_task: asyncio.Task | None = None
        self._event_tasks: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────

    @property
    def is_listening(self) -> bool:
        """True while our listener is registered with a live session."""
        return self.manager.has_listener(self._listener_id)

    async def init(self) -> None:
        """Load the first snapshot and start listening (requires a live session)."""
        self.state.update(lambda s: replace(s, is_connecting=True, error=None))

        if not self.manager.is_connected():
            logger.info("Wallet engine not yet connected, skipping init")
            self.state.update(lambda s: replace(s, is_connecting=False, is_initialized=False))
            return

        try:
            info = await self.manager.get_info()
        except Exception as exc:
            self.state.update(lambda s: replace(
                s, is_unlocked=False, is_connecting=False, error=str(exc),
            ))
            raise

        # A fetched snapshot counts as the initial sync.
        self.state.update(lambda s: replace(
            s,
            is_unlocked=True,
            is_initialized=True,
            is_connecting=False,
            did_complete_initial_sync=info is not None or s.did_complete_initial_sync,
            info=info,
            error=None,
        ))
        await self.start_event_listening()

    async def start_event_listening(self) -> bool:
        """Idle → Listening.  No-op while already listening."""
        if self.is_listening:
            return True
        try:
            self._listener_id = await self.manager.add_event_listener(self._on_engine_event)
        except Exception as exc:
            logger.error(f"Failed to start event listening: {exc}")
            return False
        logger.info("Event listening started")
        self.start_polling()
        return True

    async def stop(self) -> None:
        """Cancel the polling task and any in-flight event handlers."""
        tasks = list(self._event_tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_task = None
        self._polling_started = False
        self._event_tasks.clear()

    # ── Event handling ───────────────────────────────────────────

    def _on_engine_event(self, event: PaymentEvent | dict) -> None:
        """Listener registered with the engine; schedules :meth:`handle_event`."""
        if isinstance(event, dict):
            try:
                parsed = PaymentEvent.from_dict(event)
            except (ValueError, TypeError, KeyError) as exc:
                logger.warning(f"Dropping malformed engine event {event.get('type')!r}: {exc}")
                return
            if parsed is None:
                return
            event = parsed
        task = asyncio.ensure_future(self.handle_event(event))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def handle_event(self, event: PaymentEvent) -> None:
        logger.debug(f"Event received: {event.kind.value}")
        if event.kind is PaymentEventKind.SYNCED:
            self._mark_initial_sync_complete()
        self._maybe_notify(event)
        await self._refresh_all()

    def _mark_initial_sync_complete(self) -> None:
        self.state.update(
            lambda s: s if s.did_complete_initial_sync
            else replace(s, did_complete_initial_sync=True)
        )

    def _maybe_notify(self, event: PaymentEvent) -> None:
        stage = EVENT_NOTIFICATIONS[event.kind]
        if stage is None or event.details is None:
            return
        if not self.state.get().did_complete_initial_sync:
            logger.debug("Skipping notification - waiting for initial sync")
            return
        if event.details.payment_type is not PaymentType.RECEIVE:
            logger.info(f"Outgoing payment {stage.value}: {event.details.id}")
            return
        try:
            self.notifier.payment_received(event.details, stage)
        except Exception:
            logger.exception("Payment notifier failed")

    # ── Refresh ──────────────────────────────────────────────────

    async def refresh(self) -> bool:
        """
        Re-read the wallet snapshot.

        Returns True when the snapshot was published (a tracked field
        changed), False when the refresh was a no-op.
        """
        try:
            new_info = await self.manager.get_info()
        except Exception as exc:
            self.state.update(lambda s: replace(s, error=str(exc)))
            raise

        def apply(s: WalletState) -> WalletState:
            if not has_wallet_info_changed(s.info, new_info):
                return s
            return replace(s, info=new_info, error=None)

        return self.state.update(apply)

    async def refresh_transactions(self) -> None:
        payments = await self.manager.list_payments()
        self.transactions.set(list(payments))

    async def _refresh_all(self) -> None:
        """Refresh snapshot and payments independently; log failures."""
        results = await asyncio.gather(
            self.refresh(), self.refresh_transactions(), return_exceptions=True,
        )
        for name, result in zip(("wallet info", "transactions"), results):
            if isinstance(result, Exception):
                logger.error(f"Failed to refresh {name}: {result}")

    # ── Polling fallback ─────────────────────────────────────────

    def start_polling(self) -> None:
        """Start the fallback loop; at most once per synchroniser."""
        if self._polling_started:
            return
        self._polling_started = True
        self._poll_task = asyncio.ensure_future(self._poll_loop())
        logger.info(f"Polling started ({self.poll_interval:g}s interval)")

    async def _poll_loop(self) -> None:
        while True:
            await self._sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Polling refresh failed")

    async def poll_once(self) -> bool:
        """One polling tick.  No-op unless connected and visible."""
        if not self.manager.is_connected() or not self._is_visible():
            return False
        logger.debug(f"Polling refresh ({self.poll_interval:g}s fallback)")
        await self._refresh_all()
        return True

    # ── Store surface ────────────────────────────────────────────

    def unlock(self, info: WalletInfo | None) -> None:
        self.state.update(lambda s: replace(
            s, is_unlocked=True, is_connecting=False, info=info, error=None,
        ))

    def lock(self) -> None:
        self.state.update(lambda s: replace(s, is_unlocked=False, info=None, error=None))

    def set_connecting(self) -> None:
        self.state.update(lambda s: replace(s, is_connecting=True, error=None))

    def set_error(self, message: str) -> None:
        self.state.update(lambda s: replace(
            s, is_unlocked=False, is_connecting=False, error=message,
        ))

    def clear_error(self) -> None:
        self.state.update(lambda s: s if s.error is None else replace(s, error=None))

    def reset(self) -> None:
        self.state.set(WalletState())
        self.transactions.reset()

    # ── Payments with state refresh ──────────────────────────────

    async def send_payment(self, request: dict[str, Any]) -> Any:
        result = await self.manager.send_payment(request)
        await self._refresh_all()
        return result

    async def receive_payment(self, request: dict[str, Any]) -> Any:
        result = await self.manager.receive_payment(request)
        await self._refresh_all()
        return result
