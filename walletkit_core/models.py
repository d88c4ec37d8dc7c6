"""
Value types exchanged with the wallet engine and the registration service.

  - Payment / PaymentType        — one entry of the transaction list
  - WalletInfo                   — balance snapshot returned by ``get_info``
  - PaymentEvent / PaymentEventKind — tagged event from the engine stream
  - LightningAddressRegistration — result of a Lightning-address registration
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger("walletkit.models")


class PaymentType(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


@dataclass(frozen=True)
class Payment:
    """A single payment as reported by the engine."""
    id: str
    payment_type: PaymentType
    amount_sat: int = 0
    fees_sat: int = 0
    status: str = ""
    timestamp: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Payment:
        """Build from an engine dict (camelCase or snake_case keys)."""
        return cls(
            id=str(data.get("id") or data.get("txId") or data.get("tx_id") or ""),
            payment_type=PaymentType(data.get("paymentType", data.get("payment_type", "receive"))),
            amount_sat=int(data.get("amountSat", data.get("amount_sat", 0))),
            fees_sat=int(data.get("feesSat", data.get("fees_sat", 0))),
            status=str(data.get("status", "")),
            timestamp=int(data.get("paymentTime", data.get("timestamp", 0))),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_type": self.payment_type.value,
            "amount_sat": self.amount_sat,
            "fees_sat": self.fees_sat,
            "status": self.status,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class WalletInfo:
    """
    Balance snapshot.

    Only the four tracked fields take part in change detection; ``pubkey``
    is carried along for signing-related lookups.
    """
    balance_sat: int = 0
    pending_receive_sat: int = 0
    pending_send_sat: int = 0
    node_id: str = ""
    pubkey: str = ""

    def tracked_fields(self) -> tuple[int, int, int, str]:
        return (
            self.balance_sat,
            self.pending_receive_sat,
            self.pending_send_sat,
            self.node_id,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalletInfo:
        wallet = data.get("walletInfo", data)
        node_state = data.get("nodeState") or {}
        return cls(
            balance_sat=int(wallet.get("balanceSat", wallet.get("balance_sat", 0))),
            pending_receive_sat=int(wallet.get("pendingReceiveSat", wallet.get("pending_receive_sat", 0))),
            pending_send_sat=int(wallet.get("pendingSendSat", wallet.get("pending_send_sat", 0))),
            node_id=str(node_state.get("id", wallet.get("node_id", ""))),
            pubkey=str(wallet.get("pubkey", "")),
        )


def has_wallet_info_changed(old: WalletInfo | None, new: WalletInfo | None) -> bool:
    """True when observers should be told about *new*."""
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    return old.tracked_fields() != new.tracked_fields()


class PaymentEventKind(str, Enum):
    """Engine event variants; values are the engine's wire names."""
    PAYMENT_PENDING = "paymentPending"
    PAYMENT_WAITING_CONFIRMATION = "paymentWaitingConfirmation"
    PAYMENT_SUCCEEDED = "paymentSucceeded"
    PAYMENT_FAILED = "paymentFailed"
    PAYMENT_WAITING_FEE_ACCEPTANCE = "paymentWaitingFeeAcceptance"
    PAYMENT_REFUNDABLE = "paymentRefundable"
    PAYMENT_REFUND_PENDING = "paymentRefundPending"
    PAYMENT_REFUNDED = "paymentRefunded"
    SYNCED = "synced"


@dataclass(frozen=True)
class PaymentEvent:
    kind: PaymentEventKind
    details: Payment | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentEvent | None:
        """
        Parse an engine event dict ``{"type": ..., "details": {...}}``.

        Returns None for event types this runtime does not know about.
        """
        raw_type = data.get("type", "")
        try:
            kind = PaymentEventKind(raw_type)
        except ValueError:
            logger.info(f"Ignoring unknown engine event type: {raw_type!r}")
            return None
        details = data.get("details")
        payment = Payment.from_dict(details) if isinstance(details, dict) else None
        return cls(kind, payment)


@dataclass
class LightningAddressRegistration:
    """Outcome of a Lightning-address registration or recovery."""
    requested_username: str
    actual_username: str
    lnurl: str
    lightning_address: str | None = None
    bip353_address: str | None = None
    username_modified: bool = False

    @classmethod
    def from_response(cls, payload: dict[str, Any], requested: str,
                      actual: str) -> LightningAddressRegistration:
        return cls(
            requested_username=requested,
            actual_username=actual,
            lnurl=payload.get("lnurl", ""),
            lightning_address=payload.get("lightning_address"),
            bip353_address=payload.get("bip353_address"),
            username_modified=requested != actual,
        )

    def to_dict(self) -> dict:
        return {
            "requested_username": self.requested_username,
            "actual_username": self.actual_username,
            "lnurl": self.lnurl,
            "lightning_address": self.lightning_address,
            "bip353_address": self.bip353_address,
            "username_modified": self.username_modified,
        }
