"""Wallet models — ledger transactions and balances.

All monetary values use Decimal. No floats in finance.

A WalletTransaction is an immutable revision. Status changes never
edit a past revision; the ledger appends a new revision of the same
tx_id and the latest revision is the transaction's current view.

Transaction status machine:
    PENDING → COMPLETED → RELEASED
    PENDING → FAILED

Only escrow holds move through it. Payouts and credits are written
COMPLETED, after the external money movement has succeeded.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


class TransactionType(str, enum.Enum):
    """Kind of money movement recorded against a party."""
    CREDIT = "credit"
    DEBIT = "debit"
    ESCROW = "escrow"
    PAYOUT = "payout"


class TransactionStatus(str, enum.Enum):
    """Lifecycle state of a wallet transaction."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    RELEASED = "released"


TRANSACTION_TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
    }),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.RELEASED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.RELEASED: frozenset(),
}

# Escrow statuses that still hold (or may hold) the client's money.
ACTIVE_ESCROW_STATUSES: frozenset = frozenset({
    TransactionStatus.PENDING,
    TransactionStatus.COMPLETED,
})


@dataclass(frozen=True)
class WalletTransaction:
    """One revision of a ledger transaction.

    reference is the idempotency key for the logical operation, e.g.
    ``booking:{id}:capture``. It is unique across the ledger.
    """
    tx_id: str
    party_id: str
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    reference: str
    created_at: datetime
    booking_id: Optional[str] = None
    external_id: Optional[str] = None
    description: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    revision: int = 1
    recorded_at: Optional[datetime] = None

    def signed_amount(self) -> Decimal:
        """Effect of this transaction on its party's available balance."""
        if self.type in (TransactionType.CREDIT, TransactionType.PAYOUT):
            if self.status in (TransactionStatus.COMPLETED, TransactionStatus.RELEASED):
                return self.amount
            return Decimal("0")
        if self.type == TransactionType.DEBIT:
            if self.status in (TransactionStatus.COMPLETED, TransactionStatus.RELEASED):
                return -self.amount
            return Decimal("0")
        # Escrow: money has left the client once captured, whatever
        # happens to it afterwards (payout or refund credit).
        if self.status in (TransactionStatus.COMPLETED, TransactionStatus.RELEASED):
            return -self.amount
        return Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "party_id": self.party_id,
            "type": self.type.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "reference": self.reference,
            "created_at": self.created_at.isoformat(),
            "booking_id": self.booking_id,
            "external_id": self.external_id,
            "description": self.description,
            "metadata": dict(self.metadata),
            "revision": self.revision,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalletTransaction:
        recorded = data.get("recorded_at")
        return cls(
            tx_id=data["tx_id"],
            party_id=data["party_id"],
            type=TransactionType(data["type"]),
            amount=Decimal(data["amount"]),
            currency=data["currency"],
            status=TransactionStatus(data["status"]),
            reference=data["reference"],
            created_at=datetime.fromisoformat(data["created_at"]),
            booking_id=data.get("booking_id"),
            external_id=data.get("external_id"),
            description=data.get("description", ""),
            metadata=dict(data.get("metadata") or {}),
            revision=data.get("revision", 1),
            recorded_at=datetime.fromisoformat(recorded) if recorded else None,
        )


@dataclass(frozen=True)
class WalletBalance:
    """Observable balance of one party in one currency.

    available: net of all settled movements.
    held: client money currently captured in escrow (already excluded
    from available).
    """
    party_id: str
    currency: str
    available: Decimal
    held: Decimal
