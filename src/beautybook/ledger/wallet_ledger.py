"""Wallet ledger — append-only log of monetary transactions per party.

Past entries are never edited. A status change (escrow captured,
released, failed) appends a new revision of the same transaction; the
latest revision is the transaction's current view. Balances are
computed from current views on demand.

Ledger-level invariants enforced on every append:
- reference (idempotency key) is unique across the ledger
- at most one escrow per booking is pending/completed at a time
- no payout or credit referencing a booking while its escrow is active

The ledger may be written concurrently by operations on different
bookings; its lock covers only the in-memory append.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from beautybook.errors import Conflict
from beautybook.models.wallet import (
    ACTIVE_ESCROW_STATUSES,
    TRANSACTION_TRANSITIONS,
    TransactionStatus,
    TransactionType,
    WalletBalance,
    WalletTransaction,
)


class WalletLedger:
    """In-memory append-only wallet ledger.

    Usage:
        ledger = WalletLedger()
        tx, created = ledger.append_once(transaction)
        tx = ledger.update_status(tx.tx_id, TransactionStatus.PENDING,
                                  TransactionStatus.COMPLETED)
        balance = ledger.balance("client_1", "GHS")
    """

    def __init__(self) -> None:
        self._entries: list[WalletTransaction] = []
        self._current: dict[str, WalletTransaction] = {}
        self._by_reference: dict[str, str] = {}
        self._lock = threading.Lock()

    def append_once(
        self,
        tx: WalletTransaction,
    ) -> Tuple[WalletTransaction, bool]:
        """Append a new transaction unless its reference already exists.

        Returns (transaction, created). When the reference is already
        present the existing transaction is returned and nothing is
        written.
        """
        if tx.amount <= Decimal("0"):
            raise ValueError("Transaction amount must be positive")
        with self._lock:
            existing_id = self._by_reference.get(tx.reference)
            if existing_id is not None:
                return self._current[existing_id], False
            if tx.tx_id in self._current:
                raise ValueError(f"Transaction ID already exists: {tx.tx_id}")
            if tx.booking_id is not None:
                self._check_booking_invariants(tx)
            self._write(tx)
            return tx, True

    def update_status(
        self,
        tx_id: str,
        expected: TransactionStatus,
        new_status: TransactionStatus,
        now: Optional[datetime] = None,
        external_id: Optional[str] = None,
    ) -> WalletTransaction:
        """Append a revision moving tx_id from expected to new_status.

        Raises ValueError for a transition outside the status machine and
        Conflict when the current status is no longer the expected one.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        with self._lock:
            current = self._get(tx_id)
            if current.status != expected:
                raise Conflict(
                    current.booking_id or tx_id,
                    detail=(
                        f"transaction {tx_id} is {current.status.value}, "
                        f"expected {expected.value}"
                    ),
                )
            allowed = TRANSACTION_TRANSITIONS.get(current.status, frozenset())
            if new_status not in allowed:
                raise ValueError(
                    f"Invalid transaction transition: {current.status.value} → "
                    f"{new_status.value}. "
                    f"Allowed: {', '.join(s.value for s in allowed)}"
                )
            revision = dataclasses.replace(
                current,
                status=new_status,
                revision=current.revision + 1,
                recorded_at=now,
                external_id=external_id or current.external_id,
            )
            self._write(revision)
            return revision

    def get(self, tx_id: str) -> WalletTransaction:
        return self._get(tx_id)

    def by_reference(self, reference: str) -> Optional[WalletTransaction]:
        tx_id = self._by_reference.get(reference)
        return self._current[tx_id] if tx_id is not None else None

    def for_booking(
        self,
        booking_id: str,
        tx_type: Optional[TransactionType] = None,
    ) -> list[WalletTransaction]:
        """Current views of a booking's transactions, oldest first."""
        return [
            tx for tx in self._ordered_current()
            if tx.booking_id == booking_id
            and (tx_type is None or tx.type == tx_type)
        ]

    def active_escrow(self, booking_id: str) -> Optional[WalletTransaction]:
        for tx in self.for_booking(booking_id, TransactionType.ESCROW):
            if tx.status in ACTIVE_ESCROW_STATUSES:
                return tx
        return None

    def latest_escrow(self, booking_id: str) -> Optional[WalletTransaction]:
        escrows = self.for_booking(booking_id, TransactionType.ESCROW)
        return escrows[-1] if escrows else None

    def for_party(
        self,
        party_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> list[WalletTransaction]:
        """Current views of a party's transactions, newest first."""
        txs = [tx for tx in self._ordered_current() if tx.party_id == party_id]
        txs.reverse()
        return txs[offset:offset + limit]

    def count_for_party(self, party_id: str) -> int:
        with self._lock:
            return sum(1 for tx in self._current.values() if tx.party_id == party_id)

    def balance(self, party_id: str, currency: str) -> WalletBalance:
        with self._lock:
            snapshot = list(self._current.values())
        available = Decimal("0")
        held = Decimal("0")
        for tx in snapshot:
            if tx.party_id != party_id or tx.currency != currency:
                continue
            available += tx.signed_amount()
            if tx.type == TransactionType.ESCROW and tx.status == TransactionStatus.COMPLETED:
                held += tx.amount
        return WalletBalance(
            party_id=party_id,
            currency=currency,
            available=available,
            held=held,
        )

    def entries(self) -> list[WalletTransaction]:
        """Every revision ever written, in append order."""
        return list(self._entries)

    def current(self) -> list[WalletTransaction]:
        return self._ordered_current()

    def load(self, entries: Iterable[WalletTransaction]) -> None:
        """Rebuild the ledger from a sequence of revisions."""
        with self._lock:
            self._entries = []
            self._current = {}
            self._by_reference = {}
            for tx in entries:
                self._write(tx)

    @property
    def count(self) -> int:
        return len(self._current)

    def _write(self, tx: WalletTransaction) -> None:
        self._entries.append(tx)
        self._current[tx.tx_id] = tx
        self._by_reference[tx.reference] = tx.tx_id

    def _check_booking_invariants(self, tx: WalletTransaction) -> None:
        active = [
            t for t in self._current.values()
            if t.booking_id == tx.booking_id
            and t.type == TransactionType.ESCROW
            and t.status in ACTIVE_ESCROW_STATUSES
        ]
        if tx.type == TransactionType.ESCROW and active:
            raise ValueError(
                f"Booking {tx.booking_id} already has an active escrow: "
                f"{active[0].tx_id}"
            )
        if tx.type in (TransactionType.PAYOUT, TransactionType.CREDIT) and active:
            raise ValueError(
                f"Cannot settle booking {tx.booking_id} while escrow "
                f"{active[0].tx_id} is {active[0].status.value}"
            )

    def _ordered_current(self) -> list[WalletTransaction]:
        # Insertion order of the first revision is the creation order.
        with self._lock:
            seen: dict[str, None] = {}
            for tx in self._entries:
                seen.setdefault(tx.tx_id, None)
            return [self._current[tx_id] for tx_id in seen]

    def _get(self, tx_id: str) -> WalletTransaction:
        tx = self._current.get(tx_id)
        if tx is None:
            raise ValueError(f"Unknown transaction ID: {tx_id}")
        return tx
