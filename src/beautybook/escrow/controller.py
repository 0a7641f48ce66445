"""Escrow controller — the only component that moves money.

Escrow lifecycle per booking:
1. capture_for_booking: client pays → escrow transaction pending, then
   completed once the provider confirms. Booking approved → confirmed.
2. release_on_completion: escrow released, stylist paid price − fee,
   platform fee credited to the platform account.
3. reverse_on_cancellation: escrow released back, client refunded in
   full. An escrow that was never captured is voided instead.

Every external call carries a per-booking reference, so a retried or
concurrent call reaches the same outcome without a second movement:
    booking:{id}:capture   booking:{id}:payout   booking:{id}:refund
Release and reversal are mutually exclusive: once one has happened the
other raises AlreadySettled.

A timed-out or unknown call is resolved with gateway.status(reference)
before any compensating action. If the outcome stays unknown the caller
gets SettlementPending and the booking keeps its settlement reservation.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Optional

from beautybook.config import EngineConfig
from beautybook.errors import (
    AlreadySettled,
    CaptureFailed,
    Conflict,
    InvalidTransition,
    PayoutFailed,
    RefundFailed,
    SettlementPending,
    UnknownOutcome,
)
from beautybook.escrow.fees import FeeBreakdown, compute_fee
from beautybook.escrow.payment_gateway import (
    PaymentGateway,
    PaymentOperation,
    PaymentResult,
    PaymentStatus,
)
from beautybook.ledger.wallet_ledger import WalletLedger
from beautybook.models.booking import Actor, Booking, BookingStatus
from beautybook.models.wallet import (
    TransactionStatus,
    TransactionType,
    WalletTransaction,
)
from beautybook.persistence.booking_store import BookingStore
from beautybook.persistence.event_log import EventBus, EventKind

if TYPE_CHECKING:
    from beautybook.lifecycle.state_machine import BookingStateMachine

logger = logging.getLogger(__name__)


def capture_reference(booking_id: str, attempt: int = 1) -> str:
    if attempt <= 1:
        return f"booking:{booking_id}:capture"
    return f"booking:{booking_id}:capture:{attempt}"


def payout_reference(booking_id: str) -> str:
    return f"booking:{booking_id}:payout"


def fee_reference(booking_id: str) -> str:
    return f"booking:{booking_id}:fee"


def refund_reference(booking_id: str) -> str:
    return f"booking:{booking_id}:refund"


class EscrowController:
    """Runs capture, release and reversal against the wallet ledger.

    The state machine is bound after construction because the two
    collaborate in both directions: the machine asks for release and
    reversal, the controller commits approved → confirmed after capture.

    Usage:
        controller = EscrowController(store, ledger, gateway, bus, config)
        machine = BookingStateMachine(store, bus, settlement=controller)
        controller.bind(machine)
        controller.capture_for_booking("bk_1")
    """

    def __init__(
        self,
        store: BookingStore,
        ledger: WalletLedger,
        gateway: PaymentGateway,
        bus: EventBus,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._gateway = gateway
        self._bus = bus
        self._config = config or EngineConfig.from_dict({})
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._machine: Optional[BookingStateMachine] = None

    def bind(self, machine: BookingStateMachine) -> None:
        self._machine = machine

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture_for_booking(
        self,
        booking_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> WalletTransaction:
        """Capture the booking price into escrow and confirm the booking.

        Idempotent: while a capture is pending or completed, repeating
        the call resumes it instead of charging again. A declined capture
        leaves the booking approved and allows a fresh attempt.
        """
        machine = self._require_machine()
        now = self._clock()
        booking = self._store.get(booking_id)
        if amount is not None and amount != booking.price:
            raise ValueError(
                f"Capture amount {amount} does not match booking price {booking.price}"
            )
        if currency is not None and currency != booking.currency:
            raise ValueError(
                f"Capture currency {currency} does not match booking currency "
                f"{booking.currency}"
            )

        escrow = self._ledger.active_escrow(booking_id)
        if escrow is not None and escrow.status == TransactionStatus.COMPLETED:
            if (booking.status == BookingStatus.APPROVED
                    and booking.settlement_target == BookingStatus.CONFIRMED):
                machine.commit_settlement(booking, Actor.system())
            logger.info("Capture for booking %s already completed: %s", booking_id, escrow.reference)
            return escrow

        if booking.status != BookingStatus.APPROVED:
            raise InvalidTransition(
                booking.status.value, BookingStatus.CONFIRMED.value,
                "payment can only be captured for an approved booking",
            )

        reserved = machine.reserve_settlement(booking, BookingStatus.CONFIRMED)
        if escrow is None:
            escrow = self._open_escrow(reserved, now)

        try:
            result = self._execute(
                PaymentOperation.CAPTURE, escrow.amount, escrow.currency, escrow.reference,
            )
        except UnknownOutcome as exc:
            raise self._pending(booking_id, exc.reference, now)

        if result.status == PaymentStatus.SUCCEEDED:
            escrow = self._ledger.update_status(
                escrow.tx_id,
                TransactionStatus.PENDING,
                TransactionStatus.COMPLETED,
                now=now,
                external_id=result.external_id,
            )
            self._bus.record(
                EventKind.ESCROW_CAPTURED,
                reserved.client_id,
                {
                    "booking_id": booking_id,
                    "reference": escrow.reference,
                    "amount": str(escrow.amount),
                    "currency": escrow.currency,
                    "external_id": result.external_id,
                },
                now=now,
            )
            machine.commit_settlement(reserved, Actor.system())
            return escrow

        self._ledger.update_status(
            escrow.tx_id, TransactionStatus.PENDING, TransactionStatus.FAILED, now=now,
        )
        self._bus.record(
            EventKind.ESCROW_CAPTURE_FAILED,
            reserved.client_id,
            {
                "booking_id": booking_id,
                "reference": escrow.reference,
                "status": result.status.value,
                "detail": result.detail,
            },
            now=now,
        )
        machine.abandon_settlement(reserved)
        logger.info("Capture declined for booking %s (%s)", booking_id, escrow.reference)
        raise CaptureFailed(escrow.reference, result.detail or result.status.value)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_on_completion(
        self,
        booking_id: str,
        now: Optional[datetime] = None,
    ) -> WalletTransaction:
        """Pay the stylist out of escrow, less the platform fee.

        Runs while the booking is reserved for completion. A repeated
        call returns the existing payout; a call after a refund raises
        AlreadySettled.
        """
        now = now or self._clock()
        booking = self._store.get(booking_id, include_archived=True)
        existing = self._ledger.by_reference(payout_reference(booking_id))
        if existing is not None:
            logger.info("Release for booking %s already recorded; no-op", booking_id)
            return existing
        if self._ledger.by_reference(refund_reference(booking_id)) is not None:
            self._already_settled(booking, "release", "escrow was already refunded", now)

        if booking.settlement_target != BookingStatus.COMPLETED:
            raise InvalidTransition(
                booking.status.value, BookingStatus.COMPLETED.value,
                "escrow is released only when the booking completes",
            )
        escrow = self._ledger.latest_escrow(booking_id)
        if escrow is None or escrow.status not in (
            TransactionStatus.COMPLETED, TransactionStatus.RELEASED,
        ):
            raise ValueError(f"Booking {booking_id} has no captured escrow to release")

        breakdown = compute_fee(
            booking.price, self._config.platform_fee_rate, self._config.minor_unit,
        )
        reference = payout_reference(booking_id)
        try:
            result = self._execute(
                PaymentOperation.PAYOUT, breakdown.stylist_payout, booking.currency, reference,
            )
        except UnknownOutcome as exc:
            raise self._pending(booking_id, exc.reference, now)
        if result.status != PaymentStatus.SUCCEEDED:
            logger.info("Payout declined for booking %s (%s)", booking_id, reference)
            raise PayoutFailed(reference, result.detail or result.status.value)

        self._mark_released(escrow, now)
        payout = self._record_payout(booking, breakdown, result, now)
        self._bus.record(
            EventKind.ESCROW_RELEASED,
            "system",
            {
                "booking_id": booking_id,
                "stylist_id": booking.stylist_id,
                "gross": str(breakdown.price),
                "fee": str(breakdown.fee),
                "fee_rate": str(breakdown.rate),
                "payout": str(breakdown.stylist_payout),
                "currency": booking.currency,
            },
            now=now,
        )
        logger.info(
            "Escrow released for booking %s: %s %s to %s, fee %s",
            booking_id, breakdown.stylist_payout, booking.currency,
            booking.stylist_id, breakdown.fee,
        )
        return payout

    # ------------------------------------------------------------------
    # Reversal
    # ------------------------------------------------------------------

    def reverse_on_cancellation(
        self,
        booking_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[WalletTransaction]:
        """Refund the client in full, or void a capture that never landed.

        Returns the refund credit, or None when no money was captured.
        A repeated call returns the existing refund; a call after a
        payout raises AlreadySettled.
        """
        now = now or self._clock()
        booking = self._store.get(booking_id, include_archived=True)
        reference = refund_reference(booking_id)
        existing = self._ledger.by_reference(reference)
        if existing is not None:
            logger.info("Reversal for booking %s already recorded; no-op", booking_id)
            return existing
        if self._ledger.by_reference(payout_reference(booking_id)) is not None:
            self._already_settled(booking, "reversal", "escrow was already paid out", now)

        if booking.settlement_target != BookingStatus.CANCELLED:
            raise InvalidTransition(
                booking.status.value, BookingStatus.CANCELLED.value,
                "escrow is reversed only when the booking is cancelled",
            )
        escrow = self._ledger.latest_escrow(booking_id)
        if escrow is None or escrow.status == TransactionStatus.FAILED:
            return None

        if escrow.status == TransactionStatus.PENDING:
            try:
                captured = self._resolve(escrow.reference)
            except UnknownOutcome as exc:
                raise self._pending(booking_id, exc.reference, now)
            if captured.status != PaymentStatus.SUCCEEDED:
                self._ledger.update_status(
                    escrow.tx_id, TransactionStatus.PENDING, TransactionStatus.FAILED, now=now,
                )
                self._bus.record(
                    EventKind.ESCROW_VOIDED,
                    "system",
                    {"booking_id": booking_id, "reference": escrow.reference},
                    now=now,
                )
                logger.info("Uncaptured escrow voided for booking %s", booking_id)
                return None
            escrow = self._ledger.update_status(
                escrow.tx_id,
                TransactionStatus.PENDING,
                TransactionStatus.COMPLETED,
                now=now,
                external_id=captured.external_id,
            )

        try:
            result = self._execute(
                PaymentOperation.REFUND, escrow.amount, escrow.currency, reference,
            )
        except UnknownOutcome as exc:
            raise self._pending(booking_id, exc.reference, now)
        if result.status != PaymentStatus.SUCCEEDED:
            logger.info("Refund declined for booking %s (%s)", booking_id, reference)
            raise RefundFailed(reference, result.detail or result.status.value)

        self._mark_released(escrow, now)
        credit, _ = self._ledger.append_once(WalletTransaction(
            tx_id=_new_tx_id(),
            party_id=booking.client_id,
            type=TransactionType.CREDIT,
            amount=escrow.amount,
            currency=escrow.currency,
            status=TransactionStatus.COMPLETED,
            reference=reference,
            created_at=now,
            booking_id=booking_id,
            external_id=result.external_id,
            description=f"Refund for booking {booking_id}",
            recorded_at=now,
        ))
        self._bus.record(
            EventKind.ESCROW_REVERSED,
            "system",
            {
                "booking_id": booking_id,
                "client_id": booking.client_id,
                "amount": str(escrow.amount),
                "currency": escrow.currency,
            },
            now=now,
        )
        logger.info(
            "Escrow reversed for booking %s: %s %s refunded to %s",
            booking_id, escrow.amount, escrow.currency, booking.client_id,
        )
        return credit

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_machine(self) -> BookingStateMachine:
        if self._machine is None:
            raise RuntimeError("EscrowController is not bound to a state machine")
        return self._machine

    def _open_escrow(self, booking: Booking, now: datetime) -> WalletTransaction:
        attempt = len(self._ledger.for_booking(booking.booking_id, TransactionType.ESCROW)) + 1
        tx, created = self._ledger.append_once(WalletTransaction(
            tx_id=_new_tx_id(),
            party_id=booking.client_id,
            type=TransactionType.ESCROW,
            amount=booking.price,
            currency=booking.currency,
            status=TransactionStatus.PENDING,
            reference=capture_reference(booking.booking_id, attempt),
            created_at=now,
            booking_id=booking.booking_id,
            description=f"Escrow for booking {booking.booking_id}",
            recorded_at=now,
        ))
        if created:
            self._bus.record(
                EventKind.ESCROW_CAPTURE_REQUESTED,
                booking.client_id,
                {
                    "booking_id": booking.booking_id,
                    "reference": tx.reference,
                    "amount": str(tx.amount),
                    "currency": tx.currency,
                },
                now=now,
            )
        return tx

    def _record_payout(
        self,
        booking: Booking,
        breakdown: FeeBreakdown,
        result: PaymentResult,
        now: datetime,
    ) -> WalletTransaction:
        payout, _ = self._ledger.append_once(WalletTransaction(
            tx_id=_new_tx_id(),
            party_id=booking.stylist_id,
            type=TransactionType.PAYOUT,
            amount=breakdown.stylist_payout,
            currency=booking.currency,
            status=TransactionStatus.COMPLETED,
            reference=payout_reference(booking.booking_id),
            created_at=now,
            booking_id=booking.booking_id,
            external_id=result.external_id,
            description=f"Payout for booking {booking.booking_id}",
            metadata={
                "gross": str(breakdown.price),
                "fee": str(breakdown.fee),
                "fee_rate": str(breakdown.rate),
            },
            recorded_at=now,
        ))
        if breakdown.fee > Decimal("0"):
            self._ledger.append_once(WalletTransaction(
                tx_id=_new_tx_id(),
                party_id=self._config.platform_account_id,
                type=TransactionType.CREDIT,
                amount=breakdown.fee,
                currency=booking.currency,
                status=TransactionStatus.COMPLETED,
                reference=fee_reference(booking.booking_id),
                created_at=now,
                booking_id=booking.booking_id,
                description=f"Platform fee for booking {booking.booking_id}",
                metadata={"fee_rate": str(breakdown.rate)},
                recorded_at=now,
            ))
        return payout

    def _mark_released(self, escrow: WalletTransaction, now: datetime) -> None:
        if escrow.status == TransactionStatus.RELEASED:
            return
        try:
            self._ledger.update_status(
                escrow.tx_id, TransactionStatus.COMPLETED, TransactionStatus.RELEASED, now=now,
            )
        except Conflict:
            # A concurrent settlement already released it.
            if self._ledger.get(escrow.tx_id).status != TransactionStatus.RELEASED:
                raise

    def _execute(
        self,
        operation: PaymentOperation,
        amount: Decimal,
        currency: str,
        reference: str,
    ) -> PaymentResult:
        """Submit one operation; resolve an ambiguous answer by polling."""
        submit = getattr(self._gateway, operation.value)
        try:
            result = submit(amount, currency, reference)
        except TimeoutError:
            logger.warning("Payment %s timed out for %s; checking status", operation.value, reference)
            return self._resolve(reference)
        if result.status == PaymentStatus.UNKNOWN:
            return self._resolve(reference)
        return result

    def _resolve(self, reference: str) -> PaymentResult:
        attempts = self._config.status_poll_attempts
        for attempt in range(attempts):
            if attempt:
                self._sleep(self._config.status_poll_interval_seconds)
            try:
                result = self._gateway.status(reference)
            except TimeoutError:
                logger.warning("Status lookup timed out for %s (attempt %d)", reference, attempt + 1)
                continue
            if result.status != PaymentStatus.UNKNOWN:
                return result
        raise UnknownOutcome(reference)

    def _pending(self, booking_id: str, reference: str, now: datetime) -> SettlementPending:
        logger.warning(
            "Payment outcome unknown for booking %s (%s); settlement left pending",
            booking_id, reference,
        )
        self._bus.record(
            EventKind.PAYMENT_OUTCOME_UNKNOWN,
            "system",
            {"booking_id": booking_id, "reference": reference},
            now=now,
        )
        return SettlementPending(booking_id, reference)

    def _already_settled(
        self,
        booking: Booking,
        operation: str,
        detail: str,
        now: datetime,
    ) -> None:
        logger.warning(
            "Refusing %s for booking %s: %s", operation, booking.booking_id, detail,
        )
        self._bus.record(
            EventKind.ALREADY_SETTLED,
            "system",
            {"booking_id": booking.booking_id, "operation": operation, "detail": detail},
            now=now,
        )
        raise AlreadySettled(f"Booking {booking.booking_id}: {detail}")


def _new_tx_id() -> str:
    return f"tx_{uuid.uuid4().hex[:16]}"
