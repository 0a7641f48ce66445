"""BeautyBook service — unified facade for the booking engine.

This is the primary interface for programmatic access. The HTTP API and
the CLI both go through it. It wires and orchestrates:
- Booking creation (slot exclusivity, currency and price validation)
- Lifecycle transitions (state machine, optimistic concurrency)
- Escrow capture, release and reversal (escrow controller)
- Disputes (open, adjudicate, list)
- Wallet views (balance, history, platform revenue)
- Housekeeping (archival, invariant audit, reconcile)
- Persistence (event log, state snapshot)

Engine errors propagate to the caller as typed exceptions from
beautybook.errors. Every mutating call snapshots state afterwards,
including calls that fail part way, so the snapshot always matches the
ledger and the event log.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Executor
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional

from beautybook.config import EngineConfig
from beautybook.errors import (
    BookingError,
    Conflict,
    Forbidden,
    InvalidTransition,
    SlotUnavailable,
)
from beautybook.escrow.controller import (
    EscrowController,
    fee_reference,
    refund_reference,
)
from beautybook.escrow.payment_gateway import PaymentGateway, SandboxPaymentGateway
from beautybook.ledger.wallet_ledger import WalletLedger
from beautybook.lifecycle.disputes import DisputeRegistry, DisputeResolver
from beautybook.lifecycle.state_machine import BookingStateMachine, Clock, utc_now
from beautybook.models.booking import (
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    DisputeOutcome,
    DisputeRecord,
)
from beautybook.models.wallet import (
    ACTIVE_ESCROW_STATUSES,
    TransactionStatus,
    TransactionType,
    WalletBalance,
    WalletTransaction,
)
from beautybook.persistence.booking_store import BookingStore
from beautybook.persistence.event_log import (
    EventBus,
    EventKind,
    EventLog,
    EventRecord,
    NotificationSink,
)
from beautybook.persistence.state_store import StateStore

logger = logging.getLogger(__name__)


class BookingService:
    """Booking engine facade.

    Usage:
        service = BookingService(config=EngineConfig.load())
        booking = service.create_booking(
            Actor(ActorRole.CLIENT, "cli_1"), "sty_1", "Box braids",
            scheduled_at, Decimal("100.00"),
        )
        service.request_transition(booking.booking_id,
                                   Actor(ActorRole.STYLIST, "sty_1"),
                                   BookingStatus.APPROVED)
        service.capture_payment(booking.booking_id, Actor(ActorRole.CLIENT, "cli_1"))
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        gateway: Optional[PaymentGateway] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], None] = time.sleep,
        executor: Optional[Executor] = None,
    ) -> None:
        self._config = config or EngineConfig.load()
        self._clock = clock or utc_now
        self._gateway = gateway if gateway is not None else SandboxPaymentGateway()
        self._store = BookingStore()
        self._ledger = WalletLedger()
        self._bus = EventBus(event_log, executor)
        self._state_store = state_store
        self._persistence_degraded = False
        self._persist_lock = threading.Lock()

        self._escrow = EscrowController(
            self._store,
            self._ledger,
            self._gateway,
            self._bus,
            self._config,
            clock=self._clock,
            sleep=sleep,
        )
        self._machine = BookingStateMachine(
            self._store,
            self._bus,
            disputes=DisputeRegistry(),
            settlement=self._escrow,
            clock=self._clock,
        )
        self._escrow.bind(self._machine)
        self._resolver = DisputeResolver(self._machine, self._bus)

        if state_store is not None:
            self._restore(state_store)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def event_log(self) -> EventLog:
        return self._bus.log

    @property
    def ledger(self) -> WalletLedger:
        return self._ledger

    @property
    def machine(self) -> BookingStateMachine:
        return self._machine

    @property
    def escrow(self) -> EscrowController:
        return self._escrow

    def subscribe(self, sink: NotificationSink) -> None:
        self._bus.subscribe(sink)

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def create_booking(
        self,
        actor: Actor,
        stylist_id: str,
        service: str,
        scheduled_at: datetime,
        price: Decimal,
        currency: Optional[str] = None,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> Booking:
        """Create a pending booking for the calling client.

        Raises Forbidden for non-client actors, ValueError for invalid
        input and SlotUnavailable when the stylist is already booked at
        scheduled_at.
        """
        now = self._clock()
        if actor.role != ActorRole.CLIENT:
            self._deny(actor, "create_booking", None, "only clients create bookings", now)
        currency = currency or self._config.default_currency
        if currency not in self._config.supported_currencies:
            raise ValueError(
                f"Unsupported currency {currency}; expected one of "
                f"{', '.join(self._config.supported_currencies)}"
            )
        if price <= Decimal("0"):
            raise ValueError("Price must be positive")
        if price != price.quantize(self._config.minor_unit):
            raise ValueError(
                f"Price {price} has more precision than the currency minor unit "
                f"{self._config.minor_unit}"
            )
        if not service or not service.strip():
            raise ValueError("Service description is required")
        if not stylist_id:
            raise ValueError("stylist_id is required")
        if stylist_id == actor.party_id:
            raise ValueError("A stylist cannot book themselves")
        if scheduled_at.tzinfo is None:
            raise ValueError("scheduled_at must be timezone-aware")
        if scheduled_at <= now:
            raise ValueError("scheduled_at must be in the future")

        booking = Booking(
            booking_id=booking_id or f"bk_{uuid.uuid4().hex[:12]}",
            client_id=actor.party_id,
            stylist_id=stylist_id,
            service=service.strip(),
            scheduled_at=scheduled_at,
            price=price,
            currency=currency,
            created_at=now,
            updated_at=now,
            location=location,
            notes=notes,
        )
        with self._mutation():
            if not self._store.insert_if_slot_free(booking):
                raise SlotUnavailable(
                    f"Stylist {stylist_id} is already booked at "
                    f"{scheduled_at.isoformat()}"
                )
            self._bus.record(
                EventKind.BOOKING_CREATED,
                actor.party_id,
                {
                    "booking_id": booking.booking_id,
                    "client_id": booking.client_id,
                    "stylist_id": booking.stylist_id,
                    "price": str(booking.price),
                    "currency": booking.currency,
                    "scheduled_at": booking.scheduled_at.isoformat(),
                },
                now=now,
            )
        logger.info(
            "Booking %s created: %s with %s at %s for %s %s",
            booking.booking_id, booking.client_id, booking.stylist_id,
            booking.scheduled_at.isoformat(), booking.price, booking.currency,
        )
        return booking

    def get_booking(self, booking_id: str, include_archived: bool = False) -> Booking:
        return self._store.get(booking_id, include_archived=include_archived)

    def list_bookings(
        self,
        client_id: Optional[str] = None,
        stylist_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        include_archived: bool = False,
    ) -> list[Booking]:
        """Bookings matching the filters, newest scheduled first."""
        if limit is None:
            limit = self._config.list_default_limit
        if limit < 1 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        bookings = self._store.query(
            client_id=client_id,
            stylist_id=stylist_id,
            status=status,
            include_archived=include_archived,
        )
        return bookings[offset:offset + limit]

    def count_bookings(
        self,
        client_id: Optional[str] = None,
        stylist_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
        include_archived: bool = False,
    ) -> int:
        """Number of bookings matching the filters, ignoring pagination."""
        return len(self._store.query(
            client_id=client_id,
            stylist_id=stylist_id,
            status=status,
            include_archived=include_archived,
        ))

    def request_transition(
        self,
        booking_id: str,
        actor: Actor,
        target: BookingStatus,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        with self._mutation():
            return self._machine.request_transition(
                booking_id, actor, target,
                expected_version=expected_version, reason=reason,
            )

    def cancel_booking(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Booking:
        """Cancel a booking and reverse any captured escrow."""
        return self.request_transition(
            booking_id, actor, BookingStatus.CANCELLED, expected_version=expected_version,
        )

    def booking_events(self, booking_id: str) -> list[EventRecord]:
        return self._bus.log.events_for_booking(booking_id)

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def capture_payment(
        self,
        booking_id: str,
        actor: Actor,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> WalletTransaction:
        """Capture the client's payment; confirms the booking on success."""
        booking = self._store.get(booking_id)
        if actor.role == ActorRole.STYLIST or (
            actor.role == ActorRole.CLIENT and actor.party_id != booking.client_id
        ):
            self._deny(
                actor, "capture_payment", booking_id,
                "only the booking's client may pay for it", self._clock(),
            )
        with self._mutation():
            return self._escrow.capture_for_booking(booking_id, amount, currency)

    def reconcile(self, booking_id: str) -> Booking:
        """Resume a settlement left pending by an unresolved payment outcome.

        Raises SettlementPending again if the outcome is still unknown.
        """
        booking = self._store.get(booking_id)
        with self._mutation():
            if booking.settlement_target is None:
                return booking
            if booking.settlement_target == BookingStatus.CONFIRMED:
                self._escrow.capture_for_booking(booking_id)
                return self._store.get(booking_id)
            adjudicated = self._resolver.resume_decided(booking_id)
            if adjudicated is not None:
                return adjudicated[0]
            return self._machine.resume_settlement(booking_id)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        booking_id: str,
        actor: Actor,
        reason: str,
        expected_version: Optional[int] = None,
    ) -> DisputeRecord:
        with self._mutation():
            return self._resolver.open_dispute(
                booking_id, actor, reason, expected_version=expected_version,
            )

    def resolve_dispute(
        self,
        booking_id: str,
        adjudicator: Actor,
        outcome: DisputeOutcome,
        note: Optional[str] = None,
    ) -> tuple[Booking, DisputeRecord]:
        with self._mutation():
            return self._resolver.resolve_dispute(booking_id, adjudicator, outcome, note)

    def get_dispute(self, booking_id: str) -> DisputeRecord:
        return self._resolver.get_dispute(booking_id)

    def list_disputes(self, resolved: Optional[bool] = False) -> list[DisputeRecord]:
        return self._resolver.list_disputes(resolved)

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def wallet_balance(self, party_id: str, currency: Optional[str] = None) -> WalletBalance:
        return self._ledger.balance(party_id, currency or self._config.default_currency)

    def wallet_transactions(
        self,
        party_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WalletTransaction], int]:
        """One page of a party's transactions (newest first) and the total count."""
        if limit < 1 or offset < 0:
            raise ValueError("limit must be positive and offset non-negative")
        return (
            self._ledger.for_party(party_id, limit=limit, offset=offset),
            self._ledger.count_for_party(party_id),
        )

    def platform_revenue(self, currency: Optional[str] = None) -> Decimal:
        """Total platform fees credited in the given currency."""
        currency = currency or self._config.default_currency
        total = Decimal("0")
        for tx in self._ledger.current():
            if (
                tx.party_id == self._config.platform_account_id
                and tx.type == TransactionType.CREDIT
                and tx.currency == currency
                and tx.booking_id is not None
                and tx.reference == fee_reference(tx.booking_id)
            ):
                total += tx.amount
        return total

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def archive_booking(self, booking_id: str) -> Booking:
        """Hide a settled terminal booking from default reads."""
        now = self._clock()
        booking = self._store.get(booking_id)
        if not booking.is_terminal:
            raise InvalidTransition(
                booking.status.value, "archived", "only terminal bookings can be archived",
            )
        if booking.settlement_target is not None:
            raise Conflict(booking_id, detail="settlement in progress")
        if self._ledger.active_escrow(booking_id) is not None:
            raise Conflict(booking_id, detail="escrow still active")
        with self._mutation():
            archived = self._store.compare_and_set(
                booking_id, booking.version, archived_at=now,
            )
            self._bus.record(
                EventKind.BOOKING_ARCHIVED,
                "system",
                {"booking_id": booking_id, "status": booking.status.value},
                now=now,
            )
        return archived

    def archive_expired(self) -> list[str]:
        """Archive terminal bookings untouched for the retention period."""
        now = self._clock()
        cutoff = now - timedelta(days=self._config.archive_retention_days)
        archived: list[str] = []
        for booking in self._store.query():
            last_change = booking.updated_at or booking.created_at
            if not booking.is_terminal or last_change is None or last_change > cutoff:
                continue
            try:
                self.archive_booking(booking.booking_id)
            except BookingError as exc:
                logger.info("Skipping archival of %s: %s", booking.booking_id, exc)
                continue
            archived.append(booking.booking_id)
        if archived:
            logger.info("Archived %d booking(s)", len(archived))
        return archived

    def check_invariants(self) -> list[str]:
        """Audit bookings against the ledger and the event log.

        Returns a list of human-readable violations; empty means clean.
        """
        violations: list[str] = []
        for booking in self._store.all():
            violations.extend(self._booking_violations(booking))
        violations.extend(self._transition_violations())
        return violations

    def status(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for booking in self._store.all():
            by_status[booking.status.value] = by_status.get(booking.status.value, 0) + 1
        return {
            "bookings": {"total": self._store.count, "by_status": by_status},
            "ledger_transactions": self._ledger.count,
            "open_disputes": len(self.list_disputes(resolved=False)),
            "events": self._bus.log.count,
            "platform_fee_rate": str(self._config.platform_fee_rate),
            "default_currency": self._config.default_currency,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _booking_violations(self, booking: Booking) -> list[str]:
        bid = booking.booking_id
        escrows = self._ledger.for_booking(bid, TransactionType.ESCROW)
        active = [e for e in escrows if e.status in ACTIVE_ESCROW_STATUSES]
        captured = [
            e for e in escrows
            if e.status in (TransactionStatus.COMPLETED, TransactionStatus.RELEASED)
        ]
        released = [e for e in escrows if e.status == TransactionStatus.RELEASED]
        payouts = self._ledger.for_booking(bid, TransactionType.PAYOUT)
        refunds = [
            tx for tx in self._ledger.for_booking(bid, TransactionType.CREDIT)
            if tx.reference == refund_reference(bid)
        ]
        fees = [
            tx for tx in self._ledger.for_booking(bid, TransactionType.CREDIT)
            if tx.reference == fee_reference(bid)
        ]

        found: list[str] = []
        if len(active) > 1:
            found.append(f"{bid}: {len(active)} active escrows")
        if booking.is_terminal and active:
            found.append(f"{bid}: terminal ({booking.status.value}) with active escrow")
        if booking.status in (
            BookingStatus.CONFIRMED, BookingStatus.SATISFIED, BookingStatus.DISPUTED,
        ) and not captured:
            found.append(f"{bid}: {booking.status.value} without a captured escrow")

        if booking.status == BookingStatus.COMPLETED:
            if len(released) != 1:
                found.append(f"{bid}: completed with {len(released)} released escrows")
            if len(payouts) != 1:
                found.append(f"{bid}: completed with {len(payouts)} payouts")
            if refunds:
                found.append(f"{bid}: completed but refunded")
            if payouts:
                fee_total = sum((f.amount for f in fees), Decimal("0"))
                if payouts[0].amount + fee_total != booking.price:
                    found.append(
                        f"{bid}: payout {payouts[0].amount} + fee {fee_total} "
                        f"!= price {booking.price}"
                    )
        elif booking.status == BookingStatus.CANCELLED:
            if len(refunds) > 1:
                found.append(f"{bid}: cancelled with {len(refunds)} refunds")
            if payouts:
                found.append(f"{bid}: cancelled but paid out")
            if len(released) > 1:
                found.append(f"{bid}: cancelled with {len(released)} released escrows")
            if released and not refunds:
                found.append(f"{bid}: cancelled, escrow released without refund")
        elif payouts or refunds:
            found.append(f"{bid}: {booking.status.value} but already settled")

        dispute = self._machine.disputes.find(bid)
        if booking.is_terminal and dispute is not None and not dispute.is_resolved:
            found.append(f"{bid}: {booking.status.value} with an open dispute")
        return found

    def _transition_violations(self) -> list[str]:
        found: list[str] = []
        last: dict[str, str] = {}
        for event in self._bus.log.events(EventKind.BOOKING_TRANSITION):
            bid = event.payload["booking_id"]
            src = BookingStatus(event.payload["from_status"])
            dst = BookingStatus(event.payload["to_status"])
            expected = last.get(bid, BookingStatus.PENDING.value)
            if src.value != expected:
                found.append(
                    f"{bid}: transition {src.value} → {dst.value} does not follow "
                    f"{expected}"
                )
            if not BookingStateMachine.is_valid_edge(src, dst):
                found.append(f"{bid}: illegal transition {src.value} → {dst.value}")
            last[bid] = dst.value
        for bid, status in last.items():
            try:
                current = self._store.get(bid, include_archived=True)
            except BookingError:
                found.append(f"{bid}: transitions logged for unknown booking")
                continue
            if current.status.value != status:
                found.append(
                    f"{bid}: stored status {current.status.value} != logged {status}"
                )
        return found

    def _deny(
        self,
        actor: Actor,
        action: str,
        booking_id: Optional[str],
        detail: str,
        now: datetime,
    ) -> None:
        logger.warning(
            "Forbidden %s by %s %s on booking %s: %s",
            action, actor.role.value, actor.party_id, booking_id, detail,
        )
        self._bus.record(
            EventKind.FORBIDDEN_ATTEMPT,
            actor.party_id,
            {
                "booking_id": booking_id,
                "actor_role": actor.role.value,
                "action": action,
                "detail": detail,
            },
            now=now,
        )
        raise Forbidden(f"{actor.role.value} {actor.party_id} may not {action}: {detail}")

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        try:
            yield
        finally:
            self._persist()

    def _persist(self) -> None:
        """Snapshot state; on failure flag degradation instead of raising.

        The event log already holds the audit record, so in-memory state
        stays authoritative and the snapshot is merely stale.
        """
        if self._state_store is None:
            return
        try:
            # Gather and write together so an older snapshot never lands last.
            with self._persist_lock:
                self._state_store.save(
                    self._store.all(),
                    self._machine.disputes.all(),
                    self._ledger.entries(),
                )
        except OSError:
            self._persistence_degraded = True
            logger.exception(
                "State snapshot to %s failed; in-memory state remains authoritative",
                self._state_store.path,
            )

    def _restore(self, state_store: StateStore) -> None:
        snapshot = state_store.load()
        if snapshot is None:
            return
        self._store.load(snapshot.bookings)
        self._machine.disputes.load(snapshot.disputes)
        self._ledger.load(snapshot.ledger_entries)
        logger.info(
            "Restored %d booking(s), %d dispute(s), %d ledger revision(s) from %s",
            len(snapshot.bookings), len(snapshot.disputes),
            len(snapshot.ledger_entries), state_store.path,
        )
