"""Booking state machine — owns Booking.status and every guard on it.

Lifecycle:
    pending → approved | rejected | cancelled
    approved → confirmed (system, after capture) | cancelled
    confirmed → satisfied | disputed | cancelled
    satisfied → completed | disputed
    disputed → completed | cancelled (dispute resolver only)

Fail-closed: any transition not in the table is InvalidTransition, any
actor not named by the guard is Forbidden. Every write is a
compare-and-set on the version the request read, so two actors racing
on the same booking cannot both succeed.

Money-moving transitions (→ completed, → cancelled, and the capture
that yields → confirmed) run in three steps:
    1. reserve: stamp settlement_target (version bump)
    2. settle: escrow controller moves the money, no lock held
    3. commit: set status and clear the reservation (version bump)
A decline abandons the reservation and leaves status unchanged. An
unresolved outcome keeps it until reconcile.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from beautybook.errors import (
    AlreadySettled,
    Conflict,
    Forbidden,
    InvalidTransition,
    PaymentDeclined,
)
from beautybook.lifecycle.disputes import DisputeRegistry
from beautybook.models.booking import (
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    LifecycleEvent,
    TERMINAL_STATUSES,
)
from beautybook.persistence.booking_store import BookingStore
from beautybook.persistence.event_log import EventBus, EventKind

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Valid transitions: {from_status: {allowed_to_statuses}}
_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.APPROVED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.APPROVED: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {
        BookingStatus.SATISFIED,
        BookingStatus.DISPUTED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.SATISFIED: {BookingStatus.COMPLETED, BookingStatus.DISPUTED},
    BookingStatus.DISPUTED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    # Terminal statuses: no outgoing transitions
    BookingStatus.REJECTED: set(),
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

# Only reachable through DisputeResolver.resolve_dispute.
_RESOLVER_ONLY: set[tuple[BookingStatus, BookingStatus]] = {
    (BookingStatus.DISPUTED, BookingStatus.COMPLETED),
    (BookingStatus.DISPUTED, BookingStatus.CANCELLED),
}

_SETTLING_TARGETS = {BookingStatus.COMPLETED, BookingStatus.CANCELLED}


class SettlementHandler(Protocol):
    """Money side of → completed and → cancelled (the escrow controller)."""

    def release_on_completion(self, booking_id: str, now: Optional[datetime] = None) -> Any:
        ...

    def reverse_on_cancellation(self, booking_id: str, now: Optional[datetime] = None) -> Any:
        ...


class BookingStateMachine:
    """Validates and applies booking transitions.

    Usage:
        machine = BookingStateMachine(store, bus, settlement=controller)
        booking = machine.request_transition(
            "bk_1", Actor(ActorRole.STYLIST, "sty_1"), BookingStatus.APPROVED,
        )
    """

    def __init__(
        self,
        store: BookingStore,
        bus: EventBus,
        disputes: Optional[DisputeRegistry] = None,
        settlement: Optional[SettlementHandler] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._disputes = disputes if disputes is not None else DisputeRegistry()
        self._settlement = settlement
        self._clock = clock or utc_now

    @property
    def disputes(self) -> DisputeRegistry:
        return self._disputes

    @property
    def clock(self) -> Clock:
        return self._clock

    @staticmethod
    def valid_transitions(status: BookingStatus) -> set[BookingStatus]:
        """Return the set of valid target statuses from the given status."""
        return set(_TRANSITIONS.get(status, set()))

    @staticmethod
    def is_terminal(status: BookingStatus) -> bool:
        return status in TERMINAL_STATUSES

    @staticmethod
    def is_valid_edge(current: BookingStatus, target: BookingStatus) -> bool:
        return target in _TRANSITIONS.get(current, set())

    def request_transition(
        self,
        booking_id: str,
        actor: Actor,
        target: BookingStatus,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """Validate and apply an actor's transition request.

        Raises InvalidTransition, Forbidden or Conflict on guard failure.
        For → completed / → cancelled the escrow settlement runs before
        the status is committed and its errors propagate unchanged.
        """
        now = self._clock()
        booking = self._store.get(booking_id)
        if expected_version is not None and booking.version != expected_version:
            raise Conflict(booking_id, expected_version, booking.version)

        self._check_successor(booking, target)
        if (booking.status, target) in _RESOLVER_ONLY:
            raise InvalidTransition(
                booking.status.value, target.value,
                "a disputed booking is settled only by dispute resolution",
            )
        self._check_actor(booking, actor, target, now)
        self._check_not_settling(booking)

        if target in _SETTLING_TARGETS:
            return self._settle_and_commit(booking, actor, target, now)

        if target == BookingStatus.DISPUTED and not (reason and reason.strip()):
            raise ValueError("Opening a dispute requires a reason")

        updated = self._store.compare_and_set(
            booking_id, booking.version, now=now, status=target,
        )
        if target == BookingStatus.DISPUTED:
            self._disputes.open(booking_id, actor, reason.strip(), now)
            self._bus.record(
                EventKind.DISPUTE_OPENED,
                actor.party_id,
                {"booking_id": booking_id, "reason": reason.strip(),
                 "opened_by_role": actor.role.value},
                now=now,
            )
        self._emit(booking.status, updated, actor, now)
        return updated

    def apply_adjudication(
        self,
        booking_id: str,
        adjudicator: Actor,
        target: BookingStatus,
        on_guarded: Optional[Callable[[], None]] = None,
    ) -> Booking:
        """Move a disputed booking to its adjudicated terminal status.

        Only the dispute resolver calls this. Admin role is required.
        on_guarded runs after the guards pass and before any money moves.
        """
        now = self._clock()
        booking = self._store.get(booking_id)
        if booking.status != BookingStatus.DISPUTED:
            raise InvalidTransition(
                booking.status.value, target.value, "booking is not disputed",
            )
        if (booking.status, target) not in _RESOLVER_ONLY:
            raise InvalidTransition(booking.status.value, target.value)
        if adjudicator.role != ActorRole.ADMIN:
            self._forbid(booking, adjudicator, target, "only an admin may resolve a dispute", now)
        self._check_not_settling(booking)
        if on_guarded is not None:
            on_guarded()
        return self._settle_and_commit(booking, adjudicator, target, now)

    def resume_settlement(self, booking_id: str, actor: Optional[Actor] = None) -> Booking:
        """Finish a completion or cancellation whose outcome was pending.

        The commit is attributed to actor, or to the system when omitted.
        """
        now = self._clock()
        booking = self._store.get(booking_id)
        target = booking.settlement_target
        if target not in _SETTLING_TARGETS:
            raise InvalidTransition(
                booking.status.value,
                target.value if target else booking.status.value,
                "no completion or cancellation awaiting settlement",
            )
        return self._settle_and_commit(booking, actor or Actor.system(), target, now)

    # ------------------------------------------------------------------
    # Settlement reservation
    # ------------------------------------------------------------------

    def reserve_settlement(self, booking: Booking, target: BookingStatus) -> Booking:
        """Mark booking as settling towards target.

        Re-reserving for the same target returns the booking unchanged so
        that a pending settlement can be resumed.
        """
        if booking.settlement_target == target:
            return booking
        self._check_not_settling(booking)
        now = self._clock()
        reserved = self._store.compare_and_set(
            booking.booking_id, booking.version, settlement_target=target,
        )
        self._bus.record(
            EventKind.SETTLEMENT_RESERVED,
            "system",
            {"booking_id": booking.booking_id, "target": target.value},
            now=now,
        )
        return reserved

    def commit_settlement(self, reserved: Booking, actor: Actor) -> Booking:
        """Apply the reserved status once the money movement succeeded."""
        target = reserved.settlement_target
        if target is None:
            raise InvalidTransition(
                reserved.status.value, reserved.status.value,
                "no settlement reserved",
            )
        now = self._clock()
        updated = self._store.compare_and_set(
            reserved.booking_id,
            reserved.version,
            now=now,
            status=target,
            settlement_target=None,
        )
        self._emit(reserved.status, updated, actor, now)
        return updated

    def abandon_settlement(self, reserved: Booking) -> Booking:
        """Clear a reservation after a declined money movement."""
        now = self._clock()
        updated = self._store.compare_and_set(
            reserved.booking_id, reserved.version, settlement_target=None,
        )
        self._bus.record(
            EventKind.SETTLEMENT_ABANDONED,
            "system",
            {"booking_id": reserved.booking_id,
             "target": reserved.settlement_target.value if reserved.settlement_target else None},
            now=now,
        )
        return updated

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check_successor(self, booking: Booking, target: BookingStatus) -> None:
        if not self.is_valid_edge(booking.status, target):
            allowed = ", ".join(
                s.value for s in sorted(self.valid_transitions(booking.status),
                                        key=lambda x: x.value)
            )
            raise InvalidTransition(
                booking.status.value, target.value,
                f"allowed from {booking.status.value}: [{allowed}]",
            )

    def _check_not_settling(self, booking: Booking) -> None:
        if booking.settlement_target is not None:
            raise Conflict(
                booking.booking_id,
                detail=f"settlement towards {booking.settlement_target.value} in progress",
            )

    def _check_actor(
        self,
        booking: Booking,
        actor: Actor,
        target: BookingStatus,
        now: datetime,
    ) -> None:
        is_client = actor.role == ActorRole.CLIENT and actor.party_id == booking.client_id
        is_stylist = actor.role == ActorRole.STYLIST and actor.party_id == booking.stylist_id

        if target in (BookingStatus.APPROVED, BookingStatus.REJECTED):
            if not is_stylist:
                self._forbid(booking, actor, target, "only the booked stylist may respond", now)
        elif target == BookingStatus.CONFIRMED:
            self._forbid(
                booking, actor, target,
                "confirmation follows payment capture and cannot be requested", now,
            )
        elif target == BookingStatus.SATISFIED:
            if not is_client:
                self._forbid(booking, actor, target, "only the client may mark satisfied", now)
        elif target == BookingStatus.DISPUTED:
            if not (is_client or is_stylist):
                self._forbid(
                    booking, actor, target,
                    "only the client or stylist on the booking may open a dispute", now,
                )
        elif target == BookingStatus.COMPLETED:
            if not is_stylist:
                self._forbid(booking, actor, target, "only the booked stylist may complete", now)
        elif target == BookingStatus.CANCELLED:
            if actor.role == ActorRole.ADMIN:
                return
            if not is_client:
                self._forbid(
                    booking, actor, target, "only the client or an admin may cancel", now,
                )
            if booking.scheduled_at <= now:
                self._forbid(
                    booking, actor, target,
                    "the appointment time has passed; cancellation needs an admin", now,
                )

    def _forbid(
        self,
        booking: Booking,
        actor: Actor,
        target: BookingStatus,
        detail: str,
        now: datetime,
    ) -> None:
        logger.warning(
            "Forbidden transition on booking %s: %s %s attempted %s → %s (%s)",
            booking.booking_id, actor.role.value, actor.party_id,
            booking.status.value, target.value, detail,
        )
        self._bus.record(
            EventKind.FORBIDDEN_ATTEMPT,
            actor.party_id,
            {
                "booking_id": booking.booking_id,
                "actor_role": actor.role.value,
                "from_status": booking.status.value,
                "to_status": target.value,
                "detail": detail,
            },
            now=now,
        )
        raise Forbidden(
            f"{actor.role.value} {actor.party_id} may not move booking "
            f"{booking.booking_id} to {target.value}: {detail}"
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settle_and_commit(
        self,
        booking: Booking,
        actor: Actor,
        target: BookingStatus,
        now: datetime,
    ) -> Booking:
        reserved = self.reserve_settlement(booking, target)
        if self._settlement is not None:
            try:
                if target == BookingStatus.COMPLETED:
                    self._settlement.release_on_completion(booking.booking_id, now=now)
                else:
                    self._settlement.reverse_on_cancellation(booking.booking_id, now=now)
            except (PaymentDeclined, AlreadySettled):
                self.abandon_settlement(reserved)
                raise
        return self.commit_settlement(reserved, actor)

    def _emit(
        self,
        from_status: BookingStatus,
        updated: Booking,
        actor: Actor,
        now: datetime,
    ) -> None:
        event = LifecycleEvent(
            booking_id=updated.booking_id,
            from_status=from_status,
            to_status=updated.status,
            actor_role=actor.role,
            actor_id=actor.party_id,
            timestamp=now,
        )
        logger.info(
            "Booking %s: %s → %s by %s %s (v%d)",
            updated.booking_id, from_status.value, updated.status.value,
            actor.role.value, actor.party_id, updated.version,
        )
        self._bus.publish(event)
