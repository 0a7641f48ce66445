"""Dispute records and adjudication.

A dispute is opened by the client or stylist on a confirmed or satisfied
booking and freezes normal progression. Only an admin can close it, and
the only exits are the two terminal outcomes: complete and pay the
stylist, or cancel and refund the client. The money movement runs
through the same settlement path as an ordinary completion or
cancellation, so a dispute can never pay out twice.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

from beautybook.errors import (
    AlreadySettled,
    BookingNotFound,
    Conflict,
    Forbidden,
    PaymentDeclined,
    SettlementPending,
)
from beautybook.models.booking import (
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    DisputeOutcome,
    DisputeRecord,
)
from beautybook.persistence.event_log import EventBus, EventKind

if TYPE_CHECKING:
    from beautybook.lifecycle.state_machine import BookingStateMachine

logger = logging.getLogger(__name__)

_OUTCOME_TARGETS = {
    DisputeOutcome.COMPLETE_AND_PAY: BookingStatus.COMPLETED,
    DisputeOutcome.CANCEL_AND_REFUND: BookingStatus.CANCELLED,
}


class DisputeRegistry:
    """Thread-safe store of dispute records, one per booking."""

    def __init__(self) -> None:
        self._records: dict[str, DisputeRecord] = {}
        self._lock = threading.Lock()

    def open(
        self,
        booking_id: str,
        actor: Actor,
        reason: str,
        now: datetime,
    ) -> DisputeRecord:
        with self._lock:
            if booking_id in self._records:
                raise ValueError(f"Booking {booking_id} has already been disputed")
            record = DisputeRecord(
                booking_id=booking_id,
                reason=reason,
                opened_by=actor.party_id,
                opened_by_role=actor.role,
                opened_at=now,
            )
            self._records[booking_id] = record
            return record

    def decide(
        self,
        booking_id: str,
        adjudicator: Actor,
        outcome: DisputeOutcome,
        note: Optional[str],
    ) -> DisputeRecord:
        """Record an admin's decision ahead of its settlement."""
        with self._lock:
            record = self._get(booking_id)
            if record.is_decided:
                raise Conflict(
                    booking_id,
                    detail=f"dispute already decided: {record.outcome.value}",
                )
            record.outcome = outcome
            record.resolved_by = adjudicator.party_id
            record.resolution_note = note
            return record

    def withdraw(self, booking_id: str) -> DisputeRecord:
        """Forget a decision whose settlement was declined."""
        with self._lock:
            record = self._get(booking_id)
            record.outcome = None
            record.resolved_by = None
            record.resolution_note = None
            return record

    def mark_resolved(self, booking_id: str, now: datetime) -> DisputeRecord:
        with self._lock:
            record = self._get(booking_id)
            record.resolved_at = now
            return record

    def get(self, booking_id: str) -> DisputeRecord:
        with self._lock:
            return self._get(booking_id)

    def find(self, booking_id: str) -> Optional[DisputeRecord]:
        with self._lock:
            return self._records.get(booking_id)

    def records(self, resolved: Optional[bool] = None) -> list[DisputeRecord]:
        """Disputes ordered by opening time; optionally only open or resolved."""
        with self._lock:
            records = list(self._records.values())
        if resolved is not None:
            records = [r for r in records if r.is_resolved == resolved]
        return sorted(records, key=lambda r: r.opened_at)

    def all(self) -> list[DisputeRecord]:
        return self.records()

    def load(self, records: Iterable[DisputeRecord]) -> None:
        with self._lock:
            self._records = {r.booking_id: r for r in records}

    def _get(self, booking_id: str) -> DisputeRecord:
        record = self._records.get(booking_id)
        if record is None:
            raise BookingNotFound(f"No dispute recorded for booking {booking_id}")
        return record


class DisputeResolver:
    """Opens and adjudicates disputes on top of the booking state machine.

    Usage:
        resolver = DisputeResolver(machine, bus)
        resolver.open_dispute("bk_1", client, "stylist did not show up")
        resolver.resolve_dispute("bk_1", admin, DisputeOutcome.CANCEL_AND_REFUND)
    """

    def __init__(self, machine: BookingStateMachine, bus: EventBus) -> None:
        self._machine = machine
        self._bus = bus

    @property
    def registry(self) -> DisputeRegistry:
        return self._machine.disputes

    def open_dispute(
        self,
        booking_id: str,
        actor: Actor,
        reason: str,
        expected_version: Optional[int] = None,
    ) -> DisputeRecord:
        self._machine.request_transition(
            booking_id,
            actor,
            BookingStatus.DISPUTED,
            expected_version=expected_version,
            reason=reason,
        )
        return self.registry.get(booking_id)

    def resolve_dispute(
        self,
        booking_id: str,
        adjudicator: Actor,
        outcome: DisputeOutcome,
        note: Optional[str] = None,
    ) -> tuple[Booking, DisputeRecord]:
        """Apply an admin's decision.

        complete_and_pay releases escrow to the stylist (minus the
        platform fee); cancel_and_refund returns the full price to the
        client. Raises Forbidden for any non-admin actor. The decision is
        recorded before money moves; if the outcome stays unknown it is
        kept and reconcile finishes it. A declined movement reopens it.
        """
        target = _OUTCOME_TARGETS[outcome]
        if adjudicator.role != ActorRole.ADMIN:
            logger.warning(
                "Forbidden dispute resolution on booking %s by %s %s",
                booking_id, adjudicator.role.value, adjudicator.party_id,
            )
            self._bus.record(
                EventKind.FORBIDDEN_ATTEMPT,
                adjudicator.party_id,
                {
                    "booking_id": booking_id,
                    "actor_role": adjudicator.role.value,
                    "to_status": target.value,
                    "detail": "only an admin may resolve a dispute",
                },
            )
            raise Forbidden(
                f"{adjudicator.role.value} {adjudicator.party_id} may not "
                f"resolve the dispute on booking {booking_id}"
            )

        decided = []

        def decide() -> None:
            self.registry.decide(booking_id, adjudicator, outcome, note)
            decided.append(outcome)

        try:
            booking = self._machine.apply_adjudication(
                booking_id, adjudicator, target, on_guarded=decide,
            )
        except SettlementPending:
            logger.warning(
                "Dispute on booking %s decided by %s (%s); settlement pending",
                booking_id, adjudicator.party_id, outcome.value,
            )
            raise
        except (Conflict, PaymentDeclined, AlreadySettled):
            # No reservation survives these, so the dispute reopens.
            if decided:
                self.registry.withdraw(booking_id)
            raise
        return booking, self._mark_resolved(booking_id)

    def resume_decided(self, booking_id: str) -> Optional[tuple[Booking, DisputeRecord]]:
        """Finish the settlement of a decision left pending.

        Returns None when the booking carries no pending decision.
        """
        record = self.registry.find(booking_id)
        if record is None or not record.is_decided or record.is_resolved:
            return None
        adjudicator = Actor(ActorRole.ADMIN, record.resolved_by)
        try:
            booking = self._machine.resume_settlement(booking_id, adjudicator)
        except (PaymentDeclined, AlreadySettled):
            self.registry.withdraw(booking_id)
            raise
        return booking, self._mark_resolved(booking_id)

    def get_dispute(self, booking_id: str) -> DisputeRecord:
        return self.registry.get(booking_id)

    def list_disputes(self, resolved: Optional[bool] = False) -> list[DisputeRecord]:
        return self.registry.records(resolved)

    def _mark_resolved(self, booking_id: str) -> DisputeRecord:
        now = self._machine.clock()
        record = self.registry.mark_resolved(booking_id, now)
        self._bus.record(
            EventKind.DISPUTE_RESOLVED,
            record.resolved_by,
            {
                "booking_id": booking_id,
                "outcome": record.outcome.value,
                "note": record.resolution_note,
            },
            now=now,
        )
        logger.info(
            "Dispute on booking %s resolved by %s: %s",
            booking_id, record.resolved_by, record.outcome.value,
        )
        return record
