"""Tests for the booking state machine — proves guards and concurrency hold."""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from beautybook.errors import Conflict, Forbidden, InvalidTransition
from beautybook.lifecycle.state_machine import BookingStateMachine
from beautybook.models.booking import (
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    TERMINAL_STATUSES,
)
from beautybook.persistence.booking_store import BookingStore
from beautybook.persistence.event_log import EventBus, EventKind

CLIENT = Actor(ActorRole.CLIENT, "cli_1")
STYLIST = Actor(ActorRole.STYLIST, "sty_1")
OTHER_STYLIST = Actor(ActorRole.STYLIST, "sty_2")
ADMIN = Actor(ActorRole.ADMIN, "adm_1")


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self) -> None:
        self.now = _now()

    def __call__(self) -> datetime:
        return self.now


def _machine(status: BookingStatus = BookingStatus.PENDING):
    """A machine without settlement wiring plus one booking in `status`."""
    store = BookingStore()
    bus = EventBus()
    clock = _Clock()
    store.insert(Booking(
        booking_id="bk_1",
        client_id="cli_1",
        stylist_id="sty_1",
        service="Knotless braids",
        scheduled_at=_now() + timedelta(days=2),
        price=Decimal("100.00"),
        currency="GHS",
        status=status,
        created_at=_now(),
        updated_at=_now(),
    ))
    return BookingStateMachine(store, bus, clock=clock), store, bus, clock


class TestTransitionTable:
    def test_successors(self) -> None:
        valid = BookingStateMachine.valid_transitions
        assert valid(BookingStatus.PENDING) == {
            BookingStatus.APPROVED, BookingStatus.REJECTED, BookingStatus.CANCELLED,
        }
        assert valid(BookingStatus.APPROVED) == {
            BookingStatus.CONFIRMED, BookingStatus.CANCELLED,
        }
        assert valid(BookingStatus.CONFIRMED) == {
            BookingStatus.SATISFIED, BookingStatus.DISPUTED, BookingStatus.CANCELLED,
        }
        assert valid(BookingStatus.SATISFIED) == {
            BookingStatus.COMPLETED, BookingStatus.DISPUTED,
        }
        assert valid(BookingStatus.DISPUTED) == {
            BookingStatus.COMPLETED, BookingStatus.CANCELLED,
        }

    def test_terminal_statuses_have_no_successors(self) -> None:
        for status in TERMINAL_STATUSES:
            assert BookingStateMachine.valid_transitions(status) == set()
            assert BookingStateMachine.is_terminal(status)

    def test_every_status_reachable_from_pending(self) -> None:
        seen = {BookingStatus.PENDING}
        queue = deque([BookingStatus.PENDING])
        while queue:
            for nxt in BookingStateMachine.valid_transitions(queue.popleft()):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        assert seen == set(BookingStatus)

    def test_every_live_status_can_terminate(self) -> None:
        for status in BookingStatus:
            if status in TERMINAL_STATUSES:
                continue
            frontier = {status}
            reached_terminal = False
            for _ in range(len(BookingStatus)):
                frontier = {
                    n for s in frontier for n in BookingStateMachine.valid_transitions(s)
                }
                if frontier & TERMINAL_STATUSES:
                    reached_terminal = True
                    break
            assert reached_terminal, status


class TestHappyTransitions:
    def test_stylist_approves(self) -> None:
        machine, store, bus, clock = _machine()
        clock.now = _now() + timedelta(minutes=3)
        booking = machine.request_transition("bk_1", STYLIST, BookingStatus.APPROVED)
        assert booking.status == BookingStatus.APPROVED
        assert booking.version == 2
        assert booking.updated_at == clock.now

    def test_transition_emits_lifecycle_event(self) -> None:
        machine, _, bus, _ = _machine()
        machine.request_transition("bk_1", STYLIST, BookingStatus.REJECTED)
        events = bus.log.events(EventKind.BOOKING_TRANSITION)
        assert len(events) == 1
        assert events[0].payload["from_status"] == "pending"
        assert events[0].payload["to_status"] == "rejected"
        assert events[0].payload["actor_role"] == "stylist"
        assert events[0].payload["actor_id"] == "sty_1"

    def test_client_marks_satisfied(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.CONFIRMED)
        booking = machine.request_transition("bk_1", CLIENT, BookingStatus.SATISFIED)
        assert booking.status == BookingStatus.SATISFIED

    def test_completion_without_settlement_wiring(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.SATISFIED)
        booking = machine.request_transition("bk_1", STYLIST, BookingStatus.COMPLETED)
        assert booking.status == BookingStatus.COMPLETED
        assert booking.settlement_target is None
        # reserve + commit
        assert booking.version == 3

    def test_stylist_opens_dispute_with_reason(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.CONFIRMED)
        booking = machine.request_transition(
            "bk_1", STYLIST, BookingStatus.DISPUTED, reason="Client no-show",
        )
        assert booking.status == BookingStatus.DISPUTED
        assert machine.disputes.get("bk_1").opened_by == "sty_1"


class TestInvalidTransitions:
    def test_skip_ahead_rejected(self) -> None:
        machine, _, _, _ = _machine()
        with pytest.raises(InvalidTransition, match="pending → completed"):
            machine.request_transition("bk_1", STYLIST, BookingStatus.COMPLETED)

    def test_terminal_booking_frozen(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.REJECTED)
        for target in BookingStatus:
            with pytest.raises(InvalidTransition):
                machine.request_transition("bk_1", ADMIN, target)

    def test_satisfied_cannot_be_cancelled(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.SATISFIED)
        with pytest.raises(InvalidTransition):
            machine.request_transition("bk_1", ADMIN, BookingStatus.CANCELLED)

    def test_disputed_exits_only_through_resolver(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.DISPUTED)
        with pytest.raises(InvalidTransition, match="dispute resolution"):
            machine.request_transition("bk_1", STYLIST, BookingStatus.COMPLETED)
        with pytest.raises(InvalidTransition, match="dispute resolution"):
            machine.request_transition("bk_1", ADMIN, BookingStatus.CANCELLED)

    def test_invalid_transition_does_not_write(self) -> None:
        machine, store, _, _ = _machine()
        with pytest.raises(InvalidTransition):
            machine.request_transition("bk_1", CLIENT, BookingStatus.SATISFIED)
        assert store.get("bk_1").version == 1

    def test_dispute_requires_reason(self) -> None:
        machine, store, _, _ = _machine(BookingStatus.CONFIRMED)
        with pytest.raises(ValueError, match="reason"):
            machine.request_transition("bk_1", CLIENT, BookingStatus.DISPUTED, reason="  ")
        assert store.get("bk_1").status == BookingStatus.CONFIRMED


class TestRoleEnforcement:
    def test_client_cannot_approve(self) -> None:
        machine, store, _, _ = _machine()
        with pytest.raises(Forbidden):
            machine.request_transition("bk_1", CLIENT, BookingStatus.APPROVED)
        assert store.get("bk_1").status == BookingStatus.PENDING

    def test_other_stylist_cannot_approve(self) -> None:
        machine, _, _, _ = _machine()
        with pytest.raises(Forbidden):
            machine.request_transition("bk_1", OTHER_STYLIST, BookingStatus.APPROVED)

    def test_nobody_requests_confirmation(self) -> None:
        for actor in (CLIENT, STYLIST, ADMIN, Actor.system()):
            machine, _, _, _ = _machine(BookingStatus.APPROVED)
            with pytest.raises(Forbidden):
                machine.request_transition("bk_1", actor, BookingStatus.CONFIRMED)

    def test_stylist_cannot_mark_satisfied(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.CONFIRMED)
        with pytest.raises(Forbidden):
            machine.request_transition("bk_1", STYLIST, BookingStatus.SATISFIED)

    def test_client_cannot_complete(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.SATISFIED)
        with pytest.raises(Forbidden):
            machine.request_transition("bk_1", CLIENT, BookingStatus.COMPLETED)

    def test_admin_cannot_open_dispute(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.CONFIRMED)
        with pytest.raises(Forbidden):
            machine.request_transition("bk_1", ADMIN, BookingStatus.DISPUTED, reason="x")

    def test_stylist_cannot_cancel(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.CONFIRMED)
        with pytest.raises(Forbidden):
            machine.request_transition("bk_1", STYLIST, BookingStatus.CANCELLED)

    def test_forbidden_is_audited(self, caplog) -> None:
        machine, _, bus, _ = _machine()
        with caplog.at_level(logging.WARNING, logger="beautybook.lifecycle.state_machine"):
            with pytest.raises(Forbidden):
                machine.request_transition("bk_1", CLIENT, BookingStatus.APPROVED)
        assert "Forbidden transition on booking bk_1" in caplog.text
        attempts = bus.log.events(EventKind.FORBIDDEN_ATTEMPT)
        assert len(attempts) == 1
        assert attempts[0].actor_id == "cli_1"
        assert attempts[0].payload["to_status"] == "approved"

    def test_invalid_checked_before_role(self) -> None:
        machine, _, bus, _ = _machine()
        with pytest.raises(InvalidTransition):
            machine.request_transition("bk_1", CLIENT, BookingStatus.COMPLETED)
        assert bus.log.events(EventKind.FORBIDDEN_ATTEMPT) == []


class TestCancellationWindow:
    def test_client_cancels_before_appointment(self) -> None:
        machine, _, _, _ = _machine(BookingStatus.APPROVED)
        booking = machine.request_transition("bk_1", CLIENT, BookingStatus.CANCELLED)
        assert booking.status == BookingStatus.CANCELLED

    def test_client_cannot_cancel_after_start(self) -> None:
        machine, _, _, clock = _machine(BookingStatus.CONFIRMED)
        clock.now = _now() + timedelta(days=2)
        with pytest.raises(Forbidden, match="appointment time has passed"):
            machine.request_transition("bk_1", CLIENT, BookingStatus.CANCELLED)

    def test_admin_cancels_any_time(self) -> None:
        machine, _, _, clock = _machine(BookingStatus.CONFIRMED)
        clock.now = _now() + timedelta(days=5)
        booking = machine.request_transition("bk_1", ADMIN, BookingStatus.CANCELLED)
        assert booking.status == BookingStatus.CANCELLED

    def test_other_client_cannot_cancel(self) -> None:
        machine, _, _, _ = _machine()
        with pytest.raises(Forbidden):
            machine.request_transition(
                "bk_1", Actor(ActorRole.CLIENT, "cli_2"), BookingStatus.CANCELLED,
            )


class TestOptimisticConcurrency:
    def test_stale_expected_version(self) -> None:
        machine, _, _, _ = _machine()
        with pytest.raises(Conflict):
            machine.request_transition(
                "bk_1", STYLIST, BookingStatus.APPROVED, expected_version=7,
            )

    def test_matching_expected_version(self) -> None:
        machine, _, _, _ = _machine()
        booking = machine.request_transition(
            "bk_1", STYLIST, BookingStatus.APPROVED, expected_version=1,
        )
        assert booking.version == 2

    def test_reservation_blocks_other_transitions(self) -> None:
        machine, store, _, _ = _machine(BookingStatus.SATISFIED)
        machine.reserve_settlement(store.get("bk_1"), BookingStatus.COMPLETED)
        with pytest.raises(Conflict, match="settlement towards completed"):
            machine.request_transition("bk_1", CLIENT, BookingStatus.DISPUTED, reason="late")

    def test_abandon_clears_reservation(self) -> None:
        machine, store, bus, _ = _machine(BookingStatus.SATISFIED)
        reserved = machine.reserve_settlement(store.get("bk_1"), BookingStatus.COMPLETED)
        restored = machine.abandon_settlement(reserved)
        assert restored.settlement_target is None
        assert restored.status == BookingStatus.SATISFIED
        assert len(bus.log.events(EventKind.SETTLEMENT_ABANDONED)) == 1

    def test_racing_responses_exactly_one_wins(self) -> None:
        machine, store, bus, _ = _machine()
        barrier = threading.Barrier(8)
        results: list[object] = []
        lock = threading.Lock()

        def respond(target: BookingStatus) -> None:
            barrier.wait()
            try:
                outcome: object = machine.request_transition("bk_1", STYLIST, target)
            except (Conflict, InvalidTransition) as exc:
                outcome = exc
            with lock:
                results.append(outcome)

        targets = [BookingStatus.APPROVED, BookingStatus.REJECTED] * 4
        threads = [threading.Thread(target=respond, args=(t,)) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if isinstance(r, Booking)]
        assert len(winners) == 1
        assert store.get("bk_1").status == winners[0].status
        assert store.get("bk_1").version == 2
        assert len(bus.log.events(EventKind.BOOKING_TRANSITION)) == 1
