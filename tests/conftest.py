"""Shared fixtures: a controllable clock, a sandboxed service, booking factory."""

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from beautybook.config import EngineConfig
from beautybook.escrow.payment_gateway import SandboxPaymentGateway
from beautybook.models.booking import Actor, ActorRole, BookingStatus
from beautybook.service import BookingService

START = datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)

CLIENT = Actor(ActorRole.CLIENT, "cli_1")
STYLIST = Actor(ActorRole.STYLIST, "sty_1")


class FakeClock:
    """Server clock the tests can move forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig.from_dict({"status_poll_interval_seconds": 0})


@pytest.fixture
def gateway() -> SandboxPaymentGateway:
    return SandboxPaymentGateway()


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def service(config, gateway, clock, sleeps) -> BookingService:
    return BookingService(
        config=config,
        gateway=gateway,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def make_booking(service, clock):
    """Create a cli_1/sty_1 booking and drive it to the requested status."""
    counter = itertools.count(1)

    def _make(
        status: BookingStatus = BookingStatus.PENDING,
        price: str = "100.00",
        currency: str = "GHS",
    ):
        n = next(counter)
        booking = service.create_booking(
            CLIENT,
            stylist_id=STYLIST.party_id,
            service="Box braids",
            scheduled_at=clock() + timedelta(days=2, hours=n),
            price=Decimal(price),
            currency=currency,
        )
        bid = booking.booking_id
        if status == BookingStatus.PENDING:
            return booking
        if status == BookingStatus.REJECTED:
            return service.request_transition(bid, STYLIST, BookingStatus.REJECTED)
        booking = service.request_transition(bid, STYLIST, BookingStatus.APPROVED)
        if status == BookingStatus.APPROVED:
            return booking
        service.capture_payment(bid, CLIENT)
        booking = service.get_booking(bid)
        if status == BookingStatus.CONFIRMED:
            return booking
        if status == BookingStatus.DISPUTED:
            service.open_dispute(bid, CLIENT, "Stylist arrived two hours late")
            return service.get_booking(bid)
        booking = service.request_transition(bid, CLIENT, BookingStatus.SATISFIED)
        if status == BookingStatus.SATISFIED:
            return booking
        if status == BookingStatus.COMPLETED:
            return service.request_transition(bid, STYLIST, BookingStatus.COMPLETED)
        raise ValueError(f"Unsupported target status: {status}")

    return _make
