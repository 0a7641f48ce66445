"""Booking models — the booking record, actors, lifecycle events, disputes.

Booking lifecycle:
    pending → approved → confirmed → satisfied → completed
    pending → rejected
    confirmed / satisfied → disputed → completed | cancelled
    pending / approved / confirmed → cancelled

Bookings are immutable snapshots. Every write goes through the booking
store's compare-and-set, which returns a new snapshot with a bumped
version. Status is owned by the state machine; no other writer sets it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class BookingStatus(str, enum.Enum):
    """Lifecycle status of a booking."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONFIRMED = "confirmed"
    SATISFIED = "satisfied"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset = frozenset({
    BookingStatus.REJECTED,
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
})


class ActorRole(str, enum.Enum):
    """Who is asking. SYSTEM is reserved for engine-internal transitions."""
    CLIENT = "client"
    STYLIST = "stylist"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """An authenticated caller, as resolved by the surrounding API layer."""
    role: ActorRole
    party_id: str

    @classmethod
    def system(cls) -> Actor:
        return cls(role=ActorRole.SYSTEM, party_id="system")


@dataclass(frozen=True)
class Booking:
    """A client's booking of a stylist's service.

    client_id, stylist_id and price are fixed at creation.
    settlement_target is set while a money movement towards that status
    is in flight; other transitions are refused until it clears.
    """
    booking_id: str
    client_id: str
    stylist_id: str
    service: str
    scheduled_at: datetime
    price: Decimal
    currency: str
    status: BookingStatus = BookingStatus.PENDING
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    settlement_target: Optional[BookingStatus] = None
    archived_at: Optional[datetime] = None
    location: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "client_id": self.client_id,
            "stylist_id": self.stylist_id,
            "service": self.service,
            "scheduled_at": _iso(self.scheduled_at),
            "price": str(self.price),
            "currency": self.currency,
            "status": self.status.value,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "settlement_target": (
                self.settlement_target.value if self.settlement_target else None
            ),
            "archived_at": _iso(self.archived_at),
            "location": self.location,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Booking:
        target = data.get("settlement_target")
        return cls(
            booking_id=data["booking_id"],
            client_id=data["client_id"],
            stylist_id=data["stylist_id"],
            service=data["service"],
            scheduled_at=datetime.fromisoformat(data["scheduled_at"]),
            price=Decimal(data["price"]),
            currency=data["currency"],
            status=BookingStatus(data["status"]),
            version=data["version"],
            created_at=_parse(data.get("created_at")),
            updated_at=_parse(data.get("updated_at")),
            settlement_target=BookingStatus(target) if target else None,
            archived_at=_parse(data.get("archived_at")),
            location=data.get("location"),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class LifecycleEvent:
    """Emitted after every committed status change."""
    booking_id: str
    from_status: BookingStatus
    to_status: BookingStatus
    actor_role: ActorRole
    actor_id: str
    timestamp: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "actor_role": self.actor_role.value,
            "timestamp": _iso(self.timestamp),
        }


class DisputeOutcome(str, enum.Enum):
    """Adjudication outcomes available to an admin."""
    COMPLETE_AND_PAY = "complete_and_pay"
    CANCEL_AND_REFUND = "cancel_and_refund"


@dataclass
class DisputeRecord:
    """A dispute opened on a confirmed or satisfied booking.

    Mutable. outcome, resolved_by and resolution_note are filled in when an
    admin decides; resolved_at once the settlement for that decision has
    committed.
    """
    booking_id: str
    reason: str
    opened_by: str
    opened_by_role: ActorRole
    opened_at: datetime
    outcome: Optional[DisputeOutcome] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def is_decided(self) -> bool:
        return self.outcome is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "reason": self.reason,
            "opened_by": self.opened_by,
            "opened_by_role": self.opened_by_role.value,
            "opened_at": _iso(self.opened_at),
            "outcome": self.outcome.value if self.outcome else None,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution_note": self.resolution_note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DisputeRecord:
        outcome = data.get("outcome")
        return cls(
            booking_id=data["booking_id"],
            reason=data["reason"],
            opened_by=data["opened_by"],
            opened_by_role=ActorRole(data["opened_by_role"]),
            opened_at=datetime.fromisoformat(data["opened_at"]),
            outcome=DisputeOutcome(outcome) if outcome else None,
            resolved_by=data.get("resolved_by"),
            resolved_at=_parse(data.get("resolved_at")),
            resolution_note=data.get("resolution_note"),
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
