"""Booking store — versioned booking records with compare-and-set writes.

Every write is conditional on the version the writer last read. The
store's lock only guards the compare-and-set itself; callers never hold
it across a payment call or any other I/O.

Storage is in-memory. The StateStore snapshots it to disk when the
service is configured with a storage path.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime
from typing import Any, Iterable, Optional

from beautybook.errors import BookingNotFound, Conflict
from beautybook.models.booking import Booking, BookingStatus


class BookingStore:
    """Thread-safe in-memory booking records.

    Usage:
        store = BookingStore()
        store.insert(booking)
        current = store.get("bk_1")
        updated = store.compare_and_set("bk_1", current.version,
                                        status=BookingStatus.APPROVED)
    """

    def __init__(self) -> None:
        self._bookings: dict[str, Booking] = {}
        self._lock = threading.Lock()

    def insert(self, booking: Booking) -> Booking:
        with self._lock:
            if booking.booking_id in self._bookings:
                raise ValueError(f"Booking ID already exists: {booking.booking_id}")
            self._bookings[booking.booking_id] = booking
        return booking

    def insert_if_slot_free(self, booking: Booking) -> bool:
        """Insert unless the stylist already has a live booking at that time.

        The check and the insert happen under one lock so that two
        clients racing for the same slot cannot both win.
        """
        with self._lock:
            for existing in self._bookings.values():
                if (
                    existing.stylist_id == booking.stylist_id
                    and existing.scheduled_at == booking.scheduled_at
                    and existing.status not in (
                        BookingStatus.CANCELLED, BookingStatus.REJECTED,
                    )
                    and existing.archived_at is None
                ):
                    return False
            if booking.booking_id in self._bookings:
                raise ValueError(f"Booking ID already exists: {booking.booking_id}")
            self._bookings[booking.booking_id] = booking
            return True

    def get(self, booking_id: str, include_archived: bool = False) -> Booking:
        booking = self._bookings.get(booking_id)
        if booking is None or (booking.archived_at is not None and not include_archived):
            raise BookingNotFound(f"Unknown booking ID: {booking_id}")
        return booking

    def compare_and_set(
        self,
        booking_id: str,
        expected_version: int,
        now: Optional[datetime] = None,
        **changes: Any,
    ) -> Booking:
        """Apply changes only if the stored version still matches.

        Raises Conflict on a version mismatch. On success the returned
        snapshot carries version + 1 and, if now is given, updated_at=now.
        """
        with self._lock:
            current = self._bookings.get(booking_id)
            if current is None:
                raise BookingNotFound(f"Unknown booking ID: {booking_id}")
            if current.version != expected_version:
                raise Conflict(booking_id, expected_version, current.version)
            if now is not None:
                changes["updated_at"] = now
            updated = dataclasses.replace(
                current, version=current.version + 1, **changes,
            )
            self._bookings[booking_id] = updated
            return updated

    def query(
        self,
        client_id: Optional[str] = None,
        stylist_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
        include_archived: bool = False,
    ) -> list[Booking]:
        """Filter bookings, newest scheduled first."""
        with self._lock:
            candidates = list(self._bookings.values())
        result = [
            b for b in candidates
            if (client_id is None or b.client_id == client_id)
            and (stylist_id is None or b.stylist_id == stylist_id)
            and (status is None or b.status == status)
            and (include_archived or b.archived_at is None)
        ]
        return sorted(result, key=lambda b: b.scheduled_at, reverse=True)

    def all(self) -> list[Booking]:
        with self._lock:
            return list(self._bookings.values())

    def load(self, bookings: Iterable[Booking]) -> None:
        with self._lock:
            self._bookings = {b.booking_id: b for b in bookings}

    @property
    def count(self) -> int:
        return len(self._bookings)
