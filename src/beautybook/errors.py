"""Error taxonomy for the booking engine.

Guard and authorisation failures are raised synchronously to the caller.
Payment ambiguity (UnknownOutcome) is resolved inside the escrow
controller and never escapes it; if it cannot be resolved the caller
sees SettlementPending and the booking keeps its settlement reservation.
"""

from __future__ import annotations

from typing import Optional


class BookingError(Exception):
    """Base class for booking engine errors."""


class BookingNotFound(BookingError):
    """Raised when a booking ID is unknown (or archived)."""


class InvalidTransition(BookingError):
    """Requested target is not a valid successor of the current status."""

    def __init__(self, current: str, target: str, detail: str = "") -> None:
        message = f"Invalid booking transition: {current} → {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.current = current
        self.target = target


class Forbidden(BookingError):
    """Actor role or identity is not authorised for this transition."""


class Conflict(BookingError):
    """Optimistic-concurrency mismatch; re-read the booking and retry."""

    def __init__(
        self,
        booking_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        detail: str = "",
    ) -> None:
        message = f"Conflict on booking {booking_id}"
        if expected_version is not None:
            message += f": expected version {expected_version}, found {actual_version}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.booking_id = booking_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class SlotUnavailable(BookingError):
    """The stylist already holds a live booking at the requested time."""


class PaymentDeclined(BookingError):
    """The payment collaborator declined a money movement."""

    def __init__(self, reference: str, detail: str = "") -> None:
        message = f"Payment declined for {reference}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.reference = reference


class CaptureFailed(PaymentDeclined):
    """The client's payment source was declined at capture."""


class PayoutFailed(PaymentDeclined):
    """A payout (or refund) to a party was declined."""


class RefundFailed(PayoutFailed):
    """The refund to the client was declined."""


class AlreadySettled(BookingError):
    """The escrow already reached the opposite terminal financial outcome."""


class SettlementPending(BookingError):
    """The external outcome of a money movement is still undetermined.

    The booking stays reserved for settlement until reconcile() resolves it.
    """

    def __init__(self, booking_id: str, reference: str) -> None:
        super().__init__(
            f"Settlement for booking {booking_id} is pending "
            f"(outcome of {reference} not yet known)"
        )
        self.booking_id = booking_id
        self.reference = reference


class UnknownOutcome(Exception):
    """Internal: an external payment call's outcome could not be determined."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Outcome unknown for {reference}")
        self.reference = reference
