"""Core data models for the booking engine."""

from beautybook.models.booking import (
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    DisputeOutcome,
    DisputeRecord,
    LifecycleEvent,
    TERMINAL_STATUSES,
)
from beautybook.models.wallet import (
    TransactionStatus,
    TransactionType,
    WalletBalance,
    WalletTransaction,
)

__all__ = [
    "Actor",
    "ActorRole",
    "Booking",
    "BookingStatus",
    "DisputeOutcome",
    "DisputeRecord",
    "LifecycleEvent",
    "TERMINAL_STATUSES",
    "TransactionStatus",
    "TransactionType",
    "WalletBalance",
    "WalletTransaction",
]
