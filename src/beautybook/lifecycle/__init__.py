"""Booking lifecycle — state machine and dispute adjudication."""

from beautybook.lifecycle.disputes import DisputeRegistry, DisputeResolver
from beautybook.lifecycle.state_machine import BookingStateMachine

__all__ = ["BookingStateMachine", "DisputeRegistry", "DisputeResolver"]
