"""Escrow subsystem — payment gateway contract, fee split, escrow controller."""

from beautybook.escrow.controller import EscrowController
from beautybook.escrow.fees import FeeBreakdown, compute_fee
from beautybook.escrow.payment_gateway import (
    PaymentGateway,
    PaymentResult,
    PaymentStatus,
    SandboxPaymentGateway,
    ScriptedOutcome,
)

__all__ = [
    "EscrowController",
    "FeeBreakdown",
    "PaymentGateway",
    "PaymentResult",
    "PaymentStatus",
    "SandboxPaymentGateway",
    "ScriptedOutcome",
    "compute_fee",
]
