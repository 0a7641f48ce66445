"""Payment gateway abstraction — the external collaborator that moves money.

The escrow controller never talks to a payment provider directly; it
talks to this Protocol. Adding a provider means implementing the four
calls below. Every call carries the same idempotency reference the
engine uses internally, so a provider that honours references makes
retries safe end to end.

A call that times out has an unknown outcome. The engine resolves it
with status(reference) before taking any compensating action.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol, runtime_checkable


class PaymentStatus(str, Enum):
    """Outcome reported by the payment collaborator."""

    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    UNKNOWN = "unknown"
    NOT_FOUND = "not_found"
    """No operation with this reference reached the provider."""


class PaymentOperation(str, Enum):
    CAPTURE = "capture"
    PAYOUT = "payout"
    REFUND = "refund"


@dataclass(frozen=True)
class PaymentResult:
    """What a provider says about one referenced operation."""

    status: PaymentStatus
    external_id: Optional[str] = None
    detail: str = ""


@runtime_checkable
class PaymentGateway(Protocol):
    """Abstract contract for payment providers.

    capture/payout/refund may raise TimeoutError; the escrow controller
    treats that exactly like a PaymentStatus.UNKNOWN result.
    """

    def capture(self, amount: Decimal, currency: str, reference: str) -> PaymentResult:
        """Take the client's money into escrow."""
        ...

    def payout(self, amount: Decimal, currency: str, reference: str) -> PaymentResult:
        """Pay a stylist out of escrow."""
        ...

    def refund(self, amount: Decimal, currency: str, reference: str) -> PaymentResult:
        """Return escrowed money to the client."""
        ...

    def status(self, reference: str) -> PaymentResult:
        """Idempotent lookup of a previously submitted operation."""
        ...


@dataclass(frozen=True)
class ScriptedOutcome:
    """Behaviour of the sandbox for one reference.

    status: the real outcome recorded at the provider.
    timeout: the submitting call raises TimeoutError (outcome still recorded).
    unknown_polls: how many status() lookups answer UNKNOWN before the
        real outcome becomes visible.
    """

    status: PaymentStatus = PaymentStatus.SUCCEEDED
    timeout: bool = False
    unknown_polls: int = 0


@dataclass(frozen=True)
class GatewayCall:
    operation: PaymentOperation
    amount: Decimal
    currency: str
    reference: str


class SandboxPaymentGateway:
    """In-process provider for development, the CLI and tests.

    Honours idempotency: resubmitting a reference returns the outcome
    recorded the first time, without a second money movement.

    Usage:
        gateway = SandboxPaymentGateway()
        gateway.script("booking:bk_1:capture", ScriptedOutcome(PaymentStatus.DECLINED))
    """

    def __init__(self, default: Optional[ScriptedOutcome] = None) -> None:
        self._default = default or ScriptedOutcome()
        self._scripts: Dict[str, ScriptedOutcome] = {}
        self._recorded: Dict[str, PaymentResult] = {}
        self._unknown_polls_left: Dict[str, int] = {}
        self._calls: List[GatewayCall] = []
        self._lock = threading.Lock()

    def script(self, reference: str, outcome: ScriptedOutcome) -> None:
        with self._lock:
            self._scripts[reference] = outcome

    @property
    def calls(self) -> List[GatewayCall]:
        return list(self._calls)

    def calls_for(self, reference: str) -> List[GatewayCall]:
        return [c for c in self._calls if c.reference == reference]

    def capture(self, amount: Decimal, currency: str, reference: str) -> PaymentResult:
        return self._submit(PaymentOperation.CAPTURE, amount, currency, reference)

    def payout(self, amount: Decimal, currency: str, reference: str) -> PaymentResult:
        return self._submit(PaymentOperation.PAYOUT, amount, currency, reference)

    def refund(self, amount: Decimal, currency: str, reference: str) -> PaymentResult:
        return self._submit(PaymentOperation.REFUND, amount, currency, reference)

    def status(self, reference: str) -> PaymentResult:
        with self._lock:
            recorded = self._recorded.get(reference)
            if recorded is None:
                return PaymentResult(PaymentStatus.NOT_FOUND)
            left = self._unknown_polls_left.get(reference, 0)
            if left > 0:
                self._unknown_polls_left[reference] = left - 1
                return PaymentResult(PaymentStatus.UNKNOWN)
            return recorded

    def _submit(
        self,
        operation: PaymentOperation,
        amount: Decimal,
        currency: str,
        reference: str,
    ) -> PaymentResult:
        with self._lock:
            self._calls.append(GatewayCall(operation, amount, currency, reference))
            outcome = self._scripts.get(reference, self._default)
            recorded = self._recorded.get(reference)
            if recorded is None:
                external_id = (
                    f"{operation.value}_{uuid.uuid4().hex[:10]}"
                    if outcome.status == PaymentStatus.SUCCEEDED else None
                )
                recorded = PaymentResult(outcome.status, external_id)
                self._recorded[reference] = recorded
                self._unknown_polls_left[reference] = outcome.unknown_polls
        if outcome.timeout:
            raise TimeoutError(f"Payment provider timed out on {reference}")
        return recorded
