"""Request and response bodies for the HTTP API."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from beautybook.models.booking import ActorRole, BookingStatus, DisputeOutcome
from beautybook.models.wallet import TransactionStatus, TransactionType


class BookingCreateRequest(BaseModel):
    stylist_id: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)
    scheduled_at: datetime
    price: Decimal = Field(..., gt=0)
    currency: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None


class BookingTransitionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_status: BookingStatus = Field(..., alias="targetStatus")
    reason: Optional[str] = None
    version: Optional[int] = Field(default=None, ge=1)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    client_id: str
    stylist_id: str
    service: str
    scheduled_at: datetime
    price: Decimal
    currency: str
    status: BookingStatus
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    settlement_target: Optional[BookingStatus] = None
    location: Optional[str] = None
    notes: Optional[str] = None


class BookingListResponse(BaseModel):
    total: int
    bookings: list[BookingResponse] = Field(default_factory=list)


class CaptureRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    currency: Optional[str] = None


class WalletTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tx_id: str
    party_id: str
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    reference: str
    created_at: datetime
    booking_id: Optional[str] = None
    external_id: Optional[str] = None
    description: str = ""


class CaptureResponse(BaseModel):
    booking: BookingResponse
    transaction: WalletTransactionResponse


class DisputeOpenRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    version: Optional[int] = Field(default=None, ge=1)


class DisputeResolveRequest(BaseModel):
    outcome: DisputeOutcome
    note: Optional[str] = None


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    reason: str
    opened_by: str
    opened_by_role: ActorRole
    opened_at: datetime
    outcome: Optional[DisputeOutcome] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None


class DisputeResolutionResponse(BaseModel):
    booking: BookingResponse
    dispute: DisputeResponse


class DisputeListResponse(BaseModel):
    total: int
    disputes: list[DisputeResponse] = Field(default_factory=list)


class WalletBalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    party_id: str
    currency: str
    available: Decimal
    held: Decimal


class WalletTransactionListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    transactions: list[WalletTransactionResponse] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    detail: str
