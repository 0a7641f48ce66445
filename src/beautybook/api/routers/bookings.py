"""Booking endpoints: create, read, transition, cancel, capture, dispute."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status

from beautybook.api.deps import ensure_party_access, get_actor, get_service
from beautybook.api.schemas import (
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    BookingTransitionRequest,
    CaptureRequest,
    CaptureResponse,
    DisputeOpenRequest,
    DisputeResolutionResponse,
    DisputeResolveRequest,
    DisputeResponse,
    WalletTransactionResponse,
)
from beautybook.models.booking import Actor, ActorRole, BookingStatus
from beautybook.service import BookingService

router = APIRouter()


@router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a booking",
)
def create_booking(
    payload: BookingCreateRequest,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> BookingResponse:
    booking = service.create_booking(
        actor,
        stylist_id=payload.stylist_id,
        service=payload.service,
        scheduled_at=payload.scheduled_at,
        price=payload.price,
        currency=payload.currency,
        location=payload.location,
        notes=payload.notes,
    )
    return BookingResponse.model_validate(booking)


@router.get("", response_model=BookingListResponse, summary="List bookings")
def list_bookings(
    client_id: Optional[str] = Query(default=None),
    stylist_id: Optional[str] = Query(default=None),
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> BookingListResponse:
    # Non-admins only ever see their own side of the marketplace.
    if actor.role == ActorRole.CLIENT:
        client_id = actor.party_id
    elif actor.role == ActorRole.STYLIST:
        stylist_id = actor.party_id
    bookings = service.list_bookings(
        client_id=client_id,
        stylist_id=stylist_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    total = service.count_bookings(
        client_id=client_id, stylist_id=stylist_id, status=status_filter,
    )
    return BookingListResponse(
        total=total,
        bookings=[BookingResponse.model_validate(b) for b in bookings],
    )


@router.get("/{booking_id}", response_model=BookingResponse, summary="Get a booking")
def get_booking(
    booking_id: str = Path(...),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> BookingResponse:
    booking = service.get_booking(booking_id)
    ensure_party_access(actor, booking.client_id, booking.stylist_id)
    return BookingResponse.model_validate(booking)


@router.patch(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Request a status transition",
)
def transition_booking(
    payload: BookingTransitionRequest,
    booking_id: str = Path(...),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> BookingResponse:
    booking = service.request_transition(
        booking_id,
        actor,
        payload.target_status,
        expected_version=payload.version,
        reason=payload.reason,
    )
    return BookingResponse.model_validate(booking)


@router.delete(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Cancel a booking (refunds any captured payment)",
)
def cancel_booking(
    booking_id: str = Path(...),
    version: Optional[int] = Query(default=None, ge=1),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> BookingResponse:
    booking = service.cancel_booking(booking_id, actor, expected_version=version)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/capture",
    response_model=CaptureResponse,
    summary="Capture the client's payment into escrow",
)
def capture_payment(
    payload: Optional[CaptureRequest] = None,
    booking_id: str = Path(...),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> CaptureResponse:
    payload = payload or CaptureRequest()
    escrow = service.capture_payment(
        booking_id, actor, amount=payload.amount, currency=payload.currency,
    )
    return CaptureResponse(
        booking=BookingResponse.model_validate(service.get_booking(booking_id)),
        transaction=WalletTransactionResponse.model_validate(escrow),
    )


@router.post(
    "/{booking_id}/reconcile",
    response_model=BookingResponse,
    summary="Resume a settlement whose payment outcome was pending",
)
def reconcile_booking(
    booking_id: str = Path(...),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> BookingResponse:
    booking = service.get_booking(booking_id)
    ensure_party_access(actor, booking.client_id, booking.stylist_id)
    return BookingResponse.model_validate(service.reconcile(booking_id))


@router.post(
    "/{booking_id}/dispute",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a dispute",
)
def open_dispute(
    payload: DisputeOpenRequest,
    booking_id: str = Path(...),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> DisputeResponse:
    record = service.open_dispute(
        booking_id, actor, payload.reason, expected_version=payload.version,
    )
    return DisputeResponse.model_validate(record)


@router.post(
    "/{booking_id}/resolve",
    response_model=DisputeResolutionResponse,
    summary="Resolve a dispute (admin only)",
)
def resolve_dispute(
    payload: DisputeResolveRequest,
    booking_id: str = Path(...),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> DisputeResolutionResponse:
    booking, record = service.resolve_dispute(
        booking_id, actor, payload.outcome, note=payload.note,
    )
    return DisputeResolutionResponse(
        booking=BookingResponse.model_validate(booking),
        dispute=DisputeResponse.model_validate(record),
    )
