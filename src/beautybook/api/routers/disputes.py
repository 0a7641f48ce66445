"""Dispute listing for admins."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from beautybook.api.deps import get_actor, get_service
from beautybook.api.schemas import DisputeListResponse, DisputeResponse
from beautybook.models.booking import Actor, ActorRole
from beautybook.service import BookingService

router = APIRouter()


@router.get("", response_model=DisputeListResponse, summary="List disputes")
def list_disputes(
    resolved: Optional[bool] = Query(default=None),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> DisputeListResponse:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can list disputes",
        )
    records = service.list_disputes(resolved=resolved)
    return DisputeListResponse(
        total=len(records),
        disputes=[DisputeResponse.model_validate(r) for r in records],
    )
