"""Wallet endpoints: balance and paginated transaction history."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from beautybook.api.deps import ensure_party_access, get_actor, get_service
from beautybook.api.schemas import (
    WalletBalanceResponse,
    WalletTransactionListResponse,
    WalletTransactionResponse,
)
from beautybook.models.booking import Actor
from beautybook.service import BookingService

router = APIRouter()


@router.get("/{party_id}", response_model=WalletBalanceResponse, summary="Wallet balance")
def wallet_balance(
    party_id: str = Path(...),
    currency: Optional[str] = Query(default=None),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> WalletBalanceResponse:
    ensure_party_access(actor, party_id)
    return WalletBalanceResponse.model_validate(service.wallet_balance(party_id, currency))


@router.get(
    "/{party_id}/transactions",
    response_model=WalletTransactionListResponse,
    summary="Wallet transaction history, newest first",
)
def wallet_transactions(
    party_id: str = Path(...),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
) -> WalletTransactionListResponse:
    ensure_party_access(actor, party_id)
    transactions, total = service.wallet_transactions(party_id, limit=limit, offset=offset)
    return WalletTransactionListResponse(
        total=total,
        limit=limit,
        offset=offset,
        transactions=[WalletTransactionResponse.model_validate(tx) for tx in transactions],
    )
