"""Request dependencies: the service instance and the calling actor.

Authentication happens upstream; the gateway in front of this API
forwards the resolved identity as X-Actor-Role / X-Actor-Id headers.
"""
from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from beautybook.models.booking import Actor, ActorRole
from beautybook.service import BookingService


def get_service(request: Request) -> BookingService:
    return request.app.state.service


def get_actor(
    x_actor_role: Optional[str] = Header(default=None),
    x_actor_id: Optional[str] = Header(default=None),
) -> Actor:
    if not x_actor_role or not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Role and X-Actor-Id headers are required",
        )
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown actor role: {x_actor_role}",
        )
    if role == ActorRole.SYSTEM:
        # SYSTEM is engine-internal and cannot be asserted by a caller.
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="The system role cannot be used by API callers",
        )
    return Actor(role=role, party_id=x_actor_id)


def ensure_party_access(actor: Actor, *party_ids: str) -> None:
    """Admins see everything; other actors only records they are party to."""
    if actor.role == ActorRole.ADMIN or actor.party_id in party_ids:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not a party to this resource",
    )
