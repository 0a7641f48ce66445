"""HTTP surface of the booking engine (FastAPI).

Engine errors are mapped to status codes here and nowhere else:

    BookingNotFound                          404
    Forbidden                                403
    InvalidTransition, Conflict,
    AlreadySettled, SlotUnavailable          409
    CaptureFailed, PayoutFailed, RefundFailed 402
    SettlementPending                        202
    ValueError                               422
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse

from beautybook import __version__
from beautybook.api.routers import bookings, disputes, wallets
from beautybook.errors import (
    AlreadySettled,
    BookingError,
    BookingNotFound,
    Conflict,
    Forbidden,
    InvalidTransition,
    PaymentDeclined,
    SettlementPending,
    SlotUnavailable,
)
from beautybook.service import BookingService

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[BookingError], int] = {
    BookingNotFound: status.HTTP_404_NOT_FOUND,
    Forbidden: status.HTTP_403_FORBIDDEN,
    InvalidTransition: status.HTTP_409_CONFLICT,
    Conflict: status.HTTP_409_CONFLICT,
    AlreadySettled: status.HTTP_409_CONFLICT,
    SlotUnavailable: status.HTTP_409_CONFLICT,
    PaymentDeclined: status.HTTP_402_PAYMENT_REQUIRED,
}


def create_api_router() -> APIRouter:
    router = APIRouter()
    router.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
    router.include_router(disputes.router, prefix="/disputes", tags=["disputes"])
    router.include_router(wallets.router, prefix="/wallets", tags=["wallets"])
    return router


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    for error_type in type(exc).__mro__:
        code = _STATUS_BY_ERROR.get(error_type)
        if code is not None:
            break
    else:
        code = status.HTTP_400_BAD_REQUEST
    if code == status.HTTP_409_CONFLICT:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def settlement_pending_handler(request: Request, exc: SettlementPending) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "detail": str(exc),
            "booking_id": exc.booking_id,
            "reference": exc.reference,
        },
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc)},
    )


def create_app(service: Optional[BookingService] = None) -> FastAPI:
    app = FastAPI(
        title="BeautyBook",
        description="Booking lifecycle and escrow settlement engine",
        version=__version__,
    )
    app.state.service = service or BookingService()

    app.add_exception_handler(SettlementPending, settlement_pending_handler)
    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    app.include_router(create_api_router())

    @app.get("/health", summary="Liveness probe")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app


__all__ = [
    "create_api_router",
    "create_app",
]
