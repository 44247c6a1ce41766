"""
Booking endpoints with concurrency-safe seat reservation.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from carpool.api.deps import get_booking_ledger
from carpool.core.security import get_current_user_id
from carpool.schemas.booking import (
    BookingCancel, BookingCreate, BookingResponse, BookingStart, VerificationCodeResponse,
)
from carpool.services.booking_service import BookingLedger

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    """
    Book seats on a ride.

    Uses optimistic locking to prevent overselling under concurrent load.
    If the booking conflicts with another simultaneous booking, it retries
    up to 3 times before returning a 409 error.
    """
    return await bookings.create_booking(user_id, booking_data)


@router.get("/", response_model=list[BookingResponse])
async def list_my_bookings(
    booking_status: Optional[str] = Query(None, alias="status"),
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    """Get all bookings of the authenticated passenger."""
    return await bookings.list_passenger_bookings(user_id, status=booking_status)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    return await bookings.get_booking(booking_id, user_id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: int,
    body: BookingCancel,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    """Cancel as passenger or driver; seats go back to the ride."""
    return await bookings.cancel_booking(booking_id, user_id, body.reason)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    return await bookings.confirm_booking(booking_id, user_id)


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: int,
    body: BookingStart,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    """Driver checks the passenger in with their verification code."""
    return await bookings.start_booking(booking_id, user_id, body.verification_code)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    return await bookings.complete_booking(booking_id, user_id)


@router.post("/{booking_id}/no-show", response_model=BookingResponse)
async def mark_no_show(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    return await bookings.mark_no_show(booking_id, user_id)


@router.post("/{booking_id}/verification-code", response_model=VerificationCodeResponse)
async def regenerate_verification_code(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    booking = await bookings.regenerate_verification_code(booking_id, user_id)
    return VerificationCodeResponse(
        verification_code=booking.verification_code,
        expires_at=booking.verification_expires_at,
    )
