"""Property rental booking routes for tenants and owners."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.app.routes.auth import get_current_user_dep
from fixo.app.routes.bookings import booking_http_error
from fixo.domain.models import User
from fixo.domain.schemas import (
    BookingEventOut,
    PropertyBookingCreate,
    PropertyBookingOut,
    PropertyBookingStatusUpdate,
    PropertyPaymentStatusUpdate,
)
from fixo.infra.database import get_db
from fixo.services.booking_state_machine import BookingError
from fixo.services.notifications import StaticUserProvider
from fixo.services.property_booking_service import PropertyBookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/property-bookings", tags=["property-bookings"])


def _service_for(db: AsyncSession, user: User) -> PropertyBookingService:
    return PropertyBookingService(db, StaticUserProvider.from_user(user))


def _out(booking) -> dict:
    return PropertyBookingOut.model_validate(booking).model_dump(mode="json")


@router.post("", status_code=201)
async def create_property_booking(
    body: PropertyBookingCreate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        booking = await _service_for(db, user).create_property_booking(
            body.property_id, body.start_date, body.end_date, body.tenant_notes
        )
    except BookingError as e:
        raise booking_http_error(e)
    return _out(booking)


@router.get("/mine")
async def list_my_property_bookings(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Bookings the current user made as a tenant."""
    return [_out(b) for b in await _service_for(db, user).list_mine()]


@router.get("/owned")
async def list_owned_property_bookings(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Requests against the current user's properties."""
    return [_out(b) for b in await _service_for(db, user).list_owned()]


@router.get("/{booking_id}")
async def get_property_booking(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        booking = await _service_for(db, user).get_booking(booking_id)
    except BookingError as e:
        raise booking_http_error(e)
    return _out(booking)


@router.get("/{booking_id}/timeline")
async def get_property_booking_timeline(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        events = await _service_for(db, user).timeline(booking_id)
    except BookingError as e:
        raise booking_http_error(e)
    return [BookingEventOut.model_validate(e).model_dump(mode="json") for e in events]


@router.post("/{booking_id}/status")
async def update_property_booking_status(
    booking_id: str,
    body: PropertyBookingStatusUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Owner confirms, declines or completes; tenant cancels while pending."""
    try:
        booking = await _service_for(db, user).transition_status(
            booking_id, body.status, body.owner_notes
        )
    except BookingError as e:
        raise booking_http_error(e)
    return _out(booking)


@router.post("/{booking_id}/payment-status")
async def update_property_payment_status(
    booking_id: str,
    body: PropertyPaymentStatusUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        booking = await _service_for(db, user).set_payment_status(booking_id, body.payment_status)
    except BookingError as e:
        raise booking_http_error(e)
    return _out(booking)
