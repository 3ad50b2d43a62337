"""REST endpoints for a booking's live provider location."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.app.routes.auth import get_current_user_dep
from fixo.app.routes.bookings import booking_http_error
from fixo.domain.enums import BookingActor
from fixo.domain.models import ServiceBooking, User
from fixo.domain.schemas import LocationOut, LocationReport
from fixo.infra.database import get_db
from fixo.services.booking_service import BookingService
from fixo.services.booking_state_machine import TRACKABLE_STATES, BookingError, parse_status
from fixo.services.location_feed import location_feed
from fixo.services.location_store import LocationStore, StorageError, TrackingClosedError
from fixo.services.notifications import StaticUserProvider
from fixo.services.position_source import Coordinates

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["tracking"])

NOT_TRACKABLE = "Location can only be shared while a booking is confirmed or in progress"


async def _assigned_booking(db: AsyncSession, user: User, booking_id: str) -> ServiceBooking:
    """Load the booking and require the caller to be its assigned provider."""
    service = BookingService(db, StaticUserProvider.from_user(user))
    try:
        booking = await service.get_booking(booking_id)
        role = await service.role_for(booking)
    except BookingError as e:
        raise booking_http_error(e)
    if role != BookingActor.PROVIDER:
        raise HTTPException(status_code=403, detail="Only the assigned provider can share location")
    return booking


def _require_trackable(booking: ServiceBooking) -> None:
    if parse_status(booking.status) not in TRACKABLE_STATES:
        raise HTTPException(status_code=409, detail=NOT_TRACKABLE)


@router.post("/{booking_id}/location", response_model=LocationOut)
async def report_location(
    booking_id: str,
    body: LocationReport,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """One-shot position report from the provider's device."""
    booking = await _assigned_booking(db, user, booking_id)
    _require_trackable(booking)
    coords = Coordinates(
        latitude=body.latitude,
        longitude=body.longitude,
        accuracy=body.accuracy,
        heading=body.heading,
        speed=body.speed,
    )
    try:
        row = await LocationStore(db, feed=location_feed).upsert_location(
            booking.provider_id, booking.id, coords, reported_at=body.timestamp
        )
    except TrackingClosedError:
        raise HTTPException(status_code=409, detail=NOT_TRACKABLE)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Location update failed: {e}")
    return LocationOut.model_validate(row)


@router.post("/{booking_id}/location/deactivate")
async def deactivate_location(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Stop sharing; the last row is kept but marked inactive."""
    booking = await _assigned_booking(db, user, booking_id)
    try:
        changed = await LocationStore(db, feed=location_feed).deactivate(booking.provider_id, booking.id)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=f"Location update failed: {e}")
    return {"booking_id": booking.id, "deactivated": changed}


@router.get("/{booking_id}/location")
async def get_active_location(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """The provider's current position, or null when not sharing."""
    try:
        await BookingService(db, StaticUserProvider.from_user(user)).get_booking(booking_id)
    except BookingError as e:
        raise booking_http_error(e)
    try:
        row = await LocationStore(db).fetch_active(booking_id)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if row is None:
        return None
    return LocationOut.model_validate(row).model_dump(mode="json")
