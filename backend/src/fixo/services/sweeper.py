"""Background jobs: abandoned checkouts and stale location rows."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.app.config import get_settings
from fixo.domain.enums import BookingStatus
from fixo.domain.models import ServiceBooking
from fixo.services.booking_service import BookingService
from fixo.services.booking_state_machine import BookingError
from fixo.services.location_feed import LocationFeed
from fixo.services.location_store import LocationStore
from fixo.services.notifications import StaticUserProvider

logger = logging.getLogger(__name__)


async def expire_abandoned_checkouts(
    db: AsyncSession,
    now: Optional[datetime] = None,
    feed: Optional[LocationFeed] = None,
) -> int:
    """Cancel payment_pending bookings older than the checkout window."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(hours=settings.checkout_expiry_hours)).replace(tzinfo=None)

    result = await db.execute(
        select(ServiceBooking).where(
            ServiceBooking.status == BookingStatus.PAYMENT_PENDING.value,
            ServiceBooking.created_at < cutoff,
        )
    )
    bookings = result.scalars().all()

    service = BookingService(db, StaticUserProvider(None), feed=feed)
    expired = 0
    for booking_id in [b.id for b in bookings]:
        booking = await db.get(ServiceBooking, booking_id, populate_existing=True)
        if booking is None or booking.status != BookingStatus.PAYMENT_PENDING.value:
            continue
        try:
            await service.expire_checkout(booking)
            expired += 1
        except BookingError as e:
            # Paid or moved by someone else since the select
            logger.info("Skipping checkout expiry for booking %s: %s", booking_id, e)
    return expired


async def deactivate_stale_locations(
    db: AsyncSession,
    feed: Optional[LocationFeed] = None,
    now: Optional[datetime] = None,
) -> int:
    """Deactivate location rows whose provider stopped reporting without stopping."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.location_stale_after_minutes)
    count = await LocationStore(db, feed=feed).deactivate_stale(cutoff)
    if count:
        logger.info("Sweeper: deactivated %d stale location rows", count)
    return count
