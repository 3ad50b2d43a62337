"""Provider assignment for service bookings.

Bookings get a provider either automatically at creation (first active
provider-service link wins) or later from an admin.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.domain.enums import BookingActor, BookingEventType, BookingStatus, UserRole
from fixo.domain.models import ProviderProfile, ProviderService, ServiceBooking
from fixo.services.booking_events import build_event
from fixo.services.booking_state_machine import (
    TERMINAL_STATES,
    BookingError,
    BookingNotFoundError,
    BookingValidationError,
    UnauthorizedTransitionError,
    parse_status,
)
from fixo.services.notifications import (
    CurrentUserProvider,
    LoggingNotificationSink,
    Notice,
    NotificationSink,
)

logger = logging.getLogger(__name__)


class AlreadyAssignedError(BookingError):
    """Raised when a booking already has a provider."""


class AssignmentService:
    def __init__(
        self,
        db: AsyncSession,
        user_provider: CurrentUserProvider,
        notifier: Optional[NotificationSink] = None,
    ):
        self.db = db
        self.user_provider = user_provider
        self.notifier = notifier or LoggingNotificationSink()

    async def auto_assign(self, service_id: str) -> Optional[str]:
        """Return the provider of the first active link for the service, or None.

        Links are ordered by creation time, then provider id, so repeated
        calls against an unchanged link set return the same provider.
        """
        result = await self.db.execute(
            select(ProviderService.provider_id)
            .where(
                ProviderService.service_id == service_id,
                ProviderService.is_active.is_(True),
            )
            .order_by(ProviderService.created_at.asc(), ProviderService.provider_id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def manual_assign(self, booking_id: str, provider_id: str) -> ServiceBooking:
        """Admin assigns a provider to an unassigned booking."""
        actor = self.user_provider.current_user()
        if actor is None or actor.role != UserRole.ADMIN.value:
            raise UnauthorizedTransitionError("Only admins can assign providers")

        booking = await self.db.get(ServiceBooking, booking_id)
        if booking is None:
            raise BookingNotFoundError("Booking not found")
        if booking.provider_id:
            raise AlreadyAssignedError(f"Booking {booking_id} already has a provider")
        if parse_status(booking.status) in TERMINAL_STATES:
            raise BookingValidationError(f"Cannot assign a provider to a {booking.status} booking")

        provider = await self.db.get(ProviderProfile, provider_id)
        if provider is None:
            raise BookingValidationError("Provider not found")

        result = await self.db.execute(
            update(ServiceBooking)
            .where(
                ServiceBooking.id == booking_id,
                ServiceBooking.provider_id.is_(None),
            )
            .values(
                provider_id=provider_id,
                version=ServiceBooking.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise AlreadyAssignedError(f"Booking {booking_id} already has a provider")

        self.db.add(build_event(
            booking_id,
            BookingEventType.PROVIDER_ASSIGNED,
            BookingActor.ADMIN,
            actor.id,
            from_status=booking.status,
            to_status=booking.status,
            data={"provider_id": provider_id, "method": "manual"},
        ))
        await self.db.commit()
        await self.db.refresh(booking)

        logger.info("Booking %s: provider %s assigned (user=%s)", booking_id, provider_id, actor.id)
        await self.notifier.notify(Notice("Provider assigned", "Provider assigned to booking successfully"))
        return booking

    async def list_unassigned(self) -> list[ServiceBooking]:
        """Open bookings still waiting for a provider, newest first."""
        actor = self.user_provider.current_user()
        if actor is None or actor.role != UserRole.ADMIN.value:
            raise UnauthorizedTransitionError("Only admins can view unassigned bookings")

        result = await self.db.execute(
            select(ServiceBooking)
            .where(
                ServiceBooking.provider_id.is_(None),
                ServiceBooking.status.notin_([s.value for s in TERMINAL_STATES]),
            )
            .order_by(ServiceBooking.created_at.desc())
        )
        return list(result.scalars().all())
