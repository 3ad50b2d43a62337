"""Property rental bookings: pricing, creation and owner/tenant transitions."""

import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.domain.enums import (
    BookingEventType,
    BookingKind,
    PropertyActor,
    PropertyBookingStatus,
    PropertyPaymentStatus,
    UserRole,
)
from fixo.domain.models import BookingEvent, Property, PropertyBooking
from fixo.services.booking_events import build_event, load_timeline
from fixo.services.booking_state_machine import (
    BookingNotFoundError,
    BookingValidationError,
    ConcurrentTransitionError,
    PropertyBookingStateMachine,
    UnauthorizedTransitionError,
)
from fixo.services.notifications import (
    Actor,
    CurrentUserProvider,
    LoggingNotificationSink,
    Notice,
    NotificationSink,
)

logger = logging.getLogger(__name__)

state_machine = PropertyBookingStateMachine()

DAYS_PER_MONTH = 30


def calculate_total_amount(start_date: date, end_date: date, monthly_rent) -> Decimal:
    """Rent for the stay, charged in whole 30-day months (minimum one).

    2024-01-01 to 2024-02-15 is 45 days, so two months.
    """
    if end_date <= start_date:
        raise BookingValidationError("End date must be after start date")
    days = (end_date - start_date).days
    months = max(1, math.ceil(days / DAYS_PER_MONTH))
    return Decimal(str(monthly_rent)) * months


class PropertyBookingService:
    def __init__(
        self,
        db: AsyncSession,
        user_provider: CurrentUserProvider,
        notifier: Optional[NotificationSink] = None,
    ):
        self.db = db
        self.user_provider = user_provider
        self.notifier = notifier or LoggingNotificationSink()

    calculate_total_amount = staticmethod(calculate_total_amount)

    def _require_actor(self) -> Actor:
        actor = self.user_provider.current_user()
        if actor is None:
            raise UnauthorizedTransitionError("You must be signed in")
        return actor

    async def _get_booking(self, booking_id: str) -> PropertyBooking:
        booking = await self.db.get(PropertyBooking, booking_id, populate_existing=True)
        if booking is None:
            raise BookingNotFoundError("Property booking not found")
        return booking

    async def _booking_actor(self, booking: PropertyBooking, actor: Actor) -> PropertyActor:
        if actor.role == UserRole.ADMIN.value:
            return PropertyActor.ADMIN
        prop = await self.db.get(Property, booking.property_id)
        if prop is not None and prop.owner_id == actor.id:
            return PropertyActor.OWNER
        if booking.tenant_id == actor.id:
            return PropertyActor.TENANT
        raise UnauthorizedTransitionError("You do not have access to this booking")

    async def create_property_booking(
        self,
        property_id: str,
        start_date: date,
        end_date: date,
        tenant_notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> PropertyBooking:
        """Tenant requests a stay; the owner confirms or declines later."""
        actor = self._require_actor()
        prop = await self.db.get(Property, property_id)
        if prop is None:
            raise BookingNotFoundError("Property not found")
        if not prop.is_available:
            raise BookingValidationError("Property is not available for booking")
        if prop.owner_id == actor.id:
            raise BookingValidationError("You cannot book your own property")

        today = today or date.today()
        if start_date < today:
            raise BookingValidationError("Start date cannot be in the past")
        total = calculate_total_amount(start_date, end_date, prop.monthly_rent)

        booking = PropertyBooking(
            property_id=property_id,
            tenant_id=actor.id,
            start_date=start_date,
            end_date=end_date,
            monthly_rent=prop.monthly_rent,
            total_amount=total,
            status=PropertyBookingStatus.PENDING.value,
            payment_status=PropertyPaymentStatus.PENDING.value,
            tenant_notes=tenant_notes or None,
            version=1,
        )
        self.db.add(booking)
        await self.db.flush()
        self.db.add(build_event(
            booking.id,
            BookingEventType.CREATED,
            PropertyActor.TENANT,
            actor.id,
            to_status=booking.status,
            data={"total_amount": str(total)},
            kind=BookingKind.PROPERTY,
        ))
        await self.db.commit()
        await self.db.refresh(booking)

        logger.info(
            "Property booking %s created for property %s (tenant=%s, total=%s)",
            booking.id, property_id, actor.id, total,
        )
        await self.notifier.notify(Notice(
            "Booking request sent", "The property owner will review your request shortly."
        ))
        return booking

    async def _write(self, booking: PropertyBooking, values: dict, event: BookingEvent) -> PropertyBooking:
        result = await self.db.execute(
            update(PropertyBooking)
            .where(
                PropertyBooking.id == booking.id,
                PropertyBooking.status == booking.status,
                PropertyBooking.payment_status == booking.payment_status,
                PropertyBooking.version == booking.version,
            )
            .values(**values, version=booking.version + 1, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            booking_id = booking.id
            await self.db.rollback()
            raise ConcurrentTransitionError(
                f"Property booking {booking_id} was changed by someone else; reload and try again"
            )
        self.db.add(event)
        await self.db.commit()
        await self.db.refresh(booking)
        return booking

    async def transition_status(
        self,
        booking_id: str,
        new_status: PropertyBookingStatus,
        owner_notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> PropertyBooking:
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        current = PropertyBookingStatus(booking.status)

        state_machine.validate_transition(current, new_status, role, booking, today or date.today())

        values = {"status": new_status.value}
        if owner_notes is not None and role in (PropertyActor.OWNER, PropertyActor.ADMIN):
            values["owner_notes"] = owner_notes

        await self._write(booking, values, build_event(
            booking.id,
            BookingEventType.STATUS_CHANGED,
            role,
            actor.id,
            from_status=current.value,
            to_status=new_status.value,
            kind=BookingKind.PROPERTY,
        ))
        logger.info(
            "Property booking %s: %s → %s (actor=%s, user=%s)",
            booking.id, current.value, new_status.value, role.value, actor.id,
        )
        await self.notifier.notify(Notice("Success", f"Booking {new_status.value} successfully"))
        return booking

    async def set_payment_status(
        self, booking_id: str, new_status: PropertyPaymentStatus
    ) -> PropertyBooking:
        """Owner or admin records the rent payment outcome."""
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        if role == PropertyActor.TENANT:
            raise UnauthorizedTransitionError("Tenants cannot set payment status")

        current = PropertyPaymentStatus(booking.payment_status)
        state_machine.validate_payment_transition(
            PropertyBookingStatus(booking.status), current, new_status
        )
        await self._write(booking, {"payment_status": new_status.value}, build_event(
            booking.id,
            BookingEventType.PAYMENT_STATUS_CHANGED,
            role,
            actor.id,
            from_status=current.value,
            to_status=new_status.value,
            kind=BookingKind.PROPERTY,
        ))
        logger.info(
            "Property booking %s payment: %s → %s (actor=%s, user=%s)",
            booking.id, current.value, new_status.value, role.value, actor.id,
        )
        return booking

    async def get_booking(self, booking_id: str) -> PropertyBooking:
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        await self._booking_actor(booking, actor)
        return booking

    async def list_mine(self) -> list[PropertyBooking]:
        """Bookings the current user made as a tenant."""
        actor = self._require_actor()
        result = await self.db.execute(
            select(PropertyBooking)
            .where(PropertyBooking.tenant_id == actor.id)
            .order_by(PropertyBooking.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_owned(self) -> list[PropertyBooking]:
        """Bookings against properties the current user owns."""
        actor = self._require_actor()
        result = await self.db.execute(
            select(PropertyBooking)
            .join(Property, Property.id == PropertyBooking.property_id)
            .where(Property.owner_id == actor.id)
            .order_by(PropertyBooking.created_at.desc())
        )
        return list(result.scalars().all())

    async def timeline(self, booking_id: str) -> list[BookingEvent]:
        await self.get_booking(booking_id)
        return await load_timeline(self.db, booking_id, BookingKind.PROPERTY)
