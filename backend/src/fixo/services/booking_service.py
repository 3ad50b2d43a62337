"""Service booking lifecycle: creation, status and payment transitions.

Every state change is one conditional UPDATE guarded by the booking's
current status (or payment status) and ``version``. If another actor moved
the booking in between, nothing is written and ConcurrentTransitionError is
raised.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.domain.enums import (
    BookingActor,
    BookingEventType,
    BookingStatus,
    PaymentStatus,
    UserRole,
)
from fixo.domain.models import (
    BookingEvent,
    ProviderProfile,
    ProviderService,
    Service,
    ServiceBooking,
)
from fixo.services.assignment_service import AssignmentService
from fixo.services.booking_events import build_event, load_timeline
from fixo.services.booking_state_machine import (
    BookingNotFoundError,
    BookingStateMachine,
    BookingValidationError,
    ConcurrentTransitionError,
    InvalidTransitionError,
    PaymentStateMachine,
    TERMINAL_STATES,
    UnauthorizedTransitionError,
    parse_status,
)
from fixo.services.location_feed import LocationFeed
from fixo.services.location_store import LocationStore, StorageError
from fixo.services.notifications import (
    Actor,
    CurrentUserProvider,
    LoggingNotificationSink,
    Notice,
    NotificationSink,
)

logger = logging.getLogger(__name__)

state_machine = BookingStateMachine()
payment_machine = PaymentStateMachine()

# Placeholders for the checkout-first flow; the customer fills these in later
CHECKOUT_DEFAULT_TIME = "09:00"
CHECKOUT_DEFAULT_ADDRESS = "To be updated"


@dataclass(frozen=True)
class CheckoutSession:
    """What the payment provider hands back for a new checkout."""

    id: str
    url: str


def _payment_enum(booking: ServiceBooking) -> PaymentStatus:
    value = booking.payment_status
    if isinstance(value, PaymentStatus):
        return value
    return PaymentStatus(value)


def _ensure_payable(booking: ServiceBooking) -> None:
    """Raise InvalidTransitionError unless a checkout may start for the booking."""
    status = parse_status(booking.status)
    current = _payment_enum(booking)
    if status == BookingStatus.CANCELLED:
        raise InvalidTransitionError(current, PaymentStatus.PROCESSING, "Booking is cancelled")
    if current != PaymentStatus.PROCESSING:
        payment_machine.validate_transition(status, current, PaymentStatus.PROCESSING)


class BookingService:
    """Role-gated operations on service bookings for the current user."""

    def __init__(
        self,
        db: AsyncSession,
        user_provider: CurrentUserProvider,
        notifier: Optional[NotificationSink] = None,
        feed: Optional[LocationFeed] = None,
    ):
        self.db = db
        self.user_provider = user_provider
        self.notifier = notifier or LoggingNotificationSink()
        self.feed = feed
        self.assignment = AssignmentService(db, user_provider, self.notifier)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require_actor(self) -> Actor:
        actor = self.user_provider.current_user()
        if actor is None:
            raise UnauthorizedTransitionError("You must be signed in")
        return actor

    async def _get_booking(self, booking_id: str) -> ServiceBooking:
        booking = await self.db.get(ServiceBooking, booking_id, populate_existing=True)
        if booking is None:
            raise BookingNotFoundError("Booking not found")
        return booking

    async def _provider_profile_id(self, user_id: str) -> Optional[str]:
        result = await self.db.execute(
            select(ProviderProfile.id).where(ProviderProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _booking_actor(self, booking: ServiceBooking, actor: Actor) -> BookingActor:
        """Resolve the actor's relation to the booking, or raise Unauthorized."""
        if actor.role == UserRole.ADMIN.value:
            return BookingActor.ADMIN
        if actor.role == UserRole.PROVIDER.value:
            profile_id = await self._provider_profile_id(actor.id)
            if profile_id is not None and booking.provider_id == profile_id:
                return BookingActor.PROVIDER
        if booking.customer_id == actor.id:
            return BookingActor.CUSTOMER
        raise UnauthorizedTransitionError("You do not have access to this booking")

    async def role_for(self, booking: ServiceBooking) -> BookingActor:
        """The current user's relation to the booking (raises if none)."""
        return await self._booking_actor(booking, self._require_actor())

    async def get_booking(self, booking_id: str) -> ServiceBooking:
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        await self._booking_actor(booking, actor)
        return booking

    async def list_bookings(self, status: Optional[str] = None) -> list[ServiceBooking]:
        """Bookings visible to the current user: own, assigned, or all for admins."""
        actor = self._require_actor()
        query = select(ServiceBooking)
        if actor.role == UserRole.PROVIDER.value:
            profile_id = await self._provider_profile_id(actor.id)
            query = query.where(ServiceBooking.provider_id == profile_id)
        elif actor.role != UserRole.ADMIN.value:
            query = query.where(ServiceBooking.customer_id == actor.id)
        if status:
            query = query.where(ServiceBooking.status == status)
        result = await self.db.execute(query.order_by(ServiceBooking.created_at.desc()))
        return list(result.scalars().all())

    async def allowed_transitions(self, booking: ServiceBooking) -> list[BookingStatus]:
        actor = self._require_actor()
        role = await self._booking_actor(booking, actor)
        return state_machine.get_allowed_transitions(parse_status(booking.status), role)

    async def timeline(self, booking_id: str) -> list[BookingEvent]:
        await self.get_booking(booking_id)
        return await load_timeline(self.db, booking_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def _get_active_service(self, service_id: str) -> Service:
        service = await self.db.get(Service, service_id)
        if service is None or not service.is_active:
            raise BookingNotFoundError("Service not found")
        return service

    async def _price_for(self, service: Service, provider_id: Optional[str]) -> Decimal:
        if provider_id is not None:
            result = await self.db.execute(
                select(ProviderService.custom_price).where(
                    ProviderService.provider_id == provider_id,
                    ProviderService.service_id == service.id,
                    ProviderService.is_active.is_(True),
                )
            )
            custom_price = result.scalars().first()
            if custom_price is not None:
                return Decimal(custom_price)
        return Decimal(service.base_price)

    async def create_service_booking(
        self,
        service_id: str,
        booking_date: date,
        booking_time: str,
        customer_address: str,
        customer_notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> ServiceBooking:
        """Customer books a service; a provider is pre-assigned when one offers it."""
        actor = self._require_actor()
        service = await self._get_active_service(service_id)

        today = today or date.today()
        if booking_date < today:
            raise BookingValidationError("Booking date cannot be in the past")
        if not customer_address or not customer_address.strip():
            raise BookingValidationError("Service address is required")

        provider_id = await self.assignment.auto_assign(service_id)
        booking = ServiceBooking(
            customer_id=actor.id,
            service_id=service_id,
            provider_id=provider_id,
            booking_date=booking_date,
            booking_time=booking_time,
            customer_address=customer_address.strip(),
            customer_notes=customer_notes or None,
            total_amount=await self._price_for(service, provider_id),
            status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            version=1,
        )
        self.db.add(booking)
        await self.db.flush()

        self.db.add(build_event(
            booking.id,
            BookingEventType.CREATED,
            BookingActor.CUSTOMER,
            actor.id,
            to_status=booking.status,
            data={"provider_id": provider_id, "assignment": "auto" if provider_id else None},
        ))
        await self.db.commit()
        await self.db.refresh(booking)

        logger.info(
            "Booking %s created for service %s (customer=%s, provider=%s)",
            booking.id, service_id, actor.id, provider_id,
        )
        if provider_id:
            await self.notifier.notify(Notice(
                "Booking Confirmed!",
                "Your service booking has been confirmed. You will receive a confirmation shortly.",
            ))
        else:
            await self.notifier.notify(Notice(
                "Booking Created",
                "Your booking has been created successfully. A provider will be assigned to you shortly.",
            ))
        return booking

    async def create_checkout_booking(self, service_id: str, today: Optional[date] = None) -> ServiceBooking:
        """Checkout-first flow: the booking waits on payment with no provider yet."""
        actor = self._require_actor()
        service = await self._get_active_service(service_id)

        booking = ServiceBooking(
            customer_id=actor.id,
            service_id=service_id,
            provider_id=None,
            booking_date=today or date.today(),
            booking_time=CHECKOUT_DEFAULT_TIME,
            customer_address=CHECKOUT_DEFAULT_ADDRESS,
            total_amount=Decimal(service.base_price),
            status=BookingStatus.PAYMENT_PENDING.value,
            payment_status=PaymentStatus.PROCESSING.value,
            version=1,
        )
        self.db.add(booking)
        await self.db.flush()

        self.db.add(build_event(
            booking.id,
            BookingEventType.CREATED,
            BookingActor.CUSTOMER,
            actor.id,
            to_status=booking.status,
            data={"flow": "checkout"},
        ))
        await self.db.commit()
        await self.db.refresh(booking)

        logger.info("Checkout booking %s created for service %s (customer=%s)", booking.id, service_id, actor.id)
        return booking

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    async def _write(
        self,
        booking: ServiceBooking,
        values: dict,
        events: list[BookingEvent],
    ) -> ServiceBooking:
        """Apply ``values`` only if status, payment status and version are unchanged.

        A move into a terminal status deactivates the booking's live location
        rows in the same commit.
        """
        result = await self.db.execute(
            update(ServiceBooking)
            .where(
                ServiceBooking.id == booking.id,
                ServiceBooking.status == booking.status,
                ServiceBooking.payment_status == booking.payment_status,
                ServiceBooking.version == booking.version,
            )
            .values(
                **values,
                version=booking.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            booking_id = booking.id
            await self.db.rollback()
            raise ConcurrentTransitionError(
                f"Booking {booking_id} was changed by someone else; reload and try again"
            )

        store = LocationStore(self.db, feed=self.feed)
        closed_providers: list[str] = []
        if "status" in values and parse_status(values["status"]) in TERMINAL_STATES:
            closed_providers = await store.deactivate_booking_rows(booking.id)

        for event in events:
            self.db.add(event)
        await self.db.commit()
        await self.db.refresh(booking)

        if closed_providers:
            try:
                await store.publish_deactivated(booking.id, closed_providers)
            except StorageError as e:
                logger.error("Could not publish closed location for booking %s: %s", booking.id, e)
        return booking

    async def transition_status(
        self,
        booking_id: str,
        new_status: BookingStatus,
        provider_notes: Optional[str] = None,
    ) -> ServiceBooking:
        """Move a booking along the status graph on behalf of the current user."""
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        current = parse_status(booking.status)

        state_machine.validate_transition(current, new_status, role, booking)

        values = {"status": new_status.value}
        if provider_notes is not None and role in (BookingActor.PROVIDER, BookingActor.ADMIN):
            values["provider_notes"] = provider_notes

        await self._write(booking, values, [
            build_event(
                booking.id,
                BookingEventType.STATUS_CHANGED,
                role,
                actor.id,
                from_status=current.value,
                to_status=new_status.value,
            )
        ])
        logger.info(
            "Booking %s: %s → %s (actor=%s, user=%s)",
            booking.id, current.value, new_status.value, role.value, actor.id,
        )
        await self.notifier.notify(Notice("Success", "Booking status updated successfully"))
        return booking

    async def set_payment_status(
        self,
        booking_id: str,
        new_status: PaymentStatus,
        manual: bool = False,
    ) -> ServiceBooking:
        """Admin, or the assigned provider collecting a deferred payment, sets payment status."""
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        if role == BookingActor.CUSTOMER:
            raise UnauthorizedTransitionError("Customers cannot set payment status directly")
        if manual and role != BookingActor.ADMIN:
            raise UnauthorizedTransitionError("Only admins can settle a payment manually")
        return await self._change_payment(booking, new_status, role, actor.id, manual=manual)

    async def _change_payment(
        self,
        booking: ServiceBooking,
        new_status: PaymentStatus,
        role: BookingActor,
        actor_id: Optional[str],
        manual: bool = False,
        values: Optional[dict] = None,
        data: Optional[dict] = None,
    ) -> ServiceBooking:
        current = _payment_enum(booking)
        payment_machine.validate_transition(parse_status(booking.status), current, new_status, manual)

        await self._write(booking, {"payment_status": new_status.value, **(values or {})}, [
            build_event(
                booking.id,
                BookingEventType.PAYMENT_STATUS_CHANGED,
                role,
                actor_id,
                from_status=current.value,
                to_status=new_status.value,
                data={"manual": manual, **(data or {})},
            )
        ])
        logger.info(
            "Booking %s payment: %s → %s (actor=%s, user=%s)",
            booking.id, current.value, new_status.value, role.value, actor_id,
        )
        return booking

    async def choose_pay_after_service(self, booking_id: str) -> ServiceBooking:
        """Customer defers payment until the service is completed."""
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        if role not in (BookingActor.CUSTOMER, BookingActor.ADMIN):
            raise UnauthorizedTransitionError("Only the customer can choose to pay after service")

        await self._change_payment(booking, PaymentStatus.PAY_AFTER_SERVICE, role, actor.id)
        await self.notifier.notify(Notice(
            "Payment Option Updated!", "You can now pay after the service is completed."
        ))
        return booking

    # ------------------------------------------------------------------
    # Checkout reconciliation
    # ------------------------------------------------------------------

    async def prepare_checkout(self, booking_id: str) -> ServiceBooking:
        """Load a booking the current user may start paying for.

        Called before a checkout session exists at the payment provider, so a
        cancelled or already settled booking never gets one.
        """
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        if role not in (BookingActor.CUSTOMER, BookingActor.ADMIN):
            raise UnauthorizedTransitionError("Only the customer can pay for this booking")
        _ensure_payable(booking)
        return booking

    async def attach_checkout(self, booking_id: str, checkout: CheckoutSession) -> ServiceBooking:
        """Store the checkout session id; payment is now processing."""
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        if role not in (BookingActor.CUSTOMER, BookingActor.ADMIN):
            raise UnauthorizedTransitionError("Only the customer can pay for this booking")
        _ensure_payable(booking)

        current = _payment_enum(booking)
        if current == PaymentStatus.PROCESSING:
            await self._write(booking, {"payment_id": checkout.id}, [
                build_event(
                    booking.id,
                    BookingEventType.CHECKOUT_STARTED,
                    role,
                    actor.id,
                    from_status=current.value,
                    to_status=current.value,
                    data={"session_id": checkout.id},
                )
            ])
        else:
            await self._change_payment(
                booking,
                PaymentStatus.PROCESSING,
                role,
                actor.id,
                values={"payment_id": checkout.id},
                data={"session_id": checkout.id},
            )
        logger.info("Booking %s: checkout session %s attached", booking.id, checkout.id)
        return booking

    async def find_by_payment_id(self, session_id: str) -> ServiceBooking:
        result = await self.db.execute(
            select(ServiceBooking).where(ServiceBooking.payment_id == session_id)
        )
        booking = result.scalars().first()
        if booking is None:
            raise BookingNotFoundError("No booking found for this checkout session")
        return booking

    async def complete_checkout(self, session_id: str) -> ServiceBooking:
        """Payment cleared: mark paid and confirm a checkout-first booking.

        Repeated calls for an already paid booking return it unchanged.
        """
        booking = await self.find_by_payment_id(session_id)
        await self.db.refresh(booking)
        current_payment = _payment_enum(booking)
        if current_payment == PaymentStatus.PAID:
            return booking

        current = parse_status(booking.status)
        payment_machine.validate_transition(current, current_payment, PaymentStatus.PAID)

        values = {"payment_status": PaymentStatus.PAID.value}
        events = [
            build_event(
                booking.id,
                BookingEventType.PAYMENT_STATUS_CHANGED,
                BookingActor.SYSTEM,
                None,
                from_status=current_payment.value,
                to_status=PaymentStatus.PAID.value,
                data={"session_id": session_id},
            )
        ]
        if current == BookingStatus.PAYMENT_PENDING:
            state_machine.validate_transition(current, BookingStatus.CONFIRMED, BookingActor.SYSTEM, booking)
            values["status"] = BookingStatus.CONFIRMED.value
            events.append(build_event(
                booking.id,
                BookingEventType.STATUS_CHANGED,
                BookingActor.SYSTEM,
                None,
                from_status=current.value,
                to_status=BookingStatus.CONFIRMED.value,
            ))

        await self._write(booking, values, events)
        logger.info("Booking %s: checkout %s completed, payment paid", booking.id, session_id)
        await self.notifier.notify(Notice(
            "Payment Successful!", "Your booking has been confirmed and payment processed."
        ))
        return booking

    async def cancel_checkout(self, booking_id: str) -> ServiceBooking:
        """Checkout abandoned: payment goes back to pending; status is untouched."""
        actor = self._require_actor()
        booking = await self._get_booking(booking_id)
        role = await self._booking_actor(booking, actor)
        if role not in (BookingActor.CUSTOMER, BookingActor.ADMIN):
            raise UnauthorizedTransitionError("Only the customer can cancel this checkout")
        if _payment_enum(booking) != PaymentStatus.PROCESSING:
            return booking
        return await self._change_payment(
            booking, PaymentStatus.PENDING, role, actor.id, data={"reason": "checkout_cancelled"}
        )

    async def expire_checkout(self, booking: ServiceBooking) -> ServiceBooking:
        """Cancel a checkout-first booking whose payment never completed."""
        current = parse_status(booking.status)
        state_machine.validate_transition(current, BookingStatus.CANCELLED, BookingActor.SYSTEM, booking)

        values = {"status": BookingStatus.CANCELLED.value}
        events = [
            build_event(
                booking.id,
                BookingEventType.CHECKOUT_EXPIRED,
                BookingActor.SYSTEM,
                None,
                from_status=current.value,
                to_status=BookingStatus.CANCELLED.value,
                data={"payment_id": booking.payment_id},
            )
        ]
        current_payment = _payment_enum(booking)
        if current_payment == PaymentStatus.PROCESSING:
            values["payment_status"] = PaymentStatus.FAILED.value

        await self._write(booking, values, events)
        logger.info("Booking %s: checkout expired, cancelled (actor=system)", booking.id)
        return booking
