"""Service booking routes: create, list, transitions, payments, assignment."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.domain.models import Service, ServiceBooking, User
from fixo.domain.schemas import (
    AssignProviderRequest,
    BookingCreate,
    BookingEventOut,
    BookingOut,
    BookingStatusUpdate,
    CheckoutBookingCreate,
    CheckoutResponse,
    PaymentStatusUpdate,
)
from fixo.infra.database import get_db
from fixo.app.routes.auth import get_current_user_dep, require_role
from fixo.services.assignment_service import AlreadyAssignedError, AssignmentService
from fixo.services.booking_service import BookingService
from fixo.services.booking_state_machine import (
    BookingError,
    BookingNotFoundError,
    ConcurrentTransitionError,
    UnauthorizedTransitionError,
)
from fixo.services.location_feed import location_feed
from fixo.services.notifications import StaticUserProvider
from fixo.services.payment_service import PaymentError, PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


def get_payment_service() -> PaymentService:
    return PaymentService()


def booking_http_error(e: BookingError) -> HTTPException:
    """Map a booking error to the HTTP status the client sees."""
    if isinstance(e, BookingNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UnauthorizedTransitionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, (AlreadyAssignedError, ConcurrentTransitionError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _service_for(db: AsyncSession, user: User) -> BookingService:
    return BookingService(db, StaticUserProvider.from_user(user), feed=location_feed)


async def _serialize(service: BookingService, booking: ServiceBooking) -> dict:
    out = BookingOut.model_validate(booking)
    out.allowed_actions = [s.value for s in await service.allowed_transitions(booking)]
    return out.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_booking(
    body: BookingCreate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Customer books a service; a provider is pre-assigned when available."""
    service = _service_for(db, user)
    try:
        booking = await service.create_service_booking(
            body.service_id,
            body.booking_date,
            body.booking_time,
            body.customer_address,
            body.customer_notes,
        )
    except BookingError as e:
        raise booking_http_error(e)
    return await _serialize(service, booking)


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def create_checkout_booking(
    body: CheckoutBookingCreate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    """Checkout-first flow: create a payment_pending booking and a checkout for it."""
    service = _service_for(db, user)
    try:
        booking = await service.create_checkout_booking(body.service_id)
        svc = await db.get(Service, booking.service_id)
        checkout = await payments.create_checkout_session(
            booking.id, booking.total_amount, svc.name if svc else None, user.email
        )
        await service.attach_checkout(booking.id, checkout)
    except BookingError as e:
        raise booking_http_error(e)
    except PaymentError as e:
        # The booking stays payment_pending until the sweeper expires it
        raise HTTPException(status_code=502, detail=str(e))
    return CheckoutResponse(id=checkout.id, url=checkout.url, booking_id=booking.id)


# ---------------------------------------------------------------------------
# Checkout reconciliation
# ---------------------------------------------------------------------------


@router.get("/checkout/success")
async def checkout_success(
    session_id: str = Query(...),
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    """Success redirect: verify the session with Stripe, then mark paid/confirmed."""
    service = _service_for(db, user)
    try:
        booking = await service.find_by_payment_id(session_id)
        await service.role_for(booking)
        if not await payments.is_paid(session_id):
            raise HTTPException(status_code=400, detail="Payment has not been completed")
        booking = await service.complete_checkout(session_id)
    except BookingError as e:
        raise booking_http_error(e)
    except PaymentError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return await _serialize(service, booking)


@router.post("/{booking_id}/checkout", response_model=CheckoutResponse)
async def start_checkout(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    """Pay for an existing booking through hosted checkout."""
    service = _service_for(db, user)
    try:
        booking = await service.prepare_checkout(booking_id)
        svc = await db.get(Service, booking.service_id)
        checkout = await payments.create_checkout_session(
            booking.id, booking.total_amount, svc.name if svc else None, user.email
        )
        await service.attach_checkout(booking.id, checkout)
    except BookingError as e:
        raise booking_http_error(e)
    except PaymentError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return CheckoutResponse(id=checkout.id, url=checkout.url, booking_id=booking.id)


@router.post("/{booking_id}/checkout/cancel")
async def cancel_checkout(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Cancel redirect: the checkout was abandoned."""
    service = _service_for(db, user)
    try:
        booking = await service.cancel_checkout(booking_id)
    except BookingError as e:
        raise booking_http_error(e)
    return await _serialize(service, booking)


# ---------------------------------------------------------------------------
# Admin assignment
# ---------------------------------------------------------------------------


@router.get("/unassigned")
async def list_unassigned(
    user: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    try:
        bookings = await AssignmentService(db, StaticUserProvider.from_user(user)).list_unassigned()
    except BookingError as e:
        raise booking_http_error(e)
    return [BookingOut.model_validate(b).model_dump(mode="json") for b in bookings]


@router.post("/{booking_id}/assign")
async def assign_provider(
    booking_id: str,
    body: AssignProviderRequest,
    user: User = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    try:
        booking = await AssignmentService(db, StaticUserProvider.from_user(user)).manual_assign(
            booking_id, body.provider_id
        )
    except BookingError as e:
        raise booking_http_error(e)
    return await _serialize(_service_for(db, user), booking)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("")
async def list_bookings(
    status: Optional[str] = Query(None, description="Filter by status"),
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Bookings for the current user, role-filtered."""
    bookings = await _service_for(db, user).list_bookings(status)
    return [BookingOut.model_validate(b).model_dump(mode="json") for b in bookings]


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = _service_for(db, user)
    try:
        booking = await service.get_booking(booking_id)
    except BookingError as e:
        raise booking_http_error(e)
    return await _serialize(service, booking)


@router.get("/{booking_id}/timeline")
async def get_booking_timeline(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Audit events for a booking, oldest first."""
    try:
        events = await _service_for(db, user).timeline(booking_id)
    except BookingError as e:
        raise booking_http_error(e)
    return [BookingEventOut.model_validate(e).model_dump(mode="json") for e in events]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/status")
async def update_status(
    booking_id: str,
    body: BookingStatusUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = _service_for(db, user)
    try:
        booking = await service.transition_status(booking_id, body.status, body.provider_notes)
    except BookingError as e:
        raise booking_http_error(e)
    return await _serialize(service, booking)


@router.post("/{booking_id}/payment-status")
async def update_payment_status(
    booking_id: str,
    body: PaymentStatusUpdate,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = _service_for(db, user)
    try:
        booking = await service.set_payment_status(booking_id, body.payment_status, body.manual)
    except BookingError as e:
        raise booking_http_error(e)
    return await _serialize(service, booking)


@router.post("/{booking_id}/pay-later")
async def pay_later(
    booking_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Customer chooses to pay after the service is completed."""
    service = _service_for(db, user)
    try:
        booking = await service.choose_pay_after_service(booking_id)
    except BookingError as e:
        raise booking_http_error(e)
    return await _serialize(service, booking)
