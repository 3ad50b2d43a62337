"""Booking state machines: validate status and payment transitions.

Service bookings and property bookings each have a status graph gated by
actor; service bookings additionally carry an independent payment axis.
"""

from fixo.domain.enums import (
    BookingActor,
    BookingStatus,
    PaymentStatus,
    PropertyActor,
    PropertyBookingStatus,
    PropertyPaymentStatus,
)


class BookingError(Exception):
    """Base class for user-visible booking errors."""


class InvalidTransitionError(BookingError):
    """Raised when a status change is not reachable from the current state."""

    def __init__(self, current_status, target_status, reason: str):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


class UnauthorizedTransitionError(BookingError):
    """Raised when the actor's role does not permit the requested action."""


class ConcurrentTransitionError(BookingError):
    """Raised when the booking changed between read and conditional write."""


class BookingNotFoundError(BookingError):
    pass


class BookingValidationError(BookingError):
    pass


# ---------------------------------------------------------------------------
# Service booking status: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = BookingStatus
A = BookingActor

TRANSITION_MAP: dict[BookingStatus, dict[BookingStatus, set[BookingActor]]] = {
    S.PENDING: {
        S.CONFIRMED: {A.PROVIDER, A.ADMIN},
        S.CANCELLED: {A.CUSTOMER, A.PROVIDER, A.ADMIN},
    },
    S.CONFIRMED: {
        S.IN_PROGRESS: {A.PROVIDER, A.ADMIN},
        S.CANCELLED: {A.PROVIDER, A.ADMIN},
    },
    S.IN_PROGRESS: {
        S.COMPLETED: {A.PROVIDER, A.ADMIN},
    },
    # Checkout-first flow: the booking exists before the payment clears
    S.PAYMENT_PENDING: {
        S.CONFIRMED: {A.SYSTEM, A.ADMIN},
        S.CANCELLED: {A.SYSTEM, A.ADMIN},
    },
}

TERMINAL_STATES: set[BookingStatus] = {S.COMPLETED, S.CANCELLED}

# Statuses a provider can only reach once a provider_id is set
PROVIDER_REQUIRED_STATES: set[BookingStatus] = {S.CONFIRMED, S.IN_PROGRESS, S.COMPLETED}

# Statuses in which the assigned provider may share a live location
TRACKABLE_STATES: set[BookingStatus] = {S.CONFIRMED, S.IN_PROGRESS}


# ---------------------------------------------------------------------------
# Payment status
# ---------------------------------------------------------------------------

P = PaymentStatus

PAYMENT_TRANSITION_MAP: dict[PaymentStatus, set[PaymentStatus]] = {
    P.PENDING: {P.PROCESSING, P.PAY_AFTER_SERVICE, P.PAID, P.FAILED},
    P.PROCESSING: {P.PAID, P.FAILED, P.PENDING},
    P.PAY_AFTER_SERVICE: {P.PROCESSING, P.PAID},
}

PAYMENT_TERMINAL_STATES: set[PaymentStatus] = {P.PAID, P.FAILED}

# Deferred collection can only be chosen before the service starts
PAY_AFTER_SERVICE_ALLOWED: set[BookingStatus] = {S.PENDING, S.CONFIRMED}


# ---------------------------------------------------------------------------
# Property booking status
# ---------------------------------------------------------------------------

PS = PropertyBookingStatus
PA = PropertyActor

PROPERTY_TRANSITION_MAP: dict[PropertyBookingStatus, dict[PropertyBookingStatus, set[PropertyActor]]] = {
    PS.PENDING: {
        PS.CONFIRMED: {PA.OWNER, PA.ADMIN},
        PS.CANCELLED: {PA.TENANT, PA.OWNER, PA.ADMIN},
    },
    PS.CONFIRMED: {
        PS.COMPLETED: {PA.OWNER, PA.ADMIN},
        PS.CANCELLED: {PA.OWNER, PA.ADMIN},
    },
}

PROPERTY_TERMINAL_STATES: set[PropertyBookingStatus] = {PS.CANCELLED, PS.COMPLETED}

PP = PropertyPaymentStatus

PROPERTY_PAYMENT_TRANSITION_MAP: dict[PropertyPaymentStatus, set[PropertyPaymentStatus]] = {
    PP.PENDING: {PP.PAID, PP.FAILED},
    PP.FAILED: {PP.PENDING, PP.PAID},
    PP.PAID: {PP.REFUNDED},
}


def parse_status(value) -> BookingStatus:
    """Get BookingStatus from a model value (may be stored as string)."""
    if isinstance(value, BookingStatus):
        return value
    return BookingStatus(value)


class BookingStateMachine:
    """Validates service booking status transitions."""

    def validate_transition(
        self,
        current_status: BookingStatus,
        target_status: BookingStatus,
        actor: BookingActor,
        booking=None,
    ) -> bool:
        """Return True if the transition is valid.

        Raises InvalidTransitionError when the edge does not exist or the
        booking lacks a provider, and UnauthorizedTransitionError when the
        edge exists but the actor may not take it.
        """
        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"{current_status.value} is a terminal state",
            )

        allowed_targets = TRANSITION_MAP.get(current_status, {})
        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise UnauthorizedTransitionError(
                f"Actor {actor.value} is not permitted to move a booking from "
                f"{current_status.value} to {target_status.value} "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})"
            )

        if (
            booking is not None
            and target_status in PROVIDER_REQUIRED_STATES
            and current_status != S.PAYMENT_PENDING
            and not getattr(booking, "provider_id", None)
        ):
            raise InvalidTransitionError(
                current_status,
                target_status,
                "Booking has no assigned provider",
            )

        return True

    def get_allowed_transitions(
        self,
        current_status: BookingStatus,
        actor: BookingActor,
    ) -> list[BookingStatus]:
        """Return list of valid next states for the given actor from the current status."""
        allowed_targets = TRANSITION_MAP.get(current_status, {})
        return [
            target
            for target, actors in allowed_targets.items()
            if actor in actors
        ]


class PaymentStateMachine:
    """Validates the payment axis of a service booking."""

    def validate_transition(
        self,
        booking_status: BookingStatus,
        current_payment: PaymentStatus,
        target_payment: PaymentStatus,
        manual: bool = False,
    ) -> bool:
        """Return True if the payment status change is valid.

        ``manual`` marks an explicit settlement of a deferred payment before
        the service is completed.
        """
        if current_payment in PAYMENT_TERMINAL_STATES:
            raise InvalidTransitionError(
                current_payment,
                target_payment,
                f"{current_payment.value} is a terminal payment state",
            )

        if target_payment not in PAYMENT_TRANSITION_MAP.get(current_payment, set()):
            raise InvalidTransitionError(
                current_payment,
                target_payment,
                f"Payment cannot move from {current_payment.value} to {target_payment.value}",
            )

        if booking_status == S.CANCELLED and target_payment in (P.PROCESSING, P.PAID, P.PAY_AFTER_SERVICE):
            raise InvalidTransitionError(
                current_payment,
                target_payment,
                "Booking is cancelled",
            )

        if target_payment == P.PAY_AFTER_SERVICE and booking_status not in PAY_AFTER_SERVICE_ALLOWED:
            raise InvalidTransitionError(
                current_payment,
                target_payment,
                f"Pay after service is not available once a booking is {booking_status.value}",
            )

        if current_payment == P.PAY_AFTER_SERVICE:
            if booking_status != S.COMPLETED and not (target_payment == P.PAID and manual):
                raise InvalidTransitionError(
                    current_payment,
                    target_payment,
                    "Deferred payment can only be collected after the service is completed",
                )

        return True

    def get_allowed_transitions(self, current_payment: PaymentStatus) -> list[PaymentStatus]:
        return sorted(PAYMENT_TRANSITION_MAP.get(current_payment, set()), key=lambda p: p.value)


class PropertyBookingStateMachine:
    """Validates property booking status transitions."""

    def validate_transition(
        self,
        current_status: PropertyBookingStatus,
        target_status: PropertyBookingStatus,
        actor: PropertyActor,
        booking=None,
        today=None,
    ) -> bool:
        if current_status in PROPERTY_TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"{current_status.value} is a terminal state",
            )

        allowed_targets = PROPERTY_TRANSITION_MAP.get(current_status, {})
        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        if actor not in allowed_targets[target_status]:
            raise UnauthorizedTransitionError(
                f"Actor {actor.value} is not permitted to move a property booking from "
                f"{current_status.value} to {target_status.value}"
            )

        if target_status == PS.COMPLETED and booking is not None and today is not None:
            if today < booking.end_date:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Rental ends on {booking.end_date.isoformat()}",
                )

        return True

    def get_allowed_transitions(
        self,
        current_status: PropertyBookingStatus,
        actor: PropertyActor,
    ) -> list[PropertyBookingStatus]:
        allowed_targets = PROPERTY_TRANSITION_MAP.get(current_status, {})
        return [target for target, actors in allowed_targets.items() if actor in actors]

    def validate_payment_transition(
        self,
        booking_status: PropertyBookingStatus,
        current_payment: PropertyPaymentStatus,
        target_payment: PropertyPaymentStatus,
    ) -> bool:
        if target_payment not in PROPERTY_PAYMENT_TRANSITION_MAP.get(current_payment, set()):
            raise InvalidTransitionError(
                current_payment,
                target_payment,
                f"Payment cannot move from {current_payment.value} to {target_payment.value}",
            )
        if booking_status == PS.CANCELLED and target_payment == PP.PAID:
            raise InvalidTransitionError(current_payment, target_payment, "Booking is cancelled")
        return True
