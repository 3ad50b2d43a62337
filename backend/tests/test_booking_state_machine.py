"""Unit tests for the booking, payment and property state machines."""

from datetime import date
from types import SimpleNamespace

import pytest

from fixo.domain.enums import (
    BookingActor,
    BookingStatus,
    PaymentStatus,
    PropertyActor,
    PropertyBookingStatus,
    PropertyPaymentStatus,
)
from fixo.services.booking_state_machine import (
    PAYMENT_TRANSITION_MAP,
    PROPERTY_TRANSITION_MAP,
    TERMINAL_STATES,
    TRANSITION_MAP,
    BookingStateMachine,
    InvalidTransitionError,
    PaymentStateMachine,
    PropertyBookingStateMachine,
    UnauthorizedTransitionError,
    parse_status,
)

S = BookingStatus
A = BookingActor
P = PaymentStatus
PS = PropertyBookingStatus
PA = PropertyActor


@pytest.fixture
def sm():
    return BookingStateMachine()


@pytest.fixture
def pm():
    return PaymentStateMachine()


@pytest.fixture
def psm():
    return PropertyBookingStateMachine()


def _make_booking(**kwargs):
    """Create a simple namespace that acts like a booking row."""
    defaults = {"provider_id": "prov-1", "end_date": date(2024, 2, 15)}
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


# ---------------------------------------------------------------------------
# Service booking status
# ---------------------------------------------------------------------------


class TestValidTransitions:
    """Every transition defined in TRANSITION_MAP should succeed for allowed actors."""

    @pytest.mark.parametrize(
        "from_status,to_status,actor",
        [
            (from_s, to_s, actor)
            for from_s, targets in TRANSITION_MAP.items()
            for to_s, actors in targets.items()
            for actor in actors
        ],
    )
    def test_all_valid_transitions(self, sm, from_status, to_status, actor):
        assert sm.validate_transition(from_status, to_status, actor, _make_booking()) is True


class TestInvalidTransitions:
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    @pytest.mark.parametrize("target", [S.PENDING, S.CONFIRMED, S.IN_PROGRESS])
    def test_terminal_states_have_no_exits(self, sm, terminal, target):
        with pytest.raises(InvalidTransitionError, match="terminal"):
            sm.validate_transition(terminal, target, A.ADMIN)

    def test_skipping_a_step_is_rejected_even_for_admin(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.PENDING, S.COMPLETED, A.ADMIN)

    def test_in_progress_cannot_be_cancelled(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.IN_PROGRESS, S.CANCELLED, A.ADMIN)

    def test_customer_cannot_complete(self, sm):
        with pytest.raises(UnauthorizedTransitionError):
            sm.validate_transition(S.IN_PROGRESS, S.COMPLETED, A.CUSTOMER)

    def test_customer_cannot_cancel_confirmed_booking(self, sm):
        with pytest.raises(UnauthorizedTransitionError):
            sm.validate_transition(S.CONFIRMED, S.CANCELLED, A.CUSTOMER)

    def test_provider_cannot_confirm_checkout_booking(self, sm):
        with pytest.raises(UnauthorizedTransitionError):
            sm.validate_transition(S.PAYMENT_PENDING, S.CONFIRMED, A.PROVIDER)

    def test_customer_cannot_cancel_checkout_booking(self, sm):
        with pytest.raises(UnauthorizedTransitionError):
            sm.validate_transition(S.PAYMENT_PENDING, S.CANCELLED, A.CUSTOMER)

    def test_confirm_requires_assigned_provider(self, sm):
        with pytest.raises(InvalidTransitionError, match="no assigned provider"):
            sm.validate_transition(S.PENDING, S.CONFIRMED, A.ADMIN, _make_booking(provider_id=None))

    def test_payment_confirmation_does_not_require_provider(self, sm):
        booking = _make_booking(provider_id=None)
        assert sm.validate_transition(S.PAYMENT_PENDING, S.CONFIRMED, A.SYSTEM, booking) is True


class TestAllowedTransitions:
    def test_customer_on_pending(self, sm):
        assert sm.get_allowed_transitions(S.PENDING, A.CUSTOMER) == [S.CANCELLED]

    def test_provider_on_pending(self, sm):
        assert set(sm.get_allowed_transitions(S.PENDING, A.PROVIDER)) == {S.CONFIRMED, S.CANCELLED}

    def test_terminal_has_none(self, sm):
        assert sm.get_allowed_transitions(S.COMPLETED, A.ADMIN) == []

    def test_legacy_accepted_value_reads_as_confirmed(self):
        assert parse_status("accepted") == S.CONFIRMED


# ---------------------------------------------------------------------------
# Payment status
# ---------------------------------------------------------------------------


class TestPaymentTransitions:
    @pytest.mark.parametrize(
        "from_payment,to_payment",
        [
            (from_p, to_p)
            for from_p, targets in PAYMENT_TRANSITION_MAP.items()
            for to_p in targets
        ],
    )
    def test_edges_valid_once_completed_or_pending(self, pm, from_payment, to_payment):
        # Deferred payments move only after completion; everything else while pending
        status = S.COMPLETED if from_payment == P.PAY_AFTER_SERVICE else S.PENDING
        assert pm.validate_transition(status, from_payment, to_payment) is True

    @pytest.mark.parametrize("terminal", [P.PAID, P.FAILED])
    def test_terminal_payment_states(self, pm, terminal):
        with pytest.raises(InvalidTransitionError):
            pm.validate_transition(S.CONFIRMED, terminal, P.PENDING)

    def test_pay_after_service_only_before_work_starts(self, pm):
        assert pm.validate_transition(S.CONFIRMED, P.PENDING, P.PAY_AFTER_SERVICE) is True
        with pytest.raises(InvalidTransitionError):
            pm.validate_transition(S.IN_PROGRESS, P.PENDING, P.PAY_AFTER_SERVICE)

    def test_deferred_payment_waits_for_completion(self, pm):
        with pytest.raises(InvalidTransitionError, match="after the service is completed"):
            pm.validate_transition(S.IN_PROGRESS, P.PAY_AFTER_SERVICE, P.PAID)

    def test_manual_settlement_of_deferred_payment(self, pm):
        assert pm.validate_transition(S.CONFIRMED, P.PAY_AFTER_SERVICE, P.PAID, manual=True) is True

    def test_cancelled_booking_cannot_be_paid(self, pm):
        with pytest.raises(InvalidTransitionError, match="cancelled"):
            pm.validate_transition(S.CANCELLED, P.PROCESSING, P.PAID)

    def test_cancelled_booking_can_fail_payment(self, pm):
        assert pm.validate_transition(S.CANCELLED, P.PROCESSING, P.FAILED) is True

    def test_cancelled_booking_cannot_start_payment(self, pm):
        with pytest.raises(InvalidTransitionError, match="cancelled"):
            pm.validate_transition(S.CANCELLED, P.PENDING, P.PROCESSING)

    def test_completed_booking_can_start_deferred_payment(self, pm):
        assert pm.validate_transition(S.COMPLETED, P.PAY_AFTER_SERVICE, P.PROCESSING) is True


# ---------------------------------------------------------------------------
# Property bookings
# ---------------------------------------------------------------------------


class TestPropertyTransitions:
    @pytest.mark.parametrize(
        "from_status,to_status,actor",
        [
            (from_s, to_s, actor)
            for from_s, targets in PROPERTY_TRANSITION_MAP.items()
            for to_s, actors in targets.items()
            for actor in actors
        ],
    )
    def test_all_valid_transitions(self, psm, from_status, to_status, actor):
        booking = _make_booking()
        assert psm.validate_transition(from_status, to_status, actor, booking, date(2024, 3, 1)) is True

    def test_tenant_cannot_cancel_confirmed(self, psm):
        with pytest.raises(UnauthorizedTransitionError):
            psm.validate_transition(PS.CONFIRMED, PS.CANCELLED, PA.TENANT)

    def test_tenant_cannot_confirm(self, psm):
        with pytest.raises(UnauthorizedTransitionError):
            psm.validate_transition(PS.PENDING, PS.CONFIRMED, PA.TENANT)

    def test_complete_before_end_date_rejected(self, psm):
        with pytest.raises(InvalidTransitionError, match="2024-02-15"):
            psm.validate_transition(
                PS.CONFIRMED, PS.COMPLETED, PA.OWNER, _make_booking(), date(2024, 2, 1)
            )

    def test_cancelled_is_terminal(self, psm):
        with pytest.raises(InvalidTransitionError):
            psm.validate_transition(PS.CANCELLED, PS.CONFIRMED, PA.ADMIN)

    def test_owner_allowed_transitions_on_pending(self, psm):
        assert set(psm.get_allowed_transitions(PS.PENDING, PA.OWNER)) == {PS.CONFIRMED, PS.CANCELLED}

    def test_payment_refund_only_after_paid(self, psm):
        PP = PropertyPaymentStatus
        assert psm.validate_payment_transition(PS.CONFIRMED, PP.PAID, PP.REFUNDED) is True
        with pytest.raises(InvalidTransitionError):
            psm.validate_payment_transition(PS.CONFIRMED, PP.PENDING, PP.REFUNDED)
