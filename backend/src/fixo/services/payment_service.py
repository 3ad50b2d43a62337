"""Stripe Checkout integration for service bookings.

The Stripe SDK is synchronous; calls run in a worker thread so the event
loop keeps serving location traffic while a checkout is created.
"""

import asyncio
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe

from fixo.app.config import get_settings
from fixo.services.booking_service import CheckoutSession

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """The payment provider rejected or failed a request."""


def to_minor_units(amount) -> int:
    """Convert a major-unit amount (rupees) to the smallest unit (paise)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        currency: Optional[str] = None,
        frontend_url: Optional[str] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.currency = currency or settings.checkout_currency
        self.frontend_url = (frontend_url or settings.frontend_url).rstrip("/")

    def _require_key(self) -> None:
        if not self.api_key:
            raise PaymentError("Stripe secret key not configured")

    def _find_customer_id(self, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        customers = stripe.Customer.list(email=email, limit=1, api_key=self.api_key)
        if customers.data:
            logger.debug("Reusing Stripe customer %s for %s", customers.data[0].id, email)
            return customers.data[0].id
        return None

    def _create_session(
        self,
        booking_id: str,
        amount,
        service_name: Optional[str],
        customer_email: Optional[str],
    ) -> CheckoutSession:
        customer_id = self._find_customer_id(customer_email)
        params = {
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": service_name or "Service"},
                        "unit_amount": to_minor_units(amount),
                    },
                    "quantity": 1,
                }
            ],
            "mode": "payment",
            "success_url": f"{self.frontend_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}/payment-cancelled?booking_id={booking_id}",
            "metadata": {"bookingId": booking_id},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        return CheckoutSession(id=session.id, url=session.url)

    async def create_checkout_session(
        self,
        booking_id: str,
        amount,
        service_name: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a one-item hosted checkout for a booking.

        Raises PaymentError when the key is missing or Stripe fails.
        """
        self._require_key()
        try:
            checkout = await asyncio.to_thread(
                self._create_session, booking_id, amount, service_name, customer_email
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout creation failed for booking %s: %s", booking_id, e)
            raise PaymentError(str(e)) from e
        logger.info("Checkout session %s created for booking %s", checkout.id, booking_id)
        return checkout

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        """Return ``{id, status, payment_status, booking_id}`` for a session."""
        self._require_key()
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, session_id, api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error("Stripe session lookup failed for %s: %s", session_id, e)
            raise PaymentError(str(e)) from e
        metadata = session.metadata or {}
        return {
            "id": session.id,
            "status": session.status,
            "payment_status": session.payment_status,
            "booking_id": metadata.get("bookingId"),
        }

    async def is_paid(self, session_id: str) -> bool:
        info = await self.retrieve_checkout_session(session_id)
        return info["payment_status"] == "paid"
