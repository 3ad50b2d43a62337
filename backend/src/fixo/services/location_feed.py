"""In-process change feed for provider location rows.

Every successful write to ``provider_locations`` is published here, scoped by
booking id. Viewers hold a ``Subscription`` and must release it explicitly.
"""

import inspect
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from fixo.domain.enums import LocationChangeType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationChange:
    """A row-level insert or update for one booking."""

    event_type: LocationChangeType
    booking_id: str
    row: dict

    def to_dict(self) -> dict:
        return {
            "type": "location_change",
            "event_type": self.event_type.value,
            "booking_id": self.booking_id,
            "data": self.row,
        }


ChangeCallback = Callable[[LocationChange], Union[None, Awaitable[Any]]]


class Subscription:
    """Handle returned by ``LocationFeed.subscribe``.

    Also usable as ``async with feed.subscribe(...) as sub:``.
    """

    _ids = itertools.count(1)

    def __init__(self, feed: "LocationFeed", booking_id: str, callback: ChangeCallback):
        self.id = next(self._ids)
        self.booking_id = booking_id
        self.callback = callback
        self._feed = feed
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        self._feed.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class LocationFeed:
    """Push-based observer registry keyed by booking id.

    Delivery is sequential in publish order; nothing is deduplicated.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, booking_id: str, on_change: ChangeCallback) -> Subscription:
        subscription = Subscription(self, booking_id, on_change)
        self._subscribers.setdefault(booking_id, []).append(subscription)
        logger.debug("Subscribed #%d to booking %s", subscription.id, booking_id)
        return subscription

    def unsubscribe(self, subscription: Optional[Subscription]) -> None:
        """Release a subscription. Safe to call more than once."""
        if subscription is None or not subscription._active:
            return
        subscription._active = False
        subs = self._subscribers.get(subscription.booking_id, [])
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subscribers.pop(subscription.booking_id, None)
        logger.debug("Unsubscribed #%d from booking %s", subscription.id, subscription.booking_id)

    def subscriber_count(self, booking_id: str) -> int:
        return len(self._subscribers.get(booking_id, []))

    async def publish(self, change: LocationChange) -> None:
        """Deliver a change to every live subscriber of its booking.

        A failing callback is logged; the remaining subscribers still receive
        the change.
        """
        for subscription in list(self._subscribers.get(change.booking_id, [])):
            if not subscription._active:
                continue
            try:
                result = subscription.callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Location subscriber #%d failed for booking %s",
                    subscription.id,
                    change.booking_id,
                )


# Process-wide feed shared by the store and the viewer sockets
location_feed = LocationFeed()
