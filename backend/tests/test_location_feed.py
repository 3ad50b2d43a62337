"""Tests for the in-process location change feed."""

from unittest.mock import AsyncMock

from fixo.domain.enums import LocationChangeType
from fixo.services.location_feed import LocationChange, LocationFeed


def _change(booking_id="book-1", lat=12.9) -> LocationChange:
    return LocationChange(LocationChangeType.UPDATE, booking_id, {"latitude": lat})


class TestLocationFeed:
    async def test_delivers_only_to_matching_booking(self):
        feed = LocationFeed()
        mine, other = [], []
        feed.subscribe("book-1", mine.append)
        feed.subscribe("book-2", other.append)

        await feed.publish(_change("book-1"))

        assert len(mine) == 1
        assert other == []

    async def test_async_callbacks_are_awaited_in_order(self):
        feed = LocationFeed()
        callback = AsyncMock()
        feed.subscribe("book-1", callback)

        await feed.publish(_change(lat=1.0))
        await feed.publish(_change(lat=2.0))

        assert [c.args[0].row["latitude"] for c in callback.await_args_list] == [1.0, 2.0]

    async def test_unsubscribe_is_idempotent(self):
        feed = LocationFeed()
        received = []
        sub = feed.subscribe("book-1", received.append)
        assert feed.subscriber_count("book-1") == 1

        sub.unsubscribe()
        sub.unsubscribe()
        feed.unsubscribe(None)
        await feed.publish(_change())

        assert received == []
        assert sub.active is False
        assert feed.subscriber_count("book-1") == 0

    async def test_context_manager_releases(self):
        feed = LocationFeed()
        async with feed.subscribe("book-1", lambda change: None) as sub:
            assert sub.active
        assert feed.subscriber_count("book-1") == 0

    async def test_failing_subscriber_does_not_block_others(self):
        feed = LocationFeed()
        received = []

        def boom(change):
            raise RuntimeError("viewer went away")

        feed.subscribe("book-1", boom)
        feed.subscribe("book-1", received.append)
        await feed.publish(_change())

        assert len(received) == 1

    def test_change_payload(self):
        assert _change().to_dict() == {
            "type": "location_change",
            "event_type": "update",
            "booking_id": "book-1",
            "data": {"latitude": 12.9},
        }
