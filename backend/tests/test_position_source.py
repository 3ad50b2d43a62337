"""Tests for PositionSource, WatchHandle and position payload parsing."""

import asyncio
from datetime import datetime, timezone

import pytest

from fixo.services.position_source import (
    CapabilityUnsupportedError,
    Coordinates,
    Position,
    PositionError,
    PositionErrorCode,
    PositionOptions,
    PositionSource,
    WatchActiveError,
)

FAST = PositionOptions(timeout=0.05, maximum_age=30.0)


def _fix(lat=12.9, lon=77.6, accuracy=15.0) -> Position:
    return Position(Coordinates(lat, lon, accuracy=accuracy), datetime.now(timezone.utc))


class TestParsing:
    def test_flat_payload_with_epoch_ms(self):
        pos = Position.from_dict({"latitude": 12.9, "longitude": 77.6, "accuracy": 15, "timestamp": 1714557600000})
        assert pos.coords.latitude == 12.9
        assert pos.coords.accuracy == 15.0
        assert pos.timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_nested_coords_with_iso_timestamp(self):
        pos = Position.from_dict({
            "coords": {"latitude": "-1.5", "longitude": "36.8", "heading": None},
            "timestamp": "2024-05-01T10:00:00Z",
        })
        assert pos.coords.longitude == 36.8
        assert pos.coords.heading is None
        assert pos.timestamp.tzinfo is not None

    @pytest.mark.parametrize("lat,lon", [(91, 0), (-91, 0), (0, 181), (0, -180.5)])
    def test_out_of_range_coordinates(self, lat, lon):
        with pytest.raises(ValueError):
            Coordinates(lat, lon)

    def test_missing_latitude(self):
        with pytest.raises(KeyError):
            Position.from_dict({"longitude": 77.6})

    def test_error_payload_uses_default_message(self):
        err = PositionError.from_dict({"code": 1})
        assert err.code == PositionErrorCode.PERMISSION_DENIED
        assert "denied" in err.message
        assert err.retryable is False
        assert PositionError(PositionErrorCode.TIMEOUT).retryable is True


class TestGetCurrentPosition:
    async def test_waits_for_reported_fix(self):
        source = PositionSource()
        fix = _fix()
        task = asyncio.create_task(source.get_current_position(PositionOptions(timeout=1.0, maximum_age=0)))
        await asyncio.sleep(0)
        source.report(fix)
        assert await task == fix

    async def test_returns_cached_fix(self):
        source = PositionSource()
        fix = _fix()
        source.report(fix)
        assert await source.get_current_position(FAST) is fix

    async def test_maximum_age_zero_ignores_cache(self):
        source = PositionSource()
        source.report(_fix())
        with pytest.raises(PositionError) as exc:
            await source.get_current_position(PositionOptions(timeout=0.05, maximum_age=0))
        assert exc.value.code == PositionErrorCode.TIMEOUT

    async def test_reported_error_propagates(self):
        source = PositionSource()
        task = asyncio.create_task(source.get_current_position(PositionOptions(timeout=1.0, maximum_age=0)))
        await asyncio.sleep(0)
        source.report_error(PositionError(PositionErrorCode.POSITION_UNAVAILABLE))
        with pytest.raises(PositionError) as exc:
            await task
        assert exc.value.code == PositionErrorCode.POSITION_UNAVAILABLE

    async def test_unsupported(self):
        with pytest.raises(CapabilityUnsupportedError):
            await PositionSource(supported=False).get_current_position(FAST)


class TestWatch:
    async def test_yields_fixes_in_order_then_ends(self):
        source = PositionSource()
        watch = source.watch_position(PositionOptions(timeout=1.0))
        first, second = _fix(1, 1), _fix(2, 2)
        source.report(first)
        source.report(second)

        assert await watch.__anext__() is first
        assert await watch.__anext__() is second

        source.stop_watch(watch)
        assert watch.active is False
        assert source.watch is None
        with pytest.raises(StopAsyncIteration):
            await watch.__anext__()

    async def test_silence_is_not_an_error(self):
        source = PositionSource()
        watch = source.watch_position(FAST)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(watch.__anext__(), timeout=0.1)

        source.report_error(PositionError(PositionErrorCode.TIMEOUT))
        item = await watch.__anext__()
        assert isinstance(item, PositionError)
        assert item.code == PositionErrorCode.TIMEOUT
        source.stop_watch(watch)

    async def test_second_watch_rejected_until_stopped(self):
        source = PositionSource()
        watch = source.watch_position(FAST)
        with pytest.raises(WatchActiveError):
            source.watch_position(FAST)
        source.stop_watch(watch)
        source.stop_watch(watch)
        source.stop_watch(None)
        assert source.watch_position(FAST) is not watch

    async def test_stopped_watch_receives_nothing(self):
        source = PositionSource()
        watch = source.watch_position(PositionOptions(timeout=1.0))
        source.stop_watch(watch)
        source.report(_fix())
        with pytest.raises(StopAsyncIteration):
            await watch.__anext__()
