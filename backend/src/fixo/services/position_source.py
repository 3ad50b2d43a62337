"""Position source: a device's geolocation capability as an async event stream.

The device side (a provider's phone over a WebSocket, or a REST call)
*reports* fixes and errors into a ``PositionSource``; the tracking engine
*consumes* them either once (``get_current_position``) or continuously
through a ``WatchHandle``.

A watch handle is a lazy, infinite, non-restartable async iterator of
``Position`` or ``PositionError`` items. It ends only when stopped. At most
one live handle exists per source.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import Optional, Union

from fixo.app.config import get_settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None  # meters
    heading: Optional[float] = None  # degrees
    speed: Optional[float] = None  # m/s

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class Position:
    coords: Coordinates
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        """Parse a device payload.

        Accepts either flat ``latitude``/``longitude`` keys or a nested
        ``coords`` object, and a ``timestamp`` as epoch milliseconds or an
        ISO-8601 string (missing means now).
        """
        raw = data.get("coords") or data
        coords = Coordinates(
            latitude=float(raw["latitude"]),
            longitude=float(raw["longitude"]),
            accuracy=_optional_float(raw.get("accuracy")),
            heading=_optional_float(raw.get("heading")),
            speed=_optional_float(raw.get("speed")),
        )
        return cls(coords=coords, timestamp=_parse_timestamp(data.get("timestamp")))


def _optional_float(value) -> Optional[float]:
    return float(value) if value is not None else None


def _parse_timestamp(value) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class PositionOptions:
    enable_high_accuracy: bool = True
    timeout: float = 10.0  # seconds
    maximum_age: float = 30.0  # seconds a cached fix stays usable

    @classmethod
    def from_settings(cls) -> "PositionOptions":
        settings = get_settings()
        return cls(
            enable_high_accuracy=True,
            timeout=settings.location_timeout_seconds,
            maximum_age=settings.location_maximum_age_seconds,
        )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PositionErrorCode(IntEnum):
    """Native geolocation error codes."""

    PERMISSION_DENIED = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT = 3


DEFAULT_ERROR_MESSAGES = {
    PositionErrorCode.PERMISSION_DENIED: "Location access denied. Please enable location permissions.",
    PositionErrorCode.POSITION_UNAVAILABLE: "Location information unavailable.",
    PositionErrorCode.TIMEOUT: "Location request timed out.",
}


class PositionError(Exception):
    """A failed geolocation read reported by the device."""

    def __init__(self, code: PositionErrorCode, message: Optional[str] = None):
        self.code = PositionErrorCode(code)
        self.message = message or DEFAULT_ERROR_MESSAGES[self.code]
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        # Permission can only be restored by the user
        return self.code != PositionErrorCode.PERMISSION_DENIED

    @classmethod
    def from_dict(cls, data: dict) -> "PositionError":
        return cls(PositionErrorCode(int(data["code"])), data.get("message"))


class CapabilityUnsupportedError(Exception):
    """The device has no geolocation capability."""


class WatchActiveError(Exception):
    """A second watch was requested while one is still live."""


WatchItem = Union[Position, PositionError]

_STOP = object()


# ---------------------------------------------------------------------------
# Watch handle
# ---------------------------------------------------------------------------


class WatchHandle:
    """Async iterator over fixes and errors for one watch registration.

    Silence is not an error: the iterator waits until the device reports a
    fix or a failure (including its own TIMEOUT reads). Iteration ends once
    the handle is stopped.
    """

    def __init__(self, options: PositionOptions):
        self.options = options
        self._queue: asyncio.Queue = asyncio.Queue()
        self._stopped = False

    @property
    def active(self) -> bool:
        return not self._stopped

    def __aiter__(self):
        return self

    async def __anext__(self) -> WatchItem:
        if self._stopped and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _STOP:
            raise StopAsyncIteration
        return item

    def _push(self, item: WatchItem) -> None:
        if not self._stopped:
            self._queue.put_nowait(item)

    def _close(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        # Drop undelivered fixes so the consumer wakes straight into the sentinel
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_STOP)


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class PositionSource:
    """Geolocation capability of one device."""

    def __init__(self, supported: bool = True):
        self.supported = supported
        self._last: Optional[Position] = None
        self._last_received: Optional[float] = None  # monotonic
        self._waiters: list[asyncio.Future] = []
        self._watch: Optional[WatchHandle] = None

    @property
    def watch(self) -> Optional[WatchHandle]:
        return self._watch

    # -- device side ------------------------------------------------------

    def report(self, position: Position) -> None:
        """Deliver a fix from the device."""
        self._last = position
        self._last_received = time.monotonic()
        for fut in list(self._waiters):
            if not fut.done():
                fut.set_result(position)
        if self._watch is not None:
            self._watch._push(position)

    def report_error(self, error: PositionError) -> None:
        """Deliver a failed read from the device."""
        logger.info("Position error reported: code=%s (%s)", error.code.name, error.message)
        for fut in list(self._waiters):
            if not fut.done():
                fut.set_exception(error)
        if self._watch is not None:
            self._watch._push(error)

    # -- consumer side ----------------------------------------------------

    def cached_position(self, maximum_age: float) -> Optional[Position]:
        """Return the last fix if it is younger than ``maximum_age`` seconds."""
        if self._last is None or self._last_received is None or maximum_age <= 0:
            return None
        if time.monotonic() - self._last_received <= maximum_age:
            return self._last
        return None

    async def get_current_position(self, options: Optional[PositionOptions] = None) -> Position:
        """One-shot fetch.

        Raises CapabilityUnsupportedError, or PositionError for a reported
        failure or a TIMEOUT when nothing arrives within ``options.timeout``.
        """
        self._require_supported()
        options = options or PositionOptions.from_settings()

        cached = self.cached_position(options.maximum_age)
        if cached is not None:
            return cached

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            return await asyncio.wait_for(fut, timeout=options.timeout)
        except asyncio.TimeoutError:
            raise PositionError(PositionErrorCode.TIMEOUT)
        finally:
            self._waiters.remove(fut)

    def watch_position(self, options: Optional[PositionOptions] = None) -> WatchHandle:
        """Register the continuous watch for this source.

        Raises WatchActiveError if a previous handle has not been stopped.
        """
        self._require_supported()
        if self._watch is not None and self._watch.active:
            raise WatchActiveError("A location watch is already active; stop it first")
        handle = WatchHandle(options or PositionOptions.from_settings())
        self._watch = handle
        return handle

    def stop_watch(self, handle: Optional[WatchHandle]) -> None:
        """Release a watch. Safe on None or an already-stopped handle."""
        if handle is None:
            return
        handle._close()
        if self._watch is handle:
            self._watch = None

    def _require_supported(self) -> None:
        if not self.supported:
            raise CapabilityUnsupportedError("Your browser doesn't support location tracking")
