"""Provider-side live location sharing for one booking.

A ``TrackingSession`` owns at most one watch on its ``PositionSource``.
While sharing, every fix from the watch is written through a
``LocationStore`` in watch order. Failures never escape the session; they
become notices on the injected ``NotificationSink``.

States::

    idle -> sharing -> idle            (stop)
    idle -> sharing -> error -> idle   (permission revoked)
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fixo.domain.enums import SharingState
from fixo.services.location_feed import LocationFeed
from fixo.services.location_store import LocationStore, StorageError, TrackingClosedError
from fixo.services.notifications import Notice, NotificationSink
from fixo.services.position_source import (
    CapabilityUnsupportedError,
    Position,
    PositionError,
    PositionErrorCode,
    PositionOptions,
    PositionSource,
    WatchActiveError,
    WatchHandle,
)

logger = logging.getLogger(__name__)


NOTICE_UNSUPPORTED = Notice(
    "Location not supported", "Your browser doesn't support location tracking", "destructive"
)
NOTICE_STARTED = Notice("Location sharing started", "Your location is now being shared with the customer")
NOTICE_STOPPED = Notice("Location sharing stopped", "Your location is no longer being shared")
NOTICE_ALREADY_SHARING = Notice("Already sharing", "Location sharing is already active")
NOTICE_WRITE_FAILED = Notice(
    "Location update failed", "Failed to share your location. Please try again.", "destructive"
)
NOTICE_UPDATED = Notice("Location updated", "Your current location has been sent to the customer")
NOTICE_UPDATE_FAILED = Notice("Update failed", "Failed to update your location", "destructive")
NOTICE_BOOKING_CLOSED = Notice(
    "Location sharing ended", "This booking is no longer active, so your location is not shared", "destructive"
)


class TrackingSession:
    """Single source of truth for whether a provider is sharing for a booking."""

    def __init__(
        self,
        provider_id: str,
        booking_id: str,
        position_source: PositionSource,
        session_factory: Callable[[], AsyncSession],
        notifier: NotificationSink,
        feed: Optional[LocationFeed] = None,
        options: Optional[PositionOptions] = None,
        reject_stale: Optional[bool] = None,
    ):
        self.provider_id = provider_id
        self.booking_id = booking_id
        self.source = position_source
        self.session_factory = session_factory
        self.notifier = notifier
        self.feed = feed
        self.options = options or PositionOptions.from_settings()
        self.reject_stale = reject_stale

        self.state = SharingState.IDLE
        self.last_update: Optional[datetime] = None
        self.accuracy: Optional[float] = None

        self._watch: Optional[WatchHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_sharing(self) -> bool:
        return self.state == SharingState.SHARING

    @property
    def watch(self) -> Optional[WatchHandle]:
        return self._watch

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "accuracy": self.accuracy,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Begin sharing. Returns False (after a notice) when rejected."""
        if not self.source.supported:
            await self.notifier.notify(NOTICE_UNSUPPORTED)
            return False
        if self.state == SharingState.SHARING:
            await self.notifier.notify(NOTICE_ALREADY_SHARING)
            return False

        try:
            self._watch = self.source.watch_position(self.options)
        except (CapabilityUnsupportedError, WatchActiveError) as e:
            logger.warning("Cannot start sharing for booking %s: %s", self.booking_id, e)
            await self.notifier.notify(Notice("Location error", str(e), "destructive"))
            return False

        self.state = SharingState.SHARING
        logger.info("Location sharing started: provider=%s booking=%s", self.provider_id, self.booking_id)

        cached = self.source.cached_position(self.options.maximum_age)
        if cached is not None:
            await self._record(cached)
            if self._watch is None:
                return False

        self._task = asyncio.create_task(self._run(self._watch))
        await self.notifier.notify(NOTICE_STARTED)
        return True

    async def stop(self, notify: bool = True) -> None:
        """Clear the watch and deactivate the row; both steps always run."""
        watch, self._watch = self._watch, None
        try:
            self.source.stop_watch(watch)
        except Exception:
            logger.exception("Failed to clear location watch for booking %s", self.booking_id)

        await self._cancel_loop()

        try:
            async with self.session_factory() as db:
                await self._store(db).deactivate(self.provider_id, self.booking_id)
        except StorageError as e:
            logger.error("Failed to deactivate location for booking %s: %s", self.booking_id, e)

        was_sharing = self.state != SharingState.IDLE
        self.state = SharingState.IDLE
        logger.info("Location sharing stopped: provider=%s booking=%s", self.provider_id, self.booking_id)
        if notify and was_sharing:
            await self.notifier.notify(NOTICE_STOPPED)

    async def force_update(self) -> bool:
        """One-shot fetch and write, independent of the sharing state."""
        try:
            position = await self.source.get_current_position(self.options)
        except CapabilityUnsupportedError:
            await self.notifier.notify(NOTICE_UNSUPPORTED)
            return False
        except PositionError as e:
            await self.notifier.notify(Notice("Location error", e.message, "destructive"))
            return False

        try:
            await self._write(position)
        except TrackingClosedError:
            await self.notifier.notify(NOTICE_BOOKING_CLOSED)
            return False
        except StorageError:
            await self.notifier.notify(NOTICE_UPDATE_FAILED)
            return False
        await self.notifier.notify(NOTICE_UPDATED)
        return True

    async def load_existing(self) -> None:
        """Restore ``last_update``/``accuracy`` from an active row, if any."""
        try:
            async with self.session_factory() as db:
                row = await self._store(db).fetch_for_provider(self.provider_id, self.booking_id)
        except StorageError as e:
            logger.warning("Could not load existing location for booking %s: %s", self.booking_id, e)
            return
        if row is not None and row.is_active:
            self.last_update = row.updated_at
            self.accuracy = row.accuracy

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    async def _run(self, watch: WatchHandle) -> None:
        async for item in watch:
            if isinstance(item, PositionError):
                if item.code == PositionErrorCode.PERMISSION_DENIED:
                    await self._fail(item)
                    return
                await self.notifier.notify(Notice("Location error", item.message, "destructive"))
                continue
            await self._record(item)

    async def _record(self, position: Position) -> None:
        try:
            await self._write(position)
        except TrackingClosedError:
            logger.info("Booking %s closed; ending location sharing", self.booking_id)
            await self.notifier.notify(NOTICE_BOOKING_CLOSED)
            await self.stop(notify=False)
        except StorageError:
            await self.notifier.notify(NOTICE_WRITE_FAILED)

    async def _write(self, position: Position) -> None:
        async with self.session_factory() as db:
            row = await self._store(db).upsert_location(
                self.provider_id,
                self.booking_id,
                position.coords,
                reported_at=position.timestamp,
            )
        self.last_update = row.updated_at if row is not None else None
        self.accuracy = position.coords.accuracy

    async def _fail(self, error: PositionError) -> None:
        """Unrecoverable geolocation error: error, then back to idle."""
        self.state = SharingState.ERROR
        logger.warning(
            "Location sharing failed for booking %s: %s", self.booking_id, error.message
        )
        await self.notifier.notify(Notice("Location error", error.message, "destructive"))
        await self.stop(notify=False)

    async def _cancel_loop(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            # Stopping the watch ends the loop; a write in flight is allowed to land first
            try:
                await asyncio.wait_for(task, timeout=self.options.timeout)
            except asyncio.TimeoutError:
                logger.warning("Location loop for booking %s did not finish; cancelled", self.booking_id)
            except Exception:
                logger.exception("Location loop for booking %s crashed", self.booking_id)

    def _store(self, db: AsyncSession) -> LocationStore:
        return LocationStore(db, feed=self.feed, reject_stale=self.reject_stale)
