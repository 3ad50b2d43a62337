"""Persistence of the latest provider position per booking.

``provider_locations`` holds one row per (provider_id, booking_id). Reports
overwrite the row in place; stopping a share only flips ``is_active``.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.app.config import get_settings
from fixo.domain.enums import LocationChangeType
from fixo.domain.models import ProviderLocation, ServiceBooking
from fixo.services.booking_state_machine import TERMINAL_STATES
from fixo.services.location_feed import LocationChange, LocationFeed
from fixo.services.position_source import Coordinates

logger = logging.getLogger(__name__)

_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}

CLOSED_STATUSES = sorted(s.value for s in TERMINAL_STATES)


def _closed_booking(booking_id: str):
    return select(ServiceBooking.id).where(
        ServiceBooking.id == booking_id,
        ServiceBooking.status.in_(CLOSED_STATUSES),
    )


class StorageError(Exception):
    """A location read or write failed in the database."""


class TrackingClosedError(StorageError):
    """The booking is completed or cancelled; its location can no longer change."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def location_to_dict(row: ProviderLocation) -> dict:
    return {
        "id": row.id,
        "provider_id": row.provider_id,
        "booking_id": row.booking_id,
        "latitude": row.latitude,
        "longitude": row.longitude,
        "accuracy": row.accuracy,
        "heading": row.heading,
        "speed": row.speed,
        "is_active": row.is_active,
        "reported_at": _iso(row.reported_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


class LocationStore:
    """Reads and writes ``provider_locations`` rows.

    With ``reject_stale`` on, an upsert whose ``reported_at`` is older than
    the stored fix leaves the row untouched, so a delayed report cannot
    overwrite a fresher one. With it off every write wins.
    """

    def __init__(
        self,
        db: AsyncSession,
        feed: Optional[LocationFeed] = None,
        reject_stale: Optional[bool] = None,
    ):
        self.db = db
        self.feed = feed
        if reject_stale is None:
            reject_stale = get_settings().location_reject_stale
        self.reject_stale = reject_stale

    async def upsert_location(
        self,
        provider_id: str,
        booking_id: str,
        coords: Coordinates,
        reported_at: Optional[datetime] = None,
    ) -> ProviderLocation:
        """Insert or overwrite the row for (provider_id, booking_id) and mark it active.

        Returns the stored row, which is the fresher existing row when the
        write was rejected as stale. Raises TrackingClosedError once the
        booking is completed or cancelled.
        """
        now = _utcnow()
        reported_at = _as_naive_utc(reported_at) or now

        try:
            if await self._booking_closed(booking_id):
                await self.db.rollback()
                raise TrackingClosedError(f"Booking {booking_id} is no longer active")

            dialect = self.db.get_bind().dialect.name
            insert = _INSERTS.get(dialect)
            if insert is None:
                raise StorageError(f"Upsert is not supported on {dialect}")

            table = ProviderLocation.__table__
            stmt = insert(table).values(
                provider_id=provider_id,
                booking_id=booking_id,
                latitude=coords.latitude,
                longitude=coords.longitude,
                accuracy=coords.accuracy,
                heading=coords.heading,
                speed=coords.speed,
                is_active=True,
                reported_at=reported_at,
                created_at=now,
                updated_at=now,
            )
            # A transition that closed the booking after the check above wins
            where = ~_closed_booking(booking_id).exists()
            if self.reject_stale:
                where = and_(where, or_(
                    table.c.reported_at.is_(None),
                    table.c.reported_at <= stmt.excluded.reported_at,
                ))
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.provider_id, table.c.booking_id],
                set_={
                    "latitude": stmt.excluded.latitude,
                    "longitude": stmt.excluded.longitude,
                    "accuracy": stmt.excluded.accuracy,
                    "heading": stmt.excluded.heading,
                    "speed": stmt.excluded.speed,
                    "reported_at": stmt.excluded.reported_at,
                    "is_active": True,
                    "updated_at": now,
                },
                where=where,
            ).returning(table.c.id, table.c.created_at, table.c.updated_at)

            result = await self.db.execute(stmt)
            written = result.first()
            await self.db.commit()

            row = await self.fetch_for_provider(provider_id, booking_id)
            closed = written is None and await self._booking_closed(booking_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Location upsert failed for provider=%s booking=%s: %s",
                provider_id, booking_id, e,
            )
            raise StorageError(str(e)) from e

        if closed:
            raise TrackingClosedError(f"Booking {booking_id} is no longer active")
        if written is None:
            logger.info(
                "Stale location rejected for provider=%s booking=%s (reported_at=%s)",
                provider_id, booking_id, reported_at,
            )
            return row

        event_type = (
            LocationChangeType.INSERT
            if written.created_at == written.updated_at
            else LocationChangeType.UPDATE
        )
        logger.debug(
            "Location %s for provider=%s booking=%s (%.5f, %.5f)",
            event_type.value, provider_id, booking_id, coords.latitude, coords.longitude,
        )
        await self._publish(event_type, row)
        return row

    async def deactivate(self, provider_id: str, booking_id: str) -> bool:
        """Mark the row inactive. Returns False when there was nothing active."""
        try:
            result = await self.db.execute(
                update(ProviderLocation)
                .where(
                    ProviderLocation.provider_id == provider_id,
                    ProviderLocation.booking_id == booking_id,
                    ProviderLocation.is_active.is_(True),
                )
                .values(is_active=False, updated_at=_utcnow())
            )
            await self.db.commit()
            changed = result.rowcount > 0
            row = await self.fetch_for_provider(provider_id, booking_id) if changed else None
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Location deactivate failed for provider=%s booking=%s: %s",
                provider_id, booking_id, e,
            )
            raise StorageError(str(e)) from e

        if row is not None:
            logger.info("Location sharing deactivated: provider=%s booking=%s", provider_id, booking_id)
            await self._publish(LocationChangeType.UPDATE, row)
        return changed

    async def deactivate_booking_rows(self, booking_id: str) -> list[str]:
        """Flag every active row of the booking inactive in the caller's transaction.

        Does not commit. Returns the affected provider ids; after committing,
        pass them to ``publish_deactivated`` so viewers see the change.
        """
        result = await self.db.execute(
            update(ProviderLocation)
            .where(
                ProviderLocation.booking_id == booking_id,
                ProviderLocation.is_active.is_(True),
            )
            .values(is_active=False, updated_at=_utcnow())
            .returning(ProviderLocation.provider_id)
            .execution_options(synchronize_session=False)
        )
        return list(result.scalars().all())

    async def publish_deactivated(self, booking_id: str, provider_ids: list[str]) -> None:
        for provider_id in provider_ids:
            row = await self.fetch_for_provider(provider_id, booking_id)
            if row is not None:
                logger.info("Location sharing closed with booking: provider=%s booking=%s", provider_id, booking_id)
                await self._publish(LocationChangeType.UPDATE, row)

    async def fetch_active(self, booking_id: str) -> Optional[ProviderLocation]:
        """Return the active row for a booking, newest first if several match."""
        try:
            result = await self.db.execute(
                select(ProviderLocation)
                .where(
                    ProviderLocation.booking_id == booking_id,
                    ProviderLocation.is_active.is_(True),
                )
                .order_by(ProviderLocation.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    async def fetch_for_provider(self, provider_id: str, booking_id: str) -> Optional[ProviderLocation]:
        """Return the row for the pair whether or not it is active."""
        try:
            result = await self.db.execute(
                select(ProviderLocation)
                .where(
                    ProviderLocation.provider_id == provider_id,
                    ProviderLocation.booking_id == booking_id,
                )
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    async def deactivate_stale(self, older_than: datetime) -> int:
        """Deactivate active rows not updated since ``older_than``."""
        cutoff = _as_naive_utc(older_than)
        result = await self.db.execute(
            select(ProviderLocation.provider_id, ProviderLocation.booking_id).where(
                ProviderLocation.is_active.is_(True),
                ProviderLocation.updated_at < cutoff,
            )
        )
        count = 0
        for provider_id, booking_id in result.all():
            if await self.deactivate(provider_id, booking_id):
                count += 1
        return count

    async def _publish(self, event_type: LocationChangeType, row: ProviderLocation) -> None:
        if self.feed is None:
            return
        await self.feed.publish(LocationChange(event_type, row.booking_id, location_to_dict(row)))

    async def _booking_closed(self, booking_id: str) -> bool:
        result = await self.db.execute(_closed_booking(booking_id))
        return result.first() is not None
