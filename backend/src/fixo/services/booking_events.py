"""Audit trail helpers shared by the booking services."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixo.domain.enums import BookingEventType, BookingKind
from fixo.domain.models import BookingEvent


def build_event(
    booking_id: str,
    event_type: BookingEventType,
    actor,
    actor_id: Optional[str],
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    data: Optional[dict] = None,
    kind: BookingKind = BookingKind.SERVICE,
) -> BookingEvent:
    return BookingEvent(
        id=str(uuid.uuid4()),
        booking_id=booking_id,
        booking_kind=kind.value,
        event_type=event_type.value,
        actor=actor.value,
        actor_id=actor_id,
        from_status=from_status,
        to_status=to_status,
        data=data,
        created_at=datetime.now(timezone.utc),
    )


async def load_timeline(
    db: AsyncSession, booking_id: str, kind: BookingKind = BookingKind.SERVICE
) -> list[BookingEvent]:
    """Events for a booking, oldest first."""
    result = await db.execute(
        select(BookingEvent)
        .where(
            BookingEvent.booking_id == booking_id,
            BookingEvent.booking_kind == kind.value,
        )
        .order_by(BookingEvent.created_at.asc())
    )
    return list(result.scalars().all())
