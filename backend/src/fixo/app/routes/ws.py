"""WebSocket handlers for live location sharing and viewing."""

import asyncio
import json
import logging
import uuid as uuid_mod
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from fixo.app.routes.auth import get_user_from_token
from fixo.domain.enums import BookingActor, SharingState
from fixo.infra.database import async_session
from fixo.services.booking_service import BookingService
from fixo.services.booking_state_machine import TRACKABLE_STATES, BookingError, parse_status
from fixo.services.location_feed import LocationChange, location_feed
from fixo.services.location_store import LocationStore, StorageError, location_to_dict
from fixo.services.notifications import Notice, StaticUserProvider
from fixo.services.position_source import Position, PositionError, PositionSource
from fixo.services.tracking_session import TrackingSession

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])

# Application close codes
WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_NOT_TRACKABLE = 4409


class ConnectionManager:
    """Manages WebSocket connections with group support.

    Groups are per booking ("share_<id>", "view_<id>") so a broadcast only
    reaches the sockets of that booking.
    """

    def __init__(self):
        # client_id -> WebSocket (for direct messaging)
        self.active_connections: dict[str, WebSocket] = {}
        # group_name -> set of client_ids
        self.groups: dict[str, set[str]] = {}

    async def connect(
        self, websocket: WebSocket, client_id: str, group: Optional[str] = None
    ):
        """Accept a WebSocket and optionally add it to a group."""
        await websocket.accept()
        self.active_connections[client_id] = websocket
        if group:
            self.add_to_group(client_id, group)

    def add_to_group(self, client_id: str, group: str):
        self.groups.setdefault(group, set()).add(client_id)

    def disconnect(self, client_id: str):
        """Remove a client from all groups and drop its connection."""
        self.active_connections.pop(client_id, None)
        for group_members in self.groups.values():
            group_members.discard(client_id)

    async def send_json(self, client_id: str, data: dict):
        """Send JSON to a specific client."""
        ws = self.active_connections.get(client_id)
        if ws:
            try:
                await ws.send_json(data)
            except Exception:
                logger.warning("Failed to send to client %s, removing", client_id)
                self.disconnect(client_id)

    async def broadcast_to_group(self, group: str, data: dict):
        """Broadcast a JSON message to every client in a group."""
        for cid in list(self.groups.get(group, set())):
            await self.send_json(cid, data)


manager = ConnectionManager()


class WebSocketNotificationSink:
    """Delivers tracking notices to the provider's socket."""

    def __init__(self, connections: ConnectionManager, client_id: str):
        self.connections = connections
        self.client_id = client_id

    async def notify(self, notice: Notice) -> None:
        await self.connections.send_json(self.client_id, {"type": "notice", "data": notice.to_dict()})


async def _authorize(websocket: WebSocket, token: str, booking_id: str):
    """Return (booking, role) for the token's user, or close the socket and return None."""
    async with async_session() as db:
        user = await get_user_from_token(db, token) if token else None
        if user is None:
            await websocket.close(code=WS_UNAUTHORIZED)
            return None
        service = BookingService(db, StaticUserProvider.from_user(user))
        try:
            booking = await service.get_booking(booking_id)
            role = await service.role_for(booking)
        except BookingError as e:
            logger.info("WebSocket refused for booking %s: %s", booking_id, e)
            await websocket.close(code=WS_FORBIDDEN)
            return None
    return booking, role


# ---------------------------------------------------------------------------
# Provider: share location
# ---------------------------------------------------------------------------


@router.websocket("/ws/bookings/{booking_id}/share")
async def share_location(websocket: WebSocket, booking_id: str, token: str = Query("")):
    """Bridge a provider's device to a TrackingSession.

    Protocol (client -> server):
        {"type": "start", "supported": true}
        {"type": "stop"}
        {"type": "force_update"}
        {"type": "position", "data": {"latitude": .., "longitude": .., "accuracy": .., "timestamp": ..}}
        {"type": "error", "data": {"code": 1, "message": "..."}}
        {"type": "ping"}
    Server -> client: {"type": "state" | "notice" | "pong" | "error", "data": {...}}
    """
    authorized = await _authorize(websocket, token, booking_id)
    if authorized is None:
        return
    booking, role = authorized
    if role != BookingActor.PROVIDER:
        await websocket.close(code=WS_FORBIDDEN)
        return
    if parse_status(booking.status) not in TRACKABLE_STATES:
        await websocket.close(code=WS_NOT_TRACKABLE)
        return
    client_id = f"share_{booking_id}_{uuid_mod.uuid4().hex[:8]}"
    await manager.connect(websocket, client_id, group=f"share_{booking_id}")
    logger.info("Provider %s connected to share booking %s", booking.provider_id, booking_id)

    source = PositionSource()
    session = TrackingSession(
        provider_id=booking.provider_id,
        booking_id=booking_id,
        position_source=source,
        session_factory=async_session,
        notifier=WebSocketNotificationSink(manager, client_id),
        feed=location_feed,
    )
    pending: set[asyncio.Task] = set()

    async def send_state():
        await manager.send_json(client_id, {"type": "state", "data": session.snapshot()})

    try:
        await session.load_existing()
        await send_state()

        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            msg_type = msg.get("type")

            if msg_type == "start":
                source.supported = bool(msg.get("supported", True))
                await session.start()
                await send_state()
            elif msg_type == "stop":
                await session.stop()
                await send_state()
            elif msg_type == "force_update":
                # Runs in the background: it waits for the device's next position message
                task = asyncio.create_task(session.force_update())
                pending.add(task)
                task.add_done_callback(pending.discard)
            elif msg_type == "position":
                try:
                    source.report(Position.from_dict(msg.get("data") or {}))
                except (KeyError, TypeError, ValueError) as e:
                    await manager.send_json(client_id, {"type": "error", "data": {"message": f"Invalid position: {e}"}})
            elif msg_type == "error":
                try:
                    source.report_error(PositionError.from_dict(msg.get("data") or {}))
                except (KeyError, TypeError, ValueError) as e:
                    await manager.send_json(client_id, {"type": "error", "data": {"message": f"Invalid error report: {e}"}})
            elif msg_type == "state":
                await send_state()
            elif msg_type == "ping":
                await manager.send_json(client_id, {"type": "pong"})
    except WebSocketDisconnect:
        logger.info("Provider share socket disconnected: %s", client_id)
    except Exception as e:
        logger.error("Share WebSocket error for %s: %s", client_id, e)
    finally:
        for task in list(pending):
            task.cancel()
        manager.disconnect(client_id)
        if session.state != SharingState.IDLE or session.watch is not None:
            await session.stop(notify=False)


# ---------------------------------------------------------------------------
# Customer: view location
# ---------------------------------------------------------------------------


@router.websocket("/ws/bookings/{booking_id}/location")
async def view_location(websocket: WebSocket, booking_id: str, token: str = Query("")):
    """Push the provider's position to anyone with access to the booking.

    Sends {"type": "snapshot", "data": row|null} on connect and on
    {"type": "refresh"}, then {"type": "location_change", ...} per write.
    """
    authorized = await _authorize(websocket, token, booking_id)
    if authorized is None:
        return

    client_id = f"view_{booking_id}_{uuid_mod.uuid4().hex[:8]}"
    await manager.connect(websocket, client_id, group=f"view_{booking_id}")
    logger.info("Viewer %s connected to booking %s", client_id, booking_id)

    async def snapshot() -> dict:
        try:
            async with async_session() as db:
                row = await LocationStore(db).fetch_active(booking_id)
        except StorageError as e:
            return {"type": "error", "data": {"message": str(e)}}
        return {"type": "snapshot", "data": location_to_dict(row) if row else None}

    # Changes published while the snapshot is read are held back and sent after it
    buffered: Optional[list[LocationChange]] = []

    async def on_change(change: LocationChange):
        if buffered is not None:
            buffered.append(change)
            return
        await manager.send_json(client_id, change.to_dict())

    subscription = location_feed.subscribe(booking_id, on_change)
    try:
        await manager.send_json(client_id, await snapshot())
        while buffered:
            await manager.send_json(client_id, buffered.pop(0).to_dict())
        buffered = None
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if msg.get("type") == "refresh":
                await manager.send_json(client_id, await snapshot())
            elif msg.get("type") == "ping":
                await manager.send_json(client_id, {"type": "pong"})
    except WebSocketDisconnect:
        logger.info("Viewer disconnected: %s", client_id)
    except Exception as e:
        logger.error("Viewer WebSocket error for %s: %s", client_id, e)
    finally:
        subscription.unsubscribe()
        manager.disconnect(client_id)
