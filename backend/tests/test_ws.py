"""Tests for the WebSocket connection manager and the share and viewer endpoints.

The handlers open their own sessions, so they run against a file-backed
database shared with the test. Each test drives the app through one
TestClient so every socket lives on the same event loop.
"""

import asyncio
import time
import uuid
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from fixo.app.routes import ws as ws_routes
from fixo.app.routes.ws import ConnectionManager, WebSocketNotificationSink
from fixo.domain.models import ProviderProfile, Service, ServiceBooking, User
from fixo.infra.database import Base
from fixo.services.auth_service import create_access_token
from fixo.services.location_feed import location_feed
from fixo.services.location_store import LocationStore
from fixo.services.notifications import Notice
from fixo.services.position_source import Coordinates


@pytest.fixture
async def ws_sessions(tmp_path, monkeypatch):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fixo-ws.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(ws_routes, "async_session", sessions)
    yield sessions

    await engine.dispose()


@pytest.fixture
def seed_booking(ws_sessions):
    """Factory that stores a customer, a provider and a booking between them.

    Returns the booking id and an access token per party.
    """
    async def _factory(status: str = "confirmed") -> dict:
        def _user(role):
            return User(
                id=str(uuid.uuid4()),
                email=f"{role}-{uuid.uuid4().hex[:8]}@test.com",
                password_hash="not-a-real-hash",
                full_name=f"Test {role}",
                role=role,
                is_active=True,
            )

        customer, provider, stranger = _user("customer"), _user("provider"), _user("customer")
        profile = ProviderProfile(id=str(uuid.uuid4()), user_id=provider.id, business_name="Test Co")
        service = Service(id=str(uuid.uuid4()), name="Plumbing", base_price=Decimal("500.00"), is_active=True)
        booking = ServiceBooking(
            id=str(uuid.uuid4()),
            customer_id=customer.id,
            provider_id=profile.id,
            service_id=service.id,
            booking_date=date.today() + timedelta(days=1),
            booking_time="10:00",
            customer_address="12 MG Road",
            total_amount=Decimal("500.00"),
            status=status,
            payment_status="pending",
        )
        async with ws_sessions() as db:
            db.add_all([customer, provider, stranger, profile, service, booking])
            await db.commit()

        return {
            "booking_id": booking.id,
            "profile_id": profile.id,
            "customer": create_access_token(customer.id, customer.role),
            "provider": create_access_token(provider.id, provider.role),
            "stranger": create_access_token(stranger.id, stranger.role),
        }

    return _factory


def _client() -> TestClient:
    app = FastAPI()
    app.include_router(ws_routes.router)
    return TestClient(app)


def _share_url(parties: dict, token: str = "provider") -> str:
    return f"/ws/bookings/{parties['booking_id']}/share?token={parties[token]}"


def _view_url(parties: dict, token: str = "customer") -> str:
    return f"/ws/bookings/{parties['booking_id']}/location?token={parties[token]}"


def _receive_until(ws, msg_type: str) -> dict:
    """Skip messages of other types until one of ``msg_type`` arrives."""
    while True:
        msg = ws.receive_json()
        if msg["type"] == msg_type:
            return msg


def _wait_for_state(ws, predicate, attempts: int = 100) -> dict:
    """Ask the share socket for its state until ``predicate`` holds."""
    for _ in range(attempts):
        ws.send_json({"type": "state"})
        state = _receive_until(ws, "state")["data"]
        if predicate(state):
            return state
        time.sleep(0.02)
    raise AssertionError("share state never matched")


async def _location(sessions, parties: dict):
    async with sessions() as db:
        return await LocationStore(db).fetch_for_provider(parties["profile_id"], parties["booking_id"])


async def _eventually(check, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while True:
        result = await check()
        if result or time.monotonic() > deadline:
            return result
        await asyncio.sleep(0.02)


def _start_sharing(share) -> None:
    _receive_until(share, "state")
    share.send_json({"type": "start", "supported": True})
    _receive_until(share, "state")


def _send_fix(share, lat: float = 12.9716, lng: float = 77.5946, accuracy: float = 8.0) -> None:
    share.send_json({
        "type": "position",
        "data": {"latitude": lat, "longitude": lng, "accuracy": accuracy, "timestamp": int(time.time() * 1000)},
    })


# ============================================================================
# Connection manager
# ============================================================================

def _socket():
    ws = AsyncMock()
    ws.send_json = AsyncMock()
    return ws


class TestConnectionManager:
    async def test_group_broadcast(self):
        manager = ConnectionManager()
        a, b, other = _socket(), _socket(), _socket()
        await manager.connect(a, "a", group="view_book-1")
        await manager.connect(b, "b", group="view_book-1")
        await manager.connect(other, "c", group="view_book-2")

        await manager.broadcast_to_group("view_book-1", {"type": "ping"})

        a.send_json.assert_awaited_once_with({"type": "ping"})
        b.send_json.assert_awaited_once_with({"type": "ping"})
        other.send_json.assert_not_awaited()

    async def test_failed_send_drops_client(self):
        manager = ConnectionManager()
        ws = _socket()
        ws.send_json.side_effect = RuntimeError("closed")
        await manager.connect(ws, "a", group="share_book-1")

        await manager.send_json("a", {"type": "state"})

        assert "a" not in manager.active_connections
        assert "a" not in manager.groups["share_book-1"]

    async def test_send_to_unknown_client_is_noop(self):
        await ConnectionManager().send_json("ghost", {"type": "state"})


class TestWebSocketNotificationSink:
    async def test_notice_envelope(self):
        manager = ConnectionManager()
        ws = _socket()
        await manager.connect(ws, "share-1")

        await WebSocketNotificationSink(manager, "share-1").notify(
            Notice("Location updated", "Your current location has been sent to the customer")
        )

        ws.send_json.assert_awaited_once_with({
            "type": "notice",
            "data": {
                "title": "Location updated",
                "description": "Your current location has been sent to the customer",
                "variant": "default",
            },
        })


# ============================================================================
# Handshake
# ============================================================================

class TestSocketAccess:

    async def test_missing_token_closes_unauthorized(self, seed_booking):
        parties = await seed_booking()
        with _client() as client:
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(f"/ws/bookings/{parties['booking_id']}/location"):
                    pass
        assert exc.value.code == ws_routes.WS_UNAUTHORIZED

    async def test_bad_token_closes_unauthorized(self, seed_booking):
        parties = await seed_booking()
        parties["forged"] = "not-a-jwt"
        with _client() as client:
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(_share_url(parties, "forged")):
                    pass
        assert exc.value.code == 4401

    async def test_unrelated_user_cannot_view(self, seed_booking):
        parties = await seed_booking()
        with _client() as client:
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(_view_url(parties, "stranger")):
                    pass
        assert exc.value.code == 4403

    async def test_customer_cannot_share(self, seed_booking):
        parties = await seed_booking()
        with _client() as client:
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(_share_url(parties, "customer")):
                    pass
        assert exc.value.code == ws_routes.WS_FORBIDDEN

    @pytest.mark.parametrize("status", ["pending", "payment_pending", "completed", "cancelled"])
    async def test_share_needs_an_active_booking(self, seed_booking, status):
        parties = await seed_booking(status=status)
        with _client() as client:
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(_share_url(parties)):
                    pass
        assert exc.value.code == ws_routes.WS_NOT_TRACKABLE


# ============================================================================
# Provider share socket
# ============================================================================

class TestShareSocket:

    async def test_start_position_stop(self, seed_booking, ws_sessions):
        parties = await seed_booking()
        with _client() as client:
            with client.websocket_connect(_share_url(parties)) as share:
                assert share.receive_json() == {
                    "type": "state",
                    "data": {"state": "idle", "last_update": None, "accuracy": None},
                }

                share.send_json({"type": "start", "supported": True})
                assert _receive_until(share, "notice")["data"]["title"] == "Location sharing started"
                assert _receive_until(share, "state")["data"]["state"] == "sharing"

                _send_fix(share)
                state = _wait_for_state(share, lambda s: s["last_update"] is not None)
                assert state["accuracy"] == 8.0

                share.send_json({"type": "stop"})
                assert _receive_until(share, "notice")["data"]["title"] == "Location sharing stopped"
                assert _receive_until(share, "state")["data"]["state"] == "idle"

        row = await _location(ws_sessions, parties)
        assert row.latitude == 12.9716
        assert row.is_active is False

    async def test_unsupported_device_is_refused(self, seed_booking):
        parties = await seed_booking()
        with _client() as client:
            with client.websocket_connect(_share_url(parties)) as share:
                _receive_until(share, "state")
                share.send_json({"type": "start", "supported": False})
                assert _receive_until(share, "notice")["data"]["variant"] == "destructive"
                assert _receive_until(share, "state")["data"]["state"] == "idle"

    async def test_invalid_position_is_reported(self, seed_booking):
        parties = await seed_booking()
        with _client() as client:
            with client.websocket_connect(_share_url(parties)) as share:
                _start_sharing(share)
                share.send_json({"type": "position", "data": {"latitude": 12.9}})
                assert "Invalid position" in _receive_until(share, "error")["data"]["message"]

                share.send_json({"type": "ping"})
                assert share.receive_json() == {"type": "pong"}

    async def test_disconnect_stops_sharing(self, seed_booking, ws_sessions):
        parties = await seed_booking()
        with _client() as client:
            with client.websocket_connect(_share_url(parties)) as share:
                _start_sharing(share)
                _send_fix(share)
                _wait_for_state(share, lambda s: s["last_update"] is not None)
            # The socket closed without a stop message

            async def deactivated():
                row = await _location(ws_sessions, parties)
                return row is not None and row.is_active is False

            assert await _eventually(deactivated)


# ============================================================================
# Viewer socket
# ============================================================================

class TestViewerSocket:

    async def test_snapshot_carries_the_active_row(self, seed_booking, ws_sessions):
        parties = await seed_booking()
        async with ws_sessions() as db:
            await LocationStore(db).upsert_location(
                parties["profile_id"], parties["booking_id"], Coordinates(12.9716, 77.5946, accuracy=5.0),
            )

        with _client() as client:
            with client.websocket_connect(_view_url(parties)) as viewer:
                snapshot = viewer.receive_json()
                assert snapshot["type"] == "snapshot"
                assert snapshot["data"]["latitude"] == 12.9716
                assert snapshot["data"]["is_active"] is True

                viewer.send_json({"type": "refresh"})
                assert viewer.receive_json()["data"]["provider_id"] == parties["profile_id"]

    async def test_viewer_follows_share_socket(self, seed_booking):
        parties = await seed_booking()
        booking_id = parties["booking_id"]
        with _client() as client:
            with client.websocket_connect(_view_url(parties)) as viewer:
                assert viewer.receive_json() == {"type": "snapshot", "data": None}
                assert location_feed.subscriber_count(booking_id) == 1

                with client.websocket_connect(_share_url(parties)) as share:
                    _start_sharing(share)
                    _send_fix(share, lat=12.95)
                    change = _receive_until(viewer, "location_change")
                    assert change["event_type"] == "insert"
                    assert change["booking_id"] == booking_id
                    assert change["data"]["latitude"] == 12.95
                    assert change["data"]["is_active"] is True

                    _send_fix(share, lat=12.96)
                    change = _receive_until(viewer, "location_change")
                    assert change["event_type"] == "update"
                    assert change["data"]["latitude"] == 12.96

                # Share socket gone: the viewer sees the row go inactive
                change = _receive_until(viewer, "location_change")
                assert change["data"]["is_active"] is False

            async def unsubscribed():
                return location_feed.subscriber_count(booking_id) == 0

            assert await _eventually(unsubscribed)

    async def test_provider_may_view(self, seed_booking):
        parties = await seed_booking(status="completed")
        with _client() as client:
            with client.websocket_connect(_view_url(parties, "provider")) as viewer:
                assert viewer.receive_json() == {"type": "snapshot", "data": None}
