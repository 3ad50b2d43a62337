"""Shared test infrastructure for the Fixo test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- session_factory: sessionmaker over a file-backed SQLite database, for code
  that opens its own sessions (tracking sessions, sweeper)
- notices: in-memory notification sink
- make_user / make_provider / make_service / make_property: row factories
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from fixo.infra.database import Base

import fixo.domain.models  # noqa: F401

from fixo.domain.models import Property, ProviderProfile, ProviderService, Service, User
from fixo.services.notifications import CollectingNotificationSink


# ---------------------------------------------------------------------------
# Database session fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """Sessionmaker whose sessions all see the same committed data."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fixo-test.db'}",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def notices():
    return CollectingNotificationSink()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        customer = await make_user()
        admin = await make_user(role="admin")
    """
    async def _factory(
        role: str = "customer",
        email: str | None = None,
        full_name: str = "Test User",
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@test.com",
            password_hash="not-a-real-hash",
            full_name=full_name,
            role=role,
            is_active=True,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_service(db_session):
    """Factory that creates an active Service row."""
    async def _factory(
        name: str = "Plumbing",
        base_price: str = "500.00",
        is_active: bool = True,
    ) -> Service:
        service = Service(
            id=str(uuid.uuid4()),
            name=name,
            base_price=Decimal(base_price),
            is_active=is_active,
        )
        db_session.add(service)
        await db_session.flush()
        return service

    return _factory


@pytest.fixture
def make_provider(db_session, make_user):
    """Factory that creates a provider User + ProviderProfile, optionally offering a service.

    Usage:
        user, profile = await make_provider(service=svc, custom_price="650.00")
    """
    async def _factory(
        service: Service | None = None,
        custom_price: str | None = None,
        created_at=None,
    ) -> tuple[User, ProviderProfile]:
        user = await make_user(role="provider", full_name="Test Provider")
        profile = ProviderProfile(id=str(uuid.uuid4()), user_id=user.id, business_name="Test Co")
        db_session.add(profile)
        await db_session.flush()
        if service is not None:
            link = ProviderService(
                id=str(uuid.uuid4()),
                provider_id=profile.id,
                service_id=service.id,
                custom_price=Decimal(custom_price) if custom_price else None,
                is_active=True,
            )
            if created_at is not None:
                link.created_at = created_at
            db_session.add(link)
            await db_session.flush()
        return user, profile

    return _factory


@pytest.fixture
def make_property(db_session):
    """Factory that creates an available Property owned by ``owner``."""
    async def _factory(
        owner: User,
        monthly_rent: str = "1000.00",
        is_available: bool = True,
    ) -> Property:
        prop = Property(
            id=str(uuid.uuid4()),
            owner_id=owner.id,
            title="2BHK near the park",
            location="Bengaluru",
            monthly_rent=Decimal(monthly_rent),
            is_available=is_available,
        )
        db_session.add(prop)
        await db_session.flush()
        return prop

    return _factory
