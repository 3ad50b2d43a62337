"""SQLAlchemy ORM models for the Fixo platform.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from fixo.infra.database import Base


# ---------------------------------------------------------------------------
# Auth / User
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user for authentication."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=True)
    phone_number = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="customer")  # customer, provider, admin
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())

    provider_profile = relationship("ProviderProfile", back_populates="user", uselist=False)


# ---------------------------------------------------------------------------
# Services catalogue
# ---------------------------------------------------------------------------


class ProviderProfile(Base):
    """Business profile of a user who performs home services."""

    __tablename__ = "provider_profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    business_name = Column(String(255), nullable=True)
    rating = Column(Float, nullable=True)
    is_available = Column(Boolean, default=True)
    is_verified = Column(Boolean, default=False)
    created_at = Column(DateTime, default=func.now())

    user = relationship("User", back_populates="provider_profile")


class Service(Base):
    """A bookable home service (plumbing, cleaning, ...)."""

    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    base_price = Column(Numeric(12, 2), nullable=False)
    duration_minutes = Column(Integer, default=60)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())


class ProviderService(Base):
    """Link between a provider and a service they offer."""

    __tablename__ = "provider_services"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id = Column(String(36), ForeignKey("provider_profiles.id"), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False, index=True)
    custom_price = Column(Numeric(12, 2), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())


# ---------------------------------------------------------------------------
# Service bookings
# ---------------------------------------------------------------------------


class ServiceBooking(Base):
    """A customer's booking of a home service."""

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    # Null until assigned (automatically at creation or by an admin)
    provider_id = Column(String(36), ForeignKey("provider_profiles.id"), nullable=True, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False)

    booking_date = Column(Date, nullable=False)
    booking_time = Column(String(10), nullable=False)  # e.g. "09:00"
    customer_address = Column(Text, nullable=True)
    customer_notes = Column(Text, nullable=True)
    provider_notes = Column(Text, nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(30), nullable=False, default="pending", index=True)  # BookingStatus
    payment_status = Column(String(30), nullable=False, default="pending")  # PaymentStatus
    payment_id = Column(String(255), nullable=True, index=True)  # Stripe checkout session id

    # Bumped on every conditional write; guards concurrent transitions
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    service = relationship("Service")
    provider = relationship("ProviderProfile")


class BookingEvent(Base):
    """Immutable audit trail entry for booking state changes."""

    __tablename__ = "booking_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), nullable=False, index=True)
    booking_kind = Column(String(20), nullable=False, default="service")  # BookingKind
    event_type = Column(String(50), nullable=False)  # BookingEventType
    actor = Column(String(20), nullable=False)  # BookingActor / PropertyActor
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class Property(Base):
    """A rental property listed by its owner."""

    __tablename__ = "properties"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    location = Column(String(255), nullable=False)
    property_type = Column(String(50), nullable=False, default="apartment")
    monthly_rent = Column(Numeric(12, 2), nullable=False)
    is_available = Column(Boolean, default=True)
    images = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class PropertyBooking(Base):
    """A tenant's rental request against a property."""

    __tablename__ = "property_bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False, index=True)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    monthly_rent = Column(Numeric(12, 2), nullable=False)  # Snapshotted from the property
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(30), nullable=False, default="pending", index=True)
    payment_status = Column(String(30), nullable=False, default="pending")
    payment_id = Column(String(255), nullable=True)
    tenant_notes = Column(Text, nullable=True)
    owner_notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    property = relationship("Property")


# ---------------------------------------------------------------------------
# Live location
# ---------------------------------------------------------------------------


class ProviderLocation(Base):
    """Latest known position of a provider for one booking.

    Overwritten on every report; this is not a trajectory log.
    """

    __tablename__ = "provider_locations"
    __table_args__ = (
        UniqueConstraint("provider_id", "booking_id", name="uq_provider_locations_provider_booking"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id = Column(String(36), nullable=False, index=True)
    booking_id = Column(String(36), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)  # meters
    heading = Column(Float, nullable=True)  # degrees
    speed = Column(Float, nullable=True)  # m/s
    is_active = Column(Boolean, nullable=False, default=True)
    reported_at = Column(DateTime, nullable=True)  # device fix time
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now())
