"""Pydantic v2 schemas for API request/response validation."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fixo.domain.enums import (
    BookingStatus,
    PaymentStatus,
    PropertyBookingStatus,
    PropertyPaymentStatus,
    UserRole,
)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Schema for creating a new user."""

    email: str
    password: str = Field(min_length=6)
    full_name: str
    role: UserRole = UserRole.CUSTOMER
    phone_number: str | None = None
    business_name: str | None = None  # providers only

    @field_validator("role")
    @classmethod
    def no_self_service_admin(cls, v: UserRole) -> UserRole:
        if v == UserRole.ADMIN:
            raise ValueError("admin accounts cannot be created through signup")
        return v


class UserLogin(BaseModel):
    """Schema for user login."""

    email: str
    password: str


class UserResponse(BaseModel):
    """Schema for user API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: str | None = None
    phone_number: str | None = None
    role: str
    is_active: bool


class TokenResponse(BaseModel):
    """Schema for JWT token responses."""

    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ---------------------------------------------------------------------------
# Service bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    service_id: str
    booking_date: date
    booking_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    customer_address: str
    customer_notes: str | None = None


class CheckoutBookingCreate(BaseModel):
    service_id: str


class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    provider_notes: str | None = None


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus
    manual: bool = False


class AssignProviderRequest(BaseModel):
    provider_id: str


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    provider_id: str | None = None
    service_id: str
    booking_date: date
    booking_time: str
    customer_address: str | None = None
    customer_notes: str | None = None
    provider_notes: str | None = None
    total_amount: float
    status: BookingStatus
    payment_status: PaymentStatus
    payment_id: str | None = None
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None
    allowed_actions: list[str] = []


class CheckoutResponse(BaseModel):
    id: str
    url: str
    booking_id: str


class BookingEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    event_type: str
    actor: str
    actor_id: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    data: dict | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Property bookings
# ---------------------------------------------------------------------------


class PropertyBookingCreate(BaseModel):
    property_id: str
    start_date: date
    end_date: date
    tenant_notes: str | None = None


class PropertyBookingStatusUpdate(BaseModel):
    status: PropertyBookingStatus
    owner_notes: str | None = None


class PropertyPaymentStatusUpdate(BaseModel):
    payment_status: PropertyPaymentStatus


class PropertyBookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    property_id: str
    tenant_id: str
    start_date: date
    end_date: date
    monthly_rent: float
    total_amount: float
    status: PropertyBookingStatus
    payment_status: PropertyPaymentStatus
    tenant_notes: str | None = None
    owner_notes: str | None = None
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Live location
# ---------------------------------------------------------------------------


class LocationReport(BaseModel):
    """A fix posted by the provider's device."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[datetime] = None


class LocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_id: str
    booking_id: str
    latitude: float
    longitude: float
    accuracy: float | None = None
    heading: float | None = None
    speed: float | None = None
    is_active: bool
    reported_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
