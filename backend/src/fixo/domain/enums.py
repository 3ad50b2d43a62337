"""Domain enumerations for the Fixo marketplace.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class UserRole(str, Enum):
    """Platform role stored on the user row."""

    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class BookingStatus(str, Enum):
    """Lifecycle status of a service booking."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAYMENT_PENDING = "payment_pending"

    @classmethod
    def _missing_(cls, value):
        # Older rows and clients use "accepted" for a provider-accepted booking.
        if value == "accepted":
            return cls.CONFIRMED
        return None


class PaymentStatus(str, Enum):
    """Payment axis of a service booking, independent of BookingStatus."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    PAY_AFTER_SERVICE = "pay_after_service"


class PropertyBookingStatus(str, Enum):
    """Lifecycle status of a property rental booking."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PropertyPaymentStatus(str, Enum):
    """Payment status of a property rental booking."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class BookingActor(str, Enum):
    """Actor performing a service booking action."""

    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class PropertyActor(str, Enum):
    """Actor performing a property booking action, relative to the booking."""

    TENANT = "tenant"
    OWNER = "owner"
    ADMIN = "admin"
    SYSTEM = "system"


class BookingKind(str, Enum):
    """Which booking table an audit event refers to."""

    SERVICE = "service"
    PROPERTY = "property"


class BookingEventType(str, Enum):
    """Audit trail event types for bookings."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PAYMENT_STATUS_CHANGED = "payment_status_changed"
    PROVIDER_ASSIGNED = "provider_assigned"
    CHECKOUT_STARTED = "checkout_started"
    CHECKOUT_EXPIRED = "checkout_expired"


class SharingState(str, Enum):
    """State of a provider's live location sharing session."""

    IDLE = "idle"
    SHARING = "sharing"
    ERROR = "error"


class LocationChangeType(str, Enum):
    """Row-level change kinds delivered to location viewers."""

    INSERT = "insert"
    UPDATE = "update"
