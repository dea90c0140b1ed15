"""Enums for Brocy - these define the valid values for statuses, roles and kinds."""
from enum import Enum


class ItemStatus(str, Enum):
    """The five states an Item can be in. No other states are allowed."""
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    BORROWED = "BORROWED"
    MAINTENANCE = "MAINTENANCE"
    RETIRED = "RETIRED"


class ReservationStatus(str, Enum):
    """Reservation lifecycle. COMPLETED, REJECTED and CANCELLED are terminal."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RESERVATION_STATUSES


TERMINAL_RESERVATION_STATUSES = frozenset({
    ReservationStatus.COMPLETED,
    ReservationStatus.REJECTED,
    ReservationStatus.CANCELLED,
})

# Reservations that still hold the item
OPEN_RESERVATION_STATUSES = (
    ReservationStatus.PENDING,
    ReservationStatus.APPROVED,
    ReservationStatus.ACTIVE,
)


class UserRole(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    MANAGER = "MANAGER"
    STAFF = "STAFF"
    BORROWER = "BORROWER"


STAFF_ROLES = (UserRole.SUPER_ADMIN, UserRole.MANAGER, UserRole.STAFF)


class ItemCondition(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    DAMAGED = "DAMAGED"


class NotificationType(str, Enum):
    """Late-return notice escalation levels."""
    REMINDER = "REMINDER"
    WARNING = "WARNING"
    FINAL_NOTICE = "FINAL_NOTICE"


class OverdueSeverity(str, Enum):
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
