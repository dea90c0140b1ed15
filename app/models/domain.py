"""Domain models - users, the items they borrow, reservations and returns."""
from datetime import datetime
from sqlalchemy import (
    Boolean, Column, String, Integer, Float, DateTime, ForeignKey, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from app.database import Base
from app.models.enums import (
    ItemStatus,
    ReservationStatus,
    UserRole,
    ItemCondition,
    OPEN_RESERVATION_STATUSES,
)

TRUST_SCORE_MIN = 0.0
TRUST_SCORE_MAX = 100.0


class User(Base):
    """
    A person who borrows items or administers them.

    Invariants:
    - trust_score stays within 0..100
    - Only the overdue sweep and admin actions change trust_score
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.BORROWER, index=True)
    trust_score = Column(Float, nullable=False, default=TRUST_SCORE_MAX)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservations = relationship(
        "Reservation", back_populates="user", foreign_keys="Reservation.user_id"
    )


class Item(Base):
    """
    A physical asset. Its status is a materialized view of its reservations.

    Invariants enforced here:
    - Status is always one of the five allowed states
    - version is bumped on every UPDATE; a stale version aborts the flush
    """
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    category = Column(String, nullable=False)
    condition = Column(SQLEnum(ItemCondition), nullable=False, default=ItemCondition.EXCELLENT)
    status = Column(SQLEnum(ItemStatus), nullable=False, default=ItemStatus.AVAILABLE, index=True)
    location = Column(String, nullable=True)
    serial_number = Column(String, nullable=True)
    value = Column(Float, nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservations = relationship("Reservation", back_populates="item", cascade="all, delete-orphan")
    returns = relationship("Return", back_populates="item", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    @property
    def open_reservations(self):
        """Reservations that still hold the item (PENDING, APPROVED, ACTIVE)."""
        return [r for r in self.reservations if r.status in OPEN_RESERVATION_STATUSES]


class Reservation(Base):
    """
    A time-bounded claim by a user on an item.

    Invariants:
    - Once COMPLETED, REJECTED or CANCELLED it is never changed again
    - rejection_reason is set whenever it is rejected or cancelled by the system
    """
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    actual_start_date = Column(DateTime, nullable=True)
    actual_end_date = Column(DateTime, nullable=True)
    status = Column(SQLEnum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING, index=True)
    purpose = Column(String, nullable=True)

    approved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String, nullable=True)
    pickup_confirmed = Column(Boolean, nullable=False, default=False)
    pickup_confirmed_at = Column(DateTime, nullable=True)
    notes = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    item = relationship("Item", back_populates="reservations")
    user = relationship("User", back_populates="reservations", foreign_keys=[user_id])
    approved_by = relationship("User", foreign_keys=[approved_by_id])
    returns = relationship("Return", back_populates="reservation", cascade="all, delete-orphan")


class Return(Base):
    """Physical hand-back of an item. Append-only, one per return event."""
    __tablename__ = "returns"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    return_date = Column(DateTime, nullable=False)
    condition_on_return = Column(SQLEnum(ItemCondition), nullable=False)
    notes = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    reservation = relationship("Reservation", back_populates="returns")
    item = relationship("Item", back_populates="returns")
