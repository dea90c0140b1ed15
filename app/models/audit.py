"""
Audit logging and idempotency models.

AuditLog is the immutable, append-only record of every status change,
notification and penalty. ActionMarker is a narrow index over the same
events keyed by (entity, action kind) so that "was this already done in
the last N hours" is a primary-key lookup rather than a log scan.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON, PrimaryKeyConstraint
from app.database import Base


class AuditLog(Base):
    """
    Immutable audit entry.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    action = Column(String, nullable=False, index=True)  # e.g., "BULK_UPDATE_STATUS"
    entity_type = Column(String, nullable=False)  # e.g., "Item", "Reservation"
    entity_id = Column(String, nullable=False, index=True)
    user_id = Column(Integer, nullable=True)  # Nullable for system events
    changes = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class ActionMarker(Base):
    """Last time a side-effecting action kind was applied to an entity."""
    __tablename__ = "action_markers"

    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    action_kind = Column(String, nullable=False)
    last_action_at = Column(DateTime, nullable=False)
    audit_log_id = Column(Integer, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint("entity_type", "entity_id", "action_kind"),
    )


class AuditAction:
    """Audit action names."""
    # Item status
    AUTO_UPDATE_STATUS = "AUTO_UPDATE_STATUS"
    UPDATE_STATUS = "UPDATE_STATUS"
    BULK_UPDATE_STATUS = "BULK_UPDATE_STATUS"
    DELETE_ITEM = "DELETE_ITEM"

    # Reservation lifecycle
    RESERVATION_STATUS_CHANGED = "RESERVATION_STATUS_CHANGED"
    RECORD_RETURN = "RECORD_RETURN"

    # Overdue handling
    SEND_LATE_RETURN_NOTIFICATION = "SEND_LATE_RETURN_NOTIFICATION"
    SEND_LATE_RETURN_NOTIFICATION_AUTO = "SEND_LATE_RETURN_NOTIFICATION_AUTO"
    APPLY_CRITICAL_OVERDUE_PENALTY = "APPLY_CRITICAL_OVERDUE_PENALTY"


STATUS_CHANGE_ACTIONS = (
    AuditAction.UPDATE_STATUS,
    AuditAction.BULK_UPDATE_STATUS,
    AuditAction.AUTO_UPDATE_STATUS,
)


class MarkerKind:
    """Idempotency marker kinds. Both notification actions share one kind."""
    LATE_RETURN_NOTIFICATION = "late_return_notification"
    CRITICAL_OVERDUE_PENALTY = "critical_overdue_penalty"
