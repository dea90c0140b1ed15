"""Audit log writer and idempotency marker helpers."""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.models.audit import AuditLog, ActionMarker


def record_audit(
    db: Session,
    action: str,
    entity_type: str,
    entity_id,
    user_id: Optional[int],
    changes: Optional[dict] = None,
    created_at: Optional[datetime] = None
) -> AuditLog:
    """
    Add an audit row to the current transaction.

    The caller owns the commit; the row becomes visible together with
    the writes it describes.
    """
    log = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        user_id=user_id,
        changes=changes,
        created_at=created_at or datetime.utcnow()
    )
    db.add(log)
    db.flush()
    return log


def action_taken_since(
    db: Session,
    entity_type: str,
    entity_id,
    action_kind: str,
    since: datetime
) -> bool:
    """True when the marker for (entity, action kind) is at or after `since`."""
    marker = db.get(ActionMarker, (entity_type, str(entity_id), action_kind))
    return marker is not None and marker.last_action_at >= since


def mark_action(
    db: Session,
    entity_type: str,
    entity_id,
    action_kind: str,
    at: datetime,
    audit_log: Optional[AuditLog] = None
) -> ActionMarker:
    """Upsert the idempotency marker in the current transaction."""
    key = (entity_type, str(entity_id), action_kind)
    marker = db.get(ActionMarker, key)
    if marker is None:
        marker = ActionMarker(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action_kind=action_kind,
            last_action_at=at
        )
        db.add(marker)
    else:
        marker.last_action_at = at
    marker.audit_log_id = audit_log.id if audit_log is not None else None
    db.flush()
    return marker


def window_start(now: datetime, hours: int) -> datetime:
    return now - timedelta(hours=hours)
