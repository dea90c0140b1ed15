"""Read-only aggregates for dashboards."""
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.models.audit import AuditLog, STATUS_CHANGE_ACTIONS
from app.models.domain import Item, Reservation, User
from app.models.enums import ItemStatus, ReservationStatus
from app.services.overdue import days_overdue


def item_status_counts(db: Session) -> dict:
    rows = db.query(Item.status, func.count(Item.id)).group_by(Item.status).all()
    counts = {status.value: 0 for status in ItemStatus}
    for status, count in rows:
        counts[status.value] = count
    return counts


def reservation_status_counts(db: Session) -> dict:
    rows = db.query(Reservation.status, func.count(Reservation.id)).group_by(Reservation.status).all()
    counts = {status.value: 0 for status in ReservationStatus}
    for status, count in rows:
        counts[status.value] = count
    return counts


def recent_status_changes(db: Session, limit: int = 20) -> list:
    logs = (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == "Item", AuditLog.action.in_(STATUS_CHANGE_ACTIONS))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": log.id,
            "action": log.action,
            "entityId": log.entity_id,
            "changes": log.changes,
            "userId": log.user_id,
            "createdAt": log.created_at,
        }
        for log in logs
    ]


def overdue_items(db: Session, now: Optional[datetime] = None, limit: int = 10) -> list:
    """Borrowed items whose ACTIVE reservation is past its end date."""
    now = now or datetime.utcnow()
    rows = (
        db.query(Item, Reservation)
        .join(Reservation, Reservation.item_id == Item.id)
        .filter(
            Item.status == ItemStatus.BORROWED,
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.end_date < now
        )
        .order_by(Reservation.end_date.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": item.id,
            "name": item.name,
            "status": item.status.value,
            "borrowerId": reservation.user_id,
            "dueDate": reservation.end_date,
            "daysOverdue": days_overdue(reservation.end_date, now),
        }
        for item, reservation in rows
    ]


def trust_score_distribution(db: Session) -> dict:
    bucket = case(
        (User.trust_score < 50, "0-49"),
        (User.trust_score < 80, "50-79"),
        else_="80-100",
    )
    rows = db.query(bucket, func.count(User.id)).group_by(bucket).all()
    distribution = {"0-49": 0, "50-79": 0, "80-100": 0}
    for label, count in rows:
        distribution[label] = count
    average = db.query(func.avg(User.trust_score)).scalar()
    return {"buckets": distribution, "average": float(average) if average is not None else None}


def status_overview(db: Session, now: Optional[datetime] = None) -> dict:
    return {
        "statusCounts": item_status_counts(db),
        "availableStatuses": [s.value for s in ItemStatus],
        "recentChanges": recent_status_changes(db),
        "overdueItems": overdue_items(db, now=now),
    }


def summary(db: Session, now: Optional[datetime] = None) -> dict:
    return {
        "items": item_status_counts(db),
        "reservations": reservation_status_counts(db),
        "trustScores": trust_score_distribution(db),
        "overdueItems": len(overdue_items(db, now=now, limit=1000)),
    }
